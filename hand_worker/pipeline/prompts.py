"""Prompt text for the two model passes."""

from typing import List

from ..models import HandBoundary

SEMANTIC_TAGS = [
    "#BadBeat", "#Cooler", "#HeroCall", "#Tilt", "#SoulRead", "#SuckOut",
    "#SlowPlay", "#Bluff", "#AllIn", "#BigPot", "#FinalTable", "#BubblePlay",
]

HAND_QUALITIES = ["routine", "interesting", "highlight", "epic"]

PHASE1_PROMPT = """Poker hand boundary detector. Extract start/end timestamps of complete hands only.

Output JSON (camelCase):
{"hands":[{"handNumber":1,"start":"05:30","end":"08:45"}]}

Start: cards dealt, blinds posted, "Hand #X" graphics
End: pot pushed to winner, muck, next hand starts

Rules:
- COMPLETE hands only (both start AND end visible in this clip)
- A hand cut off at the first or last frame of the clip is left out
- One hand = preflop through showdown (no street splitting)
- Timestamps are relative to the start of this clip
- Format: MM:SS or HH:MM:SS
- No overlapping timestamps
- Tight boundaries (exclude breaks)
- Empty array if no valid hands

Return ONLY JSON."""

PHASE2_PROMPT_TEMPLATE = """Poker hand analyst. Extract full structured data for each listed hand in this clip.

Hands to analyze (timestamps relative to the start of this clip):
{hand_list}

Output JSON (camelCase):
{{"hands":[{{
  "handNumber":1,
  "stakes":"50K/100K",
  "pot":1250000,
  "board":{{"flop":["As","Kd","7h"],"turn":"2c","river":null}},
  "players":[{{"name":"...","position":"BTN","seat":1,"stackSize":4500000,"holeCards":["Ah","Qh"]}}],
  "actions":[{{"player":"...","street":"preflop","action":"raise","amount":250000}}],
  "winners":[{{"name":"...","amount":1250000,"hand":"Two Pair"}}],
  "timestampStart":"05:30",
  "timestampEnd":"08:45",
  "semanticTags":["#Bluff"],
  "aiAnalysis":{{
    "confidence":0.9,
    "reasoning":"...",
    "playerStates":{{"<name>":{{"emotionalState":"neutral","playStyle":"balanced"}}}},
    "handQuality":"routine"
  }}
}}]}}

Rules:
- Use exactly the handNumber values listed above; do not add other hands
- Skip a hand if it is not fully visible; never guess missing streets
- Cards as rank+suit (As, Td, 9c); unknown hole cards are null
- street is one of preflop, flop, turn, river
- semanticTags only from: {tags}
- handQuality one of: {qualities}
- emotionalState one of: tilting, confident, cautious, neutral
- playStyle one of: aggressive, passive, balanced

Return ONLY JSON."""


def build_phase2_prompt(boundaries: List[HandBoundary]) -> str:
    hand_list = "\n".join(
        f"Hand {b.hand_number}: {b.start} - {b.end}" for b in boundaries
    )
    return PHASE2_PROMPT_TEMPLATE.format(
        hand_list=hand_list,
        tags=", ".join(SEMANTIC_TAGS),
        qualities=", ".join(HAND_QUALITIES),
    )
