import asyncio
import json

import pytest

from hand_worker.models import AnalysisWindow, HandBoundary
from hand_worker.pipeline.hands import analyze_hands, hands_from_response

from conftest import FakeModelClient, phase2_reply

WINDOW = AnalysisWindow(index=0, start=0.0, end=600.0, overlap_next=60.0)
BOUNDARIES = [
    HandBoundary(hand_number=1, start="00:30", end="02:00", start_seconds=30, end_seconds=120),
    HandBoundary(hand_number=2, start="03:00", end="05:00", start_seconds=180, end_seconds=300),
]


def test_hands_keep_boundary_range_and_structure():
    hands = hands_from_response(phase2_reply(1, 2), WINDOW, BOUNDARIES, "stream-1")

    assert [h.number for h in hands] == [1, 2]
    first = hands[0]
    assert (first.start_seconds, first.end_seconds) == (30, 120)
    assert first.stream_id == "stream-1"
    assert first.window_index == 0
    assert first.players[0]["stackSize"] == 1200000
    assert first.board["flop"] == ["Ah", "Kd", "7c"]
    assert first.winners[0]["name"] == "Alice"
    assert first.confidence == 0.9


def test_phase2_timestamps_refine_range_when_valid():
    payload = json.loads(phase2_reply(1))
    payload["hands"][0]["timestampStart"] = "00:32"
    payload["hands"][0]["timestampEnd"] = "01:58"

    hands = hands_from_response(json.dumps(payload), WINDOW, BOUNDARIES, "stream-1")

    assert (hands[0].start_seconds, hands[0].end_seconds) == (32, 118)


def test_unusable_phase2_timestamps_fall_back():
    payload = json.loads(phase2_reply(1))
    payload["hands"][0]["timestampStart"] = "later"
    payload["hands"][0]["timestampEnd"] = "11:00"

    hands = hands_from_response(json.dumps(payload), WINDOW, BOUNDARIES, "stream-1")

    assert (hands[0].start_seconds, hands[0].end_seconds) == (30, 120)


def test_invalid_and_unrequested_hands_are_skipped():
    payload = json.loads(phase2_reply(1))
    payload["hands"].append({"handNumber": 2, "pot": "a lot"})
    payload["hands"].append({"handNumber": 9})
    payload["hands"].append({"handNumber": 1})

    hands = hands_from_response(json.dumps(payload), WINDOW, BOUNDARIES, "stream-1")

    assert [h.number for h in hands] == [1]


def test_missing_fields_get_defaults():
    text = json.dumps({"hands": [{"handNumber": 2, "semanticTags": ["#Bluff", "#Bluff", "#AllIn"]}]})

    hand = hands_from_response(text, WINDOW, BOUNDARIES, "stream-1")[0]

    assert hand.pot == 0.0
    assert hand.semantic_tags == ["#Bluff", "#AllIn"]
    assert hand.ai_analysis["reasoning"] == "No analysis data"
    assert hand.ai_analysis["handQuality"] == "routine"


def test_analyze_hands_batches_one_call_per_window():
    client = FakeModelClient({("phase2", 0): phase2_reply(1, 2)})

    hands = asyncio.run(analyze_hands(client, "memory://m/v.mp4", WINDOW, BOUNDARIES, "stream-1", "gpt-4o"))

    assert len(hands) == 2
    assert client.calls("phase2", 0) == 1
    assert "Hand 1: 00:30 - 02:00" in client.requests[0].prompt
    assert "Hand 2: 03:00 - 05:00" in client.requests[0].prompt


def test_analyze_hands_without_boundaries_skips_call():
    client = FakeModelClient()

    assert asyncio.run(analyze_hands(client, "memory://m/v.mp4", WINDOW, [], "stream-1", "gpt-4o")) == []
    assert client.requests == []


@pytest.mark.parametrize("field,value", [
    ("pot", None),
    ("board", None),
    ("semanticTags", None),
    ("aiAnalysis", None),
    ("players", None),
])
def test_null_hand_fields_take_defaults(field, value):
    payload = json.loads(phase2_reply(1))
    payload["hands"][0][field] = value

    hands = hands_from_response(json.dumps(payload), WINDOW, BOUNDARIES, "stream-1")

    assert [h.number for h in hands] == [1]


def test_null_pot_and_tags_use_defaults():
    payload = json.loads(phase2_reply(1))
    payload["hands"][0].update(pot=None, semanticTags=None, board=None)

    hands = hands_from_response(json.dumps(payload), WINDOW, BOUNDARIES, "stream-1")

    assert hands[0].pot == 0.0
    assert hands[0].semantic_tags == []
    assert hands[0].board == {"flop": None, "turn": None, "river": None}


def test_null_nested_values_keep_the_hand():
    payload = json.loads(phase2_reply(1))
    hand = payload["hands"][0]
    hand["actions"] = [{"player": "Alice", "street": "preflop", "action": "check", "amount": None}]
    hand["players"][0]["holeCards"] = [None, None]
    hand["board"] = {"flop": ["Ah", "Kd", "7c"], "turn": None, "river": None}
    hand["aiAnalysis"] = {"confidence": None, "reasoning": None}

    hands = hands_from_response(json.dumps(payload), WINDOW, BOUNDARIES, "stream-1")

    assert len(hands) == 1
    result = hands[0]
    assert result.actions[0]["amount"] == 0.0
    assert result.players[0]["holeCards"] == [None, None]
    assert result.board["turn"] is None
    assert result.confidence == 0.0
    assert result.ai_analysis["reasoning"] == "No analysis data"
