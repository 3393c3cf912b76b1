import logging
from typing import Dict, List, Optional, Tuple

from pydantic import ValidationError

from .model_client import ModelClient, ModelRequest
from .prompts import build_phase2_prompt
from .response import HandItem, Phase2Response, parse_response
from .util import try_parse_timestamp
from ..models import AnalysisWindow, Hand, HandBoundary

logger = logging.getLogger("hand_worker")


def _resolve_range(item: HandItem, boundary: HandBoundary,
                   window: AnalysisWindow) -> Tuple[float, float]:
    """Prefer the Phase-2 timestamps when they are usable, else the Phase-1 boundary"""
    start: Optional[float] = try_parse_timestamp(item.timestamp_start)
    end: Optional[float] = try_parse_timestamp(item.timestamp_end)
    if start is None or end is None or start < 0 or end <= start or end > window.duration:
        return boundary.start_seconds, boundary.end_seconds
    return start, end


def _unique(tags: List[str]) -> List[str]:
    seen = set()
    result = []
    for tag in tags:
        if tag not in seen:
            seen.add(tag)
            result.append(tag)
    return result


def hands_from_response(text: str, window: AnalysisWindow, boundaries: List[HandBoundary],
                        stream_id: str) -> List[Hand]:
    """
    Validate a Phase-2 response against the boundaries it was asked about.

    A response that is not JSON or has no hands array fails as a whole.
    Individual hands that fail validation, or whose handNumber was not in
    the request, are skipped. Timestamps stay window-relative.
    """
    parsed = parse_response(text, Phase2Response)
    by_number: Dict[int, HandBoundary] = {b.hand_number: b for b in boundaries}

    hands: List[Hand] = []
    for raw in parsed.hands:
        try:
            item = HandItem.model_validate(raw)
        except ValidationError as e:
            logger.warning(f"Window {window.index}: skipping hand that failed validation: {e.errors()[0]['msg']}")
            continue

        boundary = by_number.pop(item.hand_number, None)
        if boundary is None:
            logger.warning(f"Window {window.index}: discarding hand {item.hand_number} not requested in Phase 1")
            continue

        start, end = _resolve_range(item, boundary, window)
        hands.append(Hand(
            stream_id=stream_id,
            number=item.hand_number,
            start_seconds=start,
            end_seconds=end,
            window_index=window.index,
            stakes=item.stakes,
            pot=item.pot,
            board=item.board.model_dump(),
            players=[p.model_dump(by_alias=True) for p in item.players],
            actions=[a.model_dump(by_alias=True) for a in item.actions],
            winners=[w.model_dump(by_alias=True) for w in item.winners],
            semantic_tags=_unique(item.semantic_tags),
            ai_analysis=item.ai_analysis.model_dump(by_alias=True),
        ))

    if by_number:
        logger.info(f"Window {window.index}: {len(by_number)} boundaries had no Phase 2 result")
    return hands


async def analyze_hands(client: ModelClient, media_uri: str, window: AnalysisWindow,
                        boundaries: List[HandBoundary], stream_id: str, model: str) -> List[Hand]:
    """Phase 2: one batched call for every boundary of the window"""
    if not boundaries:
        return []

    text = await client.generate(ModelRequest(
        prompt=build_phase2_prompt(boundaries),
        media_uri=media_uri,
        start_seconds=window.start,
        end_seconds=window.end,
        model=model,
        phase="phase2",
        window_index=window.index,
    ))
    hands = hands_from_response(text, window, boundaries, stream_id)
    logger.info(f"Phase 2 window {window.index}: {len(hands)}/{len(boundaries)} hands analyzed")
    return hands
