import logging
from typing import List

from .model_client import ModelClient, ModelRequest
from .prompts import PHASE1_PROMPT
from .response import Phase1Response, parse_response
from .util import parse_timestamp
from ..errors import ResponseSchemaError
from ..models import AnalysisWindow, HandBoundary

logger = logging.getLogger("hand_worker")


def boundaries_from_response(text: str, window: AnalysisWindow) -> List[HandBoundary]:
    """
    Validate a Phase-1 response and return ordered, non-overlapping boundaries.

    A malformed timestamp fails the whole response. Entries that are
    structurally valid but fall outside the window, or that overlap an
    earlier entry, are dropped.
    """
    parsed = parse_response(text, Phase1Response)

    candidates: List[HandBoundary] = []
    for item in parsed.hands:
        try:
            start = parse_timestamp(item.start)
            end = parse_timestamp(item.end)
        except ValueError as e:
            raise ResponseSchemaError(f"Hand {item.hand_number}: {e}") from e

        if start < 0 or end <= start:
            logger.warning(f"Window {window.index}: dropping hand {item.hand_number} with range {item.start}-{item.end}")
            continue
        if end > window.duration:
            # Only complete hands are kept; the neighbouring window covers this one
            logger.warning(f"Window {window.index}: dropping hand {item.hand_number} ending past the window edge")
            continue

        candidates.append(HandBoundary(
            hand_number=item.hand_number,
            start=item.start,
            end=item.end,
            start_seconds=start,
            end_seconds=end,
        ))

    candidates.sort(key=lambda b: (b.start_seconds, b.end_seconds))

    boundaries: List[HandBoundary] = []
    seen_numbers = set()
    for boundary in candidates:
        if boundary.hand_number in seen_numbers:
            logger.warning(f"Window {window.index}: duplicate handNumber {boundary.hand_number}, dropped")
            continue
        if boundaries and boundary.start_seconds < boundaries[-1].end_seconds:
            logger.warning(
                f"Window {window.index}: hand {boundary.hand_number} overlaps hand "
                f"{boundaries[-1].hand_number}, dropped"
            )
            continue
        boundaries.append(boundary)
        seen_numbers.add(boundary.hand_number)

    return boundaries


async def extract_boundaries(client: ModelClient, media_uri: str, window: AnalysisWindow,
                             model: str) -> List[HandBoundary]:
    """Phase 1: locate complete hands inside one window"""
    text = await client.generate(ModelRequest(
        prompt=PHASE1_PROMPT,
        media_uri=media_uri,
        start_seconds=window.start,
        end_seconds=window.end,
        model=model,
        phase="phase1",
        window_index=window.index,
    ))
    boundaries = boundaries_from_response(text, window)
    logger.info(f"Phase 1 window {window.index}: {len(boundaries)} hand boundaries")
    return boundaries
