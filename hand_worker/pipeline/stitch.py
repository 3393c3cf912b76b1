"""
Merge per-window hand lists into one stream timeline.

Windows overlap, so a hand near a window edge can be reported by both
neighbours. Hands are moved to stream-absolute time, sorted, and compared
with the hands already kept:

- overlap of at most ``tolerance`` seconds is treated as touching, not
  overlapping (back-to-back hands with timestamp slop);
- two hands from different windows whose overlap exceeds
  ``dedup_ratio`` of the shorter hand are the same hand; the instance
  further from its window's edges wins;
- anything else that overlaps is an ambiguous collision: the earlier kept
  hand stays, the newcomer is set aside for manual review.

The surviving hands are renumbered 1..N in time order.
"""

import logging
from dataclasses import replace
from typing import Dict, List, Sequence

from ..models import AnalysisWindow, Collision, Hand, StitchResult

logger = logging.getLogger("hand_worker")

_EPSILON = 1e-6


def overlap_seconds(a: Hand, b: Hand) -> float:
    return max(0.0, min(a.end_seconds, b.end_seconds) - max(a.start_seconds, b.start_seconds))


def overlap_ratio(a: Hand, b: Hand) -> float:
    shorter = min(a.duration, b.duration)
    return overlap_seconds(a, b) / max(shorter, 1e-9)


def to_absolute(hand: Hand, window: AnalysisWindow) -> Hand:
    """Shift a window-relative hand onto the stream clock"""
    return replace(
        hand,
        start_seconds=window.start + hand.start_seconds,
        end_seconds=window.start + hand.end_seconds,
        window_index=window.index,
        provisional_number=hand.number,
    )


def _prefer(candidate: Hand, incumbent: Hand, windows: Dict[int, AnalysisWindow]) -> bool:
    """True if candidate should replace incumbent as the instance of a duplicated hand"""
    cand_margin = windows[candidate.window_index].edge_margin(candidate.start_seconds, candidate.end_seconds)
    inc_margin = windows[incumbent.window_index].edge_margin(incumbent.start_seconds, incumbent.end_seconds)
    if abs(cand_margin - inc_margin) > _EPSILON:
        return cand_margin > inc_margin

    if abs(candidate.confidence - incumbent.confidence) > _EPSILON:
        return candidate.confidence > incumbent.confidence

    return candidate.window_index < incumbent.window_index


def stitch(window_hands: Dict[int, List[Hand]], windows: Sequence[AnalysisWindow],
           dedup_ratio: float = 0.5, tolerance: float = 2.0) -> StitchResult:
    """
    Build the canonical hand list from every window's Phase-2 output.

    Args:
        window_hands: Window index -> window-relative hands from that window
        windows: Planned windows; only indexes present in window_hands are used
        dedup_ratio: Overlap fraction of the shorter hand above which two
            hands from different windows are duplicates
        tolerance: Overlap in seconds that is ignored entirely

    Returns:
        StitchResult with hands numbered from 1, the number of duplicates
        removed, and the ambiguous collisions that were set aside
    """
    by_index = {w.index: w for w in windows}

    candidates: List[Hand] = []
    for index, hands in window_hands.items():
        window = by_index[index]
        candidates.extend(to_absolute(h, window) for h in hands)
    candidates.sort(key=lambda h: (h.start_seconds, h.end_seconds, h.window_index))

    kept: List[Hand] = []
    collisions: List[Collision] = []
    duplicates = 0

    for candidate in candidates:
        conflicts = [k for k in kept if overlap_seconds(k, candidate) > tolerance]
        if not conflicts:
            kept.append(candidate)
            continue

        primary = max(conflicts, key=lambda k: overlap_seconds(k, candidate))
        ratio = overlap_ratio(primary, candidate)
        is_duplicate = (
            len(conflicts) == 1
            and primary.window_index != candidate.window_index
            and ratio > dedup_ratio
        )

        if is_duplicate:
            duplicates += 1
            if _prefer(candidate, primary, by_index):
                position = next(i for i, k in enumerate(kept) if k is primary)
                kept[position] = candidate
                logger.debug(
                    f"Duplicate hand at {candidate.start_seconds:.1f}s: window {candidate.window_index} "
                    f"replaces window {primary.window_index}"
                )
            else:
                logger.debug(
                    f"Duplicate hand at {candidate.start_seconds:.1f}s: keeping window {primary.window_index}, "
                    f"dropping window {candidate.window_index}"
                )
            continue

        collision = Collision(
            kept=primary,
            rejected=candidate,
            overlap_seconds=overlap_seconds(primary, candidate),
            overlap_ratio=ratio,
        )
        collisions.append(collision)
        logger.warning(
            f"Ambiguous hand collision: window {primary.window_index} "
            f"[{primary.start_seconds:.1f}-{primary.end_seconds:.1f}] vs window {candidate.window_index} "
            f"[{candidate.start_seconds:.1f}-{candidate.end_seconds:.1f}], "
            f"overlap {collision.overlap_seconds:.1f}s ({ratio:.0%}); flagged for review"
        )

    kept.sort(key=lambda h: (h.start_seconds, h.end_seconds))
    final = [replace(hand, number=i) for i, hand in enumerate(kept, start=1)]

    logger.info(
        f"Stitched {len(candidates)} window hands into {len(final)} hands "
        f"({duplicates} duplicates removed, {len(collisions)} collisions flagged)"
    )
    return StitchResult(hands=final, duplicates_removed=duplicates, collisions=collisions)
