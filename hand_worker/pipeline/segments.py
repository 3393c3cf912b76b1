import logging
from typing import List

from ..models import AnalysisWindow

logger = logging.getLogger("hand_worker")


def plan_windows(duration_sec: float, window_sec: float, overlap_sec: float) -> List[AnalysisWindow]:
    """
    Split a stream into fixed-length windows that overlap their neighbours.

    Window i starts at i * (window - overlap). The last window is clamped to
    the duration. A remainder of at most one overlap past a full window is
    absorbed into that window rather than given a window of its own, so the
    final window can be up to window + overlap long (3600s at 1800/60 plans
    [0, 1800] and [1740, 3600]).

    Args:
        duration_sec: Total media duration in seconds
        window_sec: Window length
        overlap_sec: Overlap between consecutive windows, must be > 0

    Returns:
        Ordered windows covering [0, duration_sec] with no gap
    """
    if window_sec <= 0:
        raise ValueError(f"Window length must be positive, got {window_sec}")
    if overlap_sec <= 0 or overlap_sec >= window_sec:
        raise ValueError(
            f"Overlap must be in (0, {window_sec}), got {overlap_sec}"
        )
    if duration_sec <= 0:
        return []

    step = window_sec - overlap_sec
    windows: List[AnalysisWindow] = []
    index = 0

    while True:
        start = index * step
        end = start + window_sec
        last = end >= duration_sec or duration_sec - end <= overlap_sec
        if last:
            end = duration_sec

        windows.append(AnalysisWindow(
            index=index,
            start=float(start),
            end=float(end),
            overlap_prev=float(overlap_sec) if index > 0 else 0.0,
            overlap_next=0.0 if last else float(overlap_sec),
        ))
        if last:
            break
        index += 1

    logger.info(
        f"Planned {len(windows)} windows for {duration_sec:.0f}s "
        f"(length {window_sec:.0f}s, overlap {overlap_sec:.0f}s)"
    )
    return windows
