import math
import ffmpeg
import logging
from typing import List, Tuple

from ..errors import MediaProbeError

logger = logging.getLogger("hand_worker")


def probe_duration(media_url: str) -> float:
    """
    Get media duration in seconds with ffprobe.

    Raises:
        MediaProbeError: if the media cannot be probed or reports no duration
    """
    try:
        probe = ffmpeg.probe(media_url)
    except ffmpeg.Error as e:
        stderr = e.stderr.decode(errors="replace") if e.stderr else str(e)
        raise MediaProbeError(f"ffprobe failed for {media_url}: {stderr}") from e

    duration = probe.get('format', {}).get('duration')
    if duration is None:
        video_stream = next(
            (s for s in probe.get('streams', []) if s.get('codec_type') == 'video'), None
        )
        duration = video_stream.get('duration') if video_stream else None

    if duration is None or float(duration) <= 0:
        raise MediaProbeError(f"No duration reported for {media_url}")

    logger.info(f"Probed duration {float(duration):.2f}s for {media_url}")
    return float(duration)


def frame_offsets(duration_sec: float, interval_sec: float, max_frames: int) -> List[float]:
    """Window-relative sample times, widening the interval to respect max_frames"""
    if duration_sec <= 0:
        return []
    count = math.ceil(duration_sec / interval_sec)
    if count > max_frames:
        interval_sec = duration_sec / max_frames
        count = max_frames
    return [round(i * interval_sec, 2) for i in range(count)]


def sample_frames(media_url: str, start_sec: float, end_sec: float,
                  interval_sec: float, max_frames: int) -> List[Tuple[float, bytes]]:
    """
    Grab JPEG frames from a time range.

    Returns:
        List of (window-relative seconds, jpeg bytes)
    """
    frames = []
    for offset in frame_offsets(end_sec - start_sec, interval_sec, max_frames):
        try:
            out, _ = (
                ffmpeg.input(media_url, ss=start_sec + offset)
                .output("pipe:", vframes=1, format="image2pipe", vcodec="mjpeg")
                .run(capture_stdout=True, capture_stderr=True, quiet=True)
            )
        except ffmpeg.Error as e:
            stderr = e.stderr.decode(errors="replace") if e.stderr else str(e)
            logger.warning(f"Frame grab failed at {start_sec + offset:.1f}s: {stderr.strip()[-200:]}")
            continue
        if out:
            frames.append((offset, out))

    logger.debug(f"Sampled {len(frames)} frames from {start_sec:.0f}s-{end_sec:.0f}s")
    return frames
