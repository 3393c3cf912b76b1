import re
from typing import Optional


# MM:SS or H:MM:SS / HH:MM:SS, optional fractional seconds
_TIMESTAMP_RE = re.compile(r'^(?:(\d+):)?(\d{1,2}):(\d{1,2}(?:\.\d+)?)$')


def parse_timestamp(value: str) -> float:
    """
    Parse a window-relative MM:SS or HH:MM:SS timestamp to seconds.

    Raises:
        ValueError: if the value is not a timestamp
    """
    if not isinstance(value, str):
        raise ValueError(f"Timestamp must be a string, got {type(value).__name__}")

    match = _TIMESTAMP_RE.match(value.strip())
    if not match:
        raise ValueError(f"Malformed timestamp: {value!r}")

    hours, minutes, seconds = match.groups()
    minutes = int(minutes)
    seconds = float(seconds)
    if seconds >= 60:
        raise ValueError(f"Malformed timestamp: {value!r}")
    if hours is not None and minutes >= 60:
        raise ValueError(f"Malformed timestamp: {value!r}")

    total = (int(hours) if hours else 0) * 3600 + minutes * 60 + seconds
    return int(total) if total == int(total) else total


def format_timestamp(seconds: float) -> str:
    """Format seconds as MM:SS, or H:MM:SS from one hour up"""
    if seconds < 0:
        raise ValueError(f"Negative timestamp: {seconds}")

    total = int(round(seconds))
    hours, rest = divmod(total, 3600)
    minutes, secs = divmod(rest, 60)
    if hours:
        return f"{hours}:{minutes:02d}:{secs:02d}"
    return f"{minutes:02d}:{secs:02d}"


def try_parse_timestamp(value) -> Optional[float]:
    """Parse a timestamp, returning None instead of raising"""
    try:
        return parse_timestamp(value)
    except ValueError:
        return None


def clean_filename(filename: str) -> str:
    """Clean filename for safe object-store keys"""
    # Remove or replace unsafe characters
    filename = re.sub(r'[<>:"/\\|?*\s]', '_', filename)
    # Remove multiple underscores
    filename = re.sub(r'_+', '_', filename)
    # Remove leading/trailing underscores and dots
    filename = filename.strip('_.')
    return filename or 'unnamed'
