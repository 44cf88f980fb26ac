# core/utils.py

import logging
from typing import Optional

logger = logging.getLogger(__name__)

HEIGHT_PRECISION = 3


def round_height(value: float) -> float:
    """Rounds a Z height or layer height in millimeters to the layer precision."""
    return round(float(value), HEIGHT_PRECISION)


def format_time(seconds: Optional[float]) -> str:
    """
    Formats a duration in seconds into a human-readable string (e.g., "2m 3.5s").

    Args:
        seconds: The duration in seconds.

    Returns:
        A formatted string representation of the duration, or "N/A" if input is invalid.
    """
    if seconds is None or not isinstance(seconds, (int, float)) or seconds < 0:
        return "N/A"
    if seconds < 0.01:
        return "< 0.01 seconds"
    if seconds < 60:
        return f"{seconds:.2f} seconds"

    minutes, sec = divmod(seconds, 60)
    hours, minutes = divmod(minutes, 60)

    parts = []
    if hours > 0:
        parts.append(f"{int(hours)}h")
    if minutes > 0:
        parts.append(f"{int(minutes)}m")
    if sec > 0:
        parts.append(f"{sec:.1f}s")
    return " ".join(parts)


def format_layer_range(start_layer_index: int, end_layer_index: int) -> str:
    """'12' for a single layer, '12-18' for a range."""
    if start_layer_index == end_layer_index:
        return str(start_layer_index)
    return f"{start_layer_index}-{end_layer_index}"
