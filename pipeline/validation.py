"""
Field-level validation helpers for upstream records
"""

import html
import re
from typing import Any, Optional, Tuple

# Bounding box of the Korean peninsula and nearby islands
LAT_MIN, LAT_MAX = 33.0, 38.6
LNG_MIN, LNG_MAX = 124.6, 132.0

_TAG_RE = re.compile(r"<[^>]*>")


def sanitize_string(value: Any, max_length: Optional[int] = None) -> Optional[str]:
    """Strip HTML tags, escape what is left, trim. Empty results become None."""
    if value is None:
        return None
    text = _TAG_RE.sub("", str(value))
    text = html.escape(text, quote=True).strip()
    if max_length is not None:
        text = text[:max_length]
    return text or None


def parse_float(value: Any) -> Optional[float]:
    if value is None or value == "":
        return None
    try:
        return float(value)
    except (TypeError, ValueError):
        return None


def parse_int(value: Any, default: int, minimum: Optional[int] = None) -> int:
    try:
        parsed = int(value)
    except (TypeError, ValueError):
        return default
    if minimum is not None and parsed < minimum:
        return default
    return parsed


def is_valid_coordinate(lat: Optional[float], lng: Optional[float]) -> bool:
    if lat is None or lng is None:
        return False
    return LAT_MIN <= lat <= LAT_MAX and LNG_MIN <= lng <= LNG_MAX


def validate_coordinates(lat: Any, lng: Any) -> Tuple[Optional[float], Optional[float]]:
    """Return the pair as floats, or (None, None) if either is missing or out of range."""
    lat, lng = parse_float(lat), parse_float(lng)
    if is_valid_coordinate(lat, lng):
        return lat, lng
    return None, None
