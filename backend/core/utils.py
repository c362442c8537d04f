"""
Utility functions for the workflow engine.

Includes:
- Duration parsing
- Deep merging of step definitions
- JSON-safe conversion for snapshots
- Random identifiers
"""

import re
import uuid
from datetime import date, datetime
from decimal import Decimal
from typing import Any, Optional


_DURATION_RE = re.compile(
    r"^\s*(-?\d+(?:\.\d+)?)\s*(ms|millis|milliseconds?|s|secs?|seconds?|m|mins?|minutes?|h|hrs?|hours?|d|days?)?\s*$",
    re.IGNORECASE,
)

_DURATION_UNITS = {
    "ms": 0.001, "millis": 0.001, "millisecond": 0.001, "milliseconds": 0.001,
    "s": 1.0, "sec": 1.0, "secs": 1.0, "second": 1.0, "seconds": 1.0,
    "m": 60.0, "min": 60.0, "mins": 60.0, "minute": 60.0, "minutes": 60.0,
    "h": 3600.0, "hr": 3600.0, "hrs": 3600.0, "hour": 3600.0, "hours": 3600.0,
    "d": 86400.0, "day": 86400.0, "days": 86400.0,
}


def parse_duration(value: Any) -> Optional[float]:
    """
    Parse a duration into seconds.

    Accepts numbers (seconds) and text such as ``5ms``, ``2s``, ``200 ms``,
    ``1m`` or ``1h``. ``None``, ``never`` and ``forever`` mean no limit.

    Args:
        value: Duration as number or text

    Returns:
        Seconds as float, or None for "no limit"

    Raises:
        ValueError: If the text is not a duration
    """
    if value is None:
        return None
    if isinstance(value, bool):
        raise ValueError(f"Invalid duration: {value!r}")
    if isinstance(value, (int, float)):
        return float(value)
    text = str(value).strip()
    if text.lower() in ("never", "forever", "none"):
        return None
    match = _DURATION_RE.match(text)
    if not match:
        raise ValueError(f"Invalid duration: {value!r}")
    amount = float(match.group(1))
    unit = (match.group(2) or "s").lower()
    return amount * _DURATION_UNITS[unit]


def deep_merge(base: dict, override: dict) -> dict:
    """
    Merge two mappings, recursing into nested mappings.

    Values from ``override`` win; neither input is modified.

    Args:
        base: Mapping providing defaults
        override: Mapping whose values take precedence

    Returns:
        New merged mapping
    """
    result = dict(base)
    for key, value in override.items():
        if isinstance(value, dict) and isinstance(result.get(key), dict):
            result[key] = deep_merge(result[key], value)
        else:
            result[key] = value
    return result


def to_json_safe(value: Any) -> Any:
    """
    Convert a value into something ``json.dumps`` accepts.

    Entities collapse to their id; unknown objects fall back to ``str``.
    """
    if value is None or isinstance(value, (bool, int, float, str)):
        return value
    if isinstance(value, dict):
        return {str(k): to_json_safe(v) for k, v in value.items()}
    if isinstance(value, (list, tuple, set)):
        return [to_json_safe(v) for v in value]
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    if isinstance(value, Decimal):
        return float(value)
    entity_id = getattr(value, "entity_id", None)
    if isinstance(entity_id, str):
        return entity_id
    return str(value)


def generate_id(prefix: str = "") -> str:
    """Generate a short random identifier."""
    token = uuid.uuid4().hex[:12]
    return f"{prefix}{token}" if prefix else token

