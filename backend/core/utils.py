"""
Utility functions for the workflow engine.

Includes:
- UTC datetime helpers
- Duration parsing ("HH:MM:SS", "D.HH:MM:SS" or plain seconds)
- Identifier generation
"""

import re
import uuid
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Optional, Union

_DURATION_RE = re.compile(r"^(?:(?P<days>\d+)\.)?(?P<h>\d+):(?P<m>\d{1,2}):(?P<s>\d{1,2}(?:\.\d+)?)$")

DurationLike = Union[int, float, str, timedelta, None]


def utc_now() -> datetime:
    """
    Get the current UTC datetime.

    Returns:
        Current datetime in UTC timezone
    """
    return datetime.now(timezone.utc)


def new_id() -> str:
    return str(uuid.uuid4())


def parse_duration(value: DurationLike) -> Optional[float]:
    """
    Convert a duration value into seconds.

    Accepts numbers (seconds), numeric strings, ``timedelta`` objects and
    time-span strings such as ``"01:30:00"`` or ``"1.00:00:00"`` (one day).

    Args:
        value: Duration in any supported form

    Returns:
        Number of seconds, or None when value is None/empty

    Raises:
        ValueError: If a string cannot be parsed
    """
    if value is None or value == "":
        return None
    if isinstance(value, timedelta):
        return value.total_seconds()
    if isinstance(value, bool):
        raise ValueError(f"Invalid duration: {value!r}")
    if isinstance(value, (int, float)):
        return float(value)

    text = str(value).strip()
    try:
        return float(text)
    except ValueError:
        pass

    match = _DURATION_RE.match(text)
    if not match:
        raise ValueError(f"Invalid duration: {value!r}")
    return (
        int(match.group("days") or 0) * 86400
        + int(match.group("h")) * 3600
        + int(match.group("m")) * 60
        + float(match.group("s"))
    )


def parse_datetime(value: Any) -> Optional[datetime]:
    """Parse an ISO-8601 timestamp, assuming UTC when no offset is given."""
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        dt = value
    else:
        dt = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt


def isoformat(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


def duration_ms(start: Optional[datetime], end: Optional[datetime]) -> int:
    if not start or not end:
        return 0
    return max(0, int((end - start).total_seconds() * 1000))


def get_param(parameters: Dict[str, Any], *names: str, default: Any = None) -> Any:
    """Look up a parameter under several spellings.

    ``get_param(p, "variable_name")`` matches ``variable_name``,
    ``variableName`` and ``VariableName``. Empty values are skipped.
    """
    for name in names:
        if name in parameters and parameters[name] not in (None, ""):
            return parameters[name]
    normalized = {k.replace("_", "").lower(): v for k, v in parameters.items()}
    for name in names:
        value = normalized.get(name.replace("_", "").lower())
        if value not in (None, ""):
            return value
    return default
