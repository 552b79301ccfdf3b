"""Convert ``*At`` timestamp fields in API responses to the local timezone."""

from datetime import datetime
from typing import Any, Optional


def _parse_datetime(value: str) -> Optional[datetime]:
    try:
        dt = datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        return None
    # AT Protocol datetimes always carry an offset; naive strings are not ours.
    if dt.tzinfo is None:
        return None
    return dt


def to_local(value: str) -> str:
    """Return an ISO-8601 timestamp re-expressed in the local timezone.

    Unparseable or naive values come back unchanged.
    """
    dt = _parse_datetime(value)
    if dt is None:
        return value
    return dt.astimezone().isoformat(timespec="microseconds")


def convert_datetime(data: Any) -> Any:
    """Walk a JSON value and localise every string under a key ending in ``At``."""
    if isinstance(data, dict):
        converted = {}
        for key, value in data.items():
            if key.endswith("At") and isinstance(value, str):
                converted[key] = to_local(value)
            else:
                converted[key] = convert_datetime(value)
        return converted
    if isinstance(data, list):
        return [convert_datetime(item) for item in data]
    return data
