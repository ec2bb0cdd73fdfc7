"""
Timestamp helpers.

All timestamps are stored as UTC ISO 8601 strings with microsecond
precision so that SQLite can compare and sort them as text.
"""

from datetime import datetime, timezone
from typing import Union


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def parse_timestamp(value: Union[str, datetime]) -> datetime:
    """Parse an ISO 8601 timestamp; naive values are taken as UTC.

    Raises ``ValueError`` for unparsable input.
    """
    if isinstance(value, datetime):
        parsed = value
    else:
        parsed = datetime.fromisoformat(value.strip().replace("Z", "+00:00"))
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def to_iso(value: Union[str, datetime, None] = None) -> str:
    """Storage form of ``value`` (now if omitted)."""
    moment = utcnow() if value is None else parse_timestamp(value)
    return moment.astimezone(timezone.utc).isoformat(timespec="microseconds")
