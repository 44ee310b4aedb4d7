"""Date manipulation utilities"""

from datetime import date, datetime, timezone
from typing import Any, Optional


def utcnow() -> datetime:
    """Timezone-aware current UTC time"""
    return datetime.now(timezone.utc)


def from_unix_timestamp(value: Optional[int]) -> Optional[datetime]:
    """Convert a Stripe epoch-seconds field to an aware datetime (None stays None)"""
    if value is None:
        return None
    return datetime.fromtimestamp(int(value), tz=timezone.utc)


def parse_iso_datetime(value: Any) -> Optional[datetime]:
    """
    Parse the ISO strings the front end sends ("2024-03-01" or
    "2024-03-01T00:00:00.000Z"). Empty values become None.
    """
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return value
    if isinstance(value, date):
        return datetime(value.year, value.month, value.day, tzinfo=timezone.utc)
    text = str(value).strip()
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    parsed = datetime.fromisoformat(text)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed
