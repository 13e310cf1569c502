"""UTC helpers shared by the store, the adapters and the change detector."""

from datetime import date, datetime, time
from typing import Optional, Union

import pytz


def utc_now() -> datetime:
    return datetime.now(pytz.UTC)


def to_utc(value: datetime) -> datetime:
    """Return an aware UTC datetime. Naive values are taken to be UTC already."""
    if value.tzinfo is None:
        return pytz.UTC.localize(value)
    return value.astimezone(pytz.UTC)


def parse_instant(value: Union[str, datetime, date, None]) -> Optional[datetime]:
    """
    Parse an ISO-8601 instant into an aware UTC datetime.

    Accepts the trailing 'Z' form produced by most calendar APIs, plain
    dates (midnight UTC) and datetimes. Raises ValueError on garbage.
    """
    if value is None:
        return None
    if isinstance(value, datetime):
        return to_utc(value)
    if isinstance(value, date):
        return pytz.UTC.localize(datetime.combine(value, time.min))

    text = str(value).strip()
    if not text:
        return None
    if text.endswith('Z') or text.endswith('z'):
        text = text[:-1] + '+00:00'
    return to_utc(datetime.fromisoformat(text))


def isoformat_z(value: Optional[datetime]) -> Optional[str]:
    """Serialize as ISO-8601 UTC with a 'Z' suffix."""
    if value is None:
        return None
    return to_utc(value).isoformat().replace('+00:00', 'Z')
