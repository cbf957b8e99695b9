from __future__ import annotations

from datetime import datetime, timezone
from typing import Optional, Union, overload


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


@overload
def to_utc(dt: None) -> None: ...


@overload
def to_utc(dt: datetime) -> datetime: ...


def to_utc(dt: Optional[datetime]) -> Optional[datetime]:
    """Ensure datetime has UTC tzinfo. SQLite hands back naive values."""
    if dt is None:
        return None
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def parse_cutoff(value: Union[str, datetime]) -> datetime:
    """Accept an ISO-8601 string (``Z`` suffix allowed) or a datetime."""
    if isinstance(value, datetime):
        return to_utc(value)
    return to_utc(datetime.fromisoformat(value.replace("Z", "+00:00")))
