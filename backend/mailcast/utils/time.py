"""Timezone helpers

All timestamps are stored in UTC. SQLite hands DateTime(timezone=True) values
back naive, so anything read from the database goes through as_utc() before
being compared with an aware datetime.
"""
from datetime import datetime, timezone
from typing import Optional
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from mailcast.core.errors import InvalidInput


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Attach UTC to naive datetimes, convert aware ones"""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def parse_local_datetime(value: Optional[str], tz_name: str) -> Optional[datetime]:
    """Parse a wall-clock time entered in tz_name and return it in UTC.

    Strings carrying their own offset keep it. Empty input means "not scheduled".

    Raises:
        InvalidInput: value is not an ISO-8601 date/time
    """
    if not value:
        return None

    try:
        parsed = datetime.fromisoformat(value.strip())
    except (TypeError, ValueError):
        raise InvalidInput("Invalid scheduled_at_local value.")

    if parsed.tzinfo is None:
        try:
            parsed = parsed.replace(tzinfo=ZoneInfo(tz_name))
        except ZoneInfoNotFoundError:
            raise InvalidInput(f"Unknown schedule timezone: {tz_name}")

    return parsed.astimezone(timezone.utc)


def isoformat_or_none(value: Optional[datetime]) -> Optional[str]:
    return as_utc(value).isoformat() if value is not None else None


def parse_provider_timestamp(value: Optional[str]) -> Optional[datetime]:
    """Parse a provider timestamp such as '2024-05-01 10:00:00.123456+00'.

    Returns None for anything unparseable.
    """
    if not value:
        return None

    text = str(value).strip().replace("Z", "+00:00")
    # Offsets without minutes ("+00") are not ISO-8601 on older interpreters
    if ":" in text and text[-3] in "+-" and text[-2:].isdigit():
        text = f"{text}:00"

    try:
        parsed = datetime.fromisoformat(text)
    except ValueError:
        return None
    return as_utc(parsed)
