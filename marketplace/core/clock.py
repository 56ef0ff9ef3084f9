"""UTC helpers.

SQLite hands back naive datetimes for ``DateTime(timezone=True)`` columns;
everything stored by this service is UTC, so naive values are tagged as such.
"""

from datetime import datetime, timezone


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def ensure_utc(value: datetime | None) -> datetime | None:
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value
