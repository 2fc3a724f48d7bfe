from __future__ import annotations

from datetime import datetime, timezone


def utc_now() -> datetime:
    # Use UTC timestamps for consistency across processes.
    return datetime.now(timezone.utc)


def as_utc(value: datetime | None) -> datetime | None:
    # SQLite drops tzinfo on read; treat naive values as UTC.
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)
