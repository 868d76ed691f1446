"""
RExeli Backend — Shared Column Types & Time Helpers
=====================================================

What:  Column types and timestamp helpers reused by every ORM model.
How:   JSON payload columns use JSONB on PostgreSQL and plain JSON elsewhere
       (the aiosqlite test database). All timestamps are timezone-aware UTC.
"""

from datetime import datetime, timezone
from typing import Optional

from sqlalchemy import JSON, DateTime
from sqlalchemy.dialects.postgresql import JSONB

# JSONB in production, JSON for other dialects.
JSONType = JSON().with_variant(JSONB(), "postgresql")

# TIMESTAMP WITH TIME ZONE on PostgreSQL.
UTCDateTime = DateTime(timezone=True)


def utcnow() -> datetime:
    """Current time as an aware UTC datetime."""
    return datetime.now(timezone.utc)


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    """
    Normalizes a datetime read back from the database to aware UTC.

    SQLite drops tzinfo on round-trip; PostgreSQL returns aware values.
    """
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)
