"""
Time helpers.

Timestamps are stored as naive UTC (DateTime columns without timezone) so the
same values compare correctly on PostgreSQL and on SQLite in tests.
"""
from datetime import datetime, timezone


def utcnow() -> datetime:
    """Current UTC time as a naive datetime"""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def to_unix(dt: datetime) -> int:
    """Naive-UTC datetime → unix seconds"""
    return int(dt.replace(tzinfo=timezone.utc).timestamp())
