from datetime import datetime, timezone
from typing import Optional

DB_TIMESTAMP_FORMAT = '%Y-%m-%d %H:%M:%S'

def utcnow() -> datetime:
    """Timezone aware current UTC time, the default clock of every component."""
    return datetime.now(timezone.utc)

def to_db_timestamp(value: datetime) -> str:
    """
    Format a datetime the way SQLite's datetime('now') does.
    Example: 2024-01-07 12:34:56

    Naive values are assumed to already be UTC. The fixed width format keeps
    string comparison in SQL equivalent to time comparison.
    """
    if value.tzinfo is not None:
        value = value.astimezone(timezone.utc)
    return value.strftime(DB_TIMESTAMP_FORMAT)

def parse_db_timestamp(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    return datetime.strptime(value, DB_TIMESTAMP_FORMAT).replace(tzinfo=timezone.utc)

def hhmm(value: datetime) -> str:
    """Wall clock time as zero padded HH:MM"""
    return value.strftime('%H:%M')
