from datetime import datetime, timezone
from typing import Optional

def utcnow() -> datetime:
    return datetime.now(timezone.utc)

def ensure_aware(value: Optional[datetime]) -> Optional[datetime]:
    """
    Postgres returns aware (UTC) datetimes for timezone=True columns, SQLite
    returns naive ones. Everything we store is UTC, so naive means UTC.
    """
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)
