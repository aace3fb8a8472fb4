"""
Timezone-aware datetime helpers.
- Store and compute in UTC in DB.
- API responses expose datetimes as ISO-8601 with Z.
"""
from datetime import date, datetime, timezone
from typing import Optional

UTC = timezone.utc


def now_utc() -> datetime:
    """Current time in UTC (timezone-aware). Use for ledger dates, decided_at, created_at, etc."""
    return datetime.now(UTC)


def today_utc() -> date:
    """Calendar date used as "today" for notice and booking windows."""
    return now_utc().date()


def ensure_utc(dt: Optional[datetime]) -> Optional[datetime]:
    """If dt is naive, treat as UTC and return timezone-aware UTC. If already aware, convert to UTC."""
    if dt is None:
        return None
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=UTC)
    else:
        dt = dt.astimezone(UTC)
    return dt


def iso_8601_utc(dt: Optional[datetime]) -> Optional[str]:
    """ISO-8601 with Z for UTC."""
    if dt is None:
        return None
    s = ensure_utc(dt).isoformat()
    if s.endswith("+00:00"):
        s = s[:-6] + "Z"
    return s
