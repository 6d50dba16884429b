"""Timezone-aware clock helpers."""

from datetime import datetime, timezone
from typing import Optional


def utcnow() -> datetime:
    """Current time in UTC."""
    return datetime.now(timezone.utc)


def ensure_aware(value: Optional[datetime]) -> Optional[datetime]:
    """Treat naive datetimes as UTC."""
    if value is None or value.tzinfo is not None:
        return value
    return value.replace(tzinfo=timezone.utc)
