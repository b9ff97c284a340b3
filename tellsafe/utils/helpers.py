from datetime import datetime, timedelta, timezone
from typing import Tuple

def utcnow() -> datetime:
    """Naive UTC timestamp; every DateTime column stores UTC without tzinfo."""
    return datetime.now(timezone.utc).replace(tzinfo=None)

def as_naive_utc(value: datetime) -> datetime:
    if value.tzinfo is not None:
        return value.astimezone(timezone.utc).replace(tzinfo=None)
    return value

def trailing_period(now: datetime, days: int) -> Tuple[datetime, datetime]:
    """
    [start, end) window of `days` whole UTC days ending at the midnight on/before `now`.
    Repeated triggers on the same day resolve to the same period key.
    """
    now = as_naive_utc(now)
    end = now.replace(hour=0, minute=0, second=0, microsecond=0)
    return end - timedelta(days=days), end

def excerpt(text: str, limit: int) -> str:
    text = " ".join((text or "").split())
    if len(text) <= limit:
        return text
    return text[: max(limit - 1, 0)].rstrip() + "…"

