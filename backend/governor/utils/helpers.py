from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Optional
import uuid


def utcnow() -> datetime:
    """Naive UTC timestamp, the form every DateTime column stores."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def utc_midnight(now: Optional[datetime] = None) -> datetime:
    """
    Most recent UTC midnight as a naive datetime.

    Aware datetimes are converted to UTC first; naive ones are assumed to be UTC.
    """
    now = now or utcnow()
    if now.tzinfo is not None:
        now = now.astimezone(timezone.utc).replace(tzinfo=None)
    return now.replace(hour=0, minute=0, second=0, microsecond=0)


def hours_ago(hours: float, now: Optional[datetime] = None) -> datetime:
    return (now or utcnow()) - timedelta(hours=hours)


def new_batch_id() -> str:
    return f"batch-{uuid.uuid4().hex[:12]}"


def iso(dt: Optional[datetime]) -> Optional[str]:
    return dt.isoformat() if dt else None


def round1(value: float) -> float:
    """Round to one decimal for dashboard figures."""
    return round(float(value or 0.0) * 10) / 10


def merge_params(base: Optional[Dict[str, Any]], **updates: Any) -> Dict[str, Any]:
    """
    Copy a JSON bag and apply updates.

    JSON columns only notice reassignment, never in-place mutation.
    """
    out = dict(base or {})
    out.update(updates)
    return out
