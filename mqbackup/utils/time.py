"""Time utilities (UTC now, run durations, AMQP epoch timestamps)."""
from __future__ import annotations
from datetime import datetime, timezone

def utc_now() -> datetime:
    return datetime.now(timezone.utc)

def elapsed_seconds(start: datetime, end: datetime | None = None) -> float:
    return max(((end or utc_now()) - start).total_seconds(), 0.0)

def format_elapsed(start: datetime, end: datetime | None = None) -> str:
    seconds = elapsed_seconds(start, end)
    if seconds < 1:
        return f"{int(seconds * 1000)}ms"
    if seconds < 60:
        return f"{seconds:.2f}s"
    return f"{seconds / 60:.2f}m"

def format_rate(count: int, start: datetime, end: datetime | None = None) -> str:
    seconds = elapsed_seconds(start, end)
    if not count or seconds <= 0:
        return "-"
    return f"{count / seconds:.1f}/s"

def to_epoch_seconds(value: datetime) -> int:
    """AMQP timestamps are whole seconds; naive datetimes are taken as UTC."""
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return int(value.timestamp())

__all__ = ["utc_now", "elapsed_seconds", "format_elapsed", "format_rate", "to_epoch_seconds"]
