"""Schedule state machine and dispatch policy helpers."""

from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import Optional


class ScheduleStatus:
    """Lifecycle states of a schedule."""

    PENDING = "pending"
    QUEUED = "queued"
    PROCESSING = "processing"
    SUCCESS = "success"
    FAILED = "failed"
    CANCELLED = "cancelled"

    ALL = (PENDING, QUEUED, PROCESSING, SUCCESS, FAILED, CANCELLED)
    TERMINAL = (SUCCESS, CANCELLED)
    CANCELLABLE = (PENDING, QUEUED)
    RESCHEDULABLE = (PENDING, FAILED)


class PublishEventStatus:
    """Outcome recorded for a single dispatch attempt."""

    SUCCESS = "success"
    FAILED = "failed"
    RETRIED = "retried"
    CANCELLED = "cancelled"

    ALL = (SUCCESS, FAILED, RETRIED, CANCELLED)


# Allowed transitions. failed -> pending only happens through a manual reschedule.
TRANSITIONS = {
    ScheduleStatus.PENDING: {ScheduleStatus.QUEUED, ScheduleStatus.CANCELLED},
    ScheduleStatus.QUEUED: {ScheduleStatus.PROCESSING, ScheduleStatus.PENDING, ScheduleStatus.CANCELLED},
    ScheduleStatus.PROCESSING: {ScheduleStatus.SUCCESS, ScheduleStatus.FAILED, ScheduleStatus.PENDING},
    ScheduleStatus.FAILED: {ScheduleStatus.PENDING},
    ScheduleStatus.SUCCESS: set(),
    ScheduleStatus.CANCELLED: set(),
}


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Normalize a datetime to an aware UTC value.

    Naive values are treated as UTC, which is how they come back from
    backends that drop the offset (SQLite).
    """
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def can_transition(current: str, target: str) -> bool:
    return target in TRANSITIONS.get(current, set())


def is_final(status: str) -> bool:
    return status in ScheduleStatus.TERMINAL


def can_cancel(status: str) -> bool:
    return status in ScheduleStatus.CANCELLABLE


def can_reschedule(status: str) -> bool:
    return status in ScheduleStatus.RESCHEDULABLE


def is_due(status: str, run_at: datetime, now: datetime) -> bool:
    return status == ScheduleStatus.PENDING and as_utc(run_at) <= as_utc(now)


def can_retry(status: str, attempt_count: int, max_attempts: int = 5) -> bool:
    return attempt_count < max_attempts and status in (ScheduleStatus.FAILED, ScheduleStatus.PROCESSING)


def backoff_delay(attempt_count: int, base_seconds: int, max_seconds: int) -> timedelta:
    """Exponential delay before the next attempt: ``base * 2^attempt_count``, capped."""
    exponent = max(0, attempt_count)
    if exponent > 32:
        return timedelta(seconds=max_seconds)
    return timedelta(seconds=min(base_seconds * (2 ** exponent), max_seconds))
