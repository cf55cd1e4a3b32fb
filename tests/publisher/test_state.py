from datetime import datetime, timedelta, timezone

import pytest

from publisher import state
from publisher.state import ScheduleStatus


def test_terminal_states_have_no_transitions():
    for status in ScheduleStatus.TERMINAL:
        for target in ScheduleStatus.ALL:
            assert not state.can_transition(status, target)


def test_failed_only_returns_to_pending():
    assert state.can_transition(ScheduleStatus.FAILED, ScheduleStatus.PENDING)
    assert not state.can_transition(ScheduleStatus.FAILED, ScheduleStatus.QUEUED)
    assert not state.can_transition(ScheduleStatus.FAILED, ScheduleStatus.CANCELLED)


def test_processing_cannot_be_cancelled():
    assert state.can_cancel(ScheduleStatus.PENDING)
    assert state.can_cancel(ScheduleStatus.QUEUED)
    assert not state.can_cancel(ScheduleStatus.PROCESSING)
    assert not state.can_transition(ScheduleStatus.PROCESSING, ScheduleStatus.CANCELLED)


def test_reschedule_allowed_from_pending_and_failed():
    assert state.can_reschedule(ScheduleStatus.PENDING)
    assert state.can_reschedule(ScheduleStatus.FAILED)
    for status in (ScheduleStatus.QUEUED, ScheduleStatus.PROCESSING, ScheduleStatus.SUCCESS, ScheduleStatus.CANCELLED):
        assert not state.can_reschedule(status)


def test_is_due_requires_pending_and_past_run_at():
    now = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)
    assert state.is_due(ScheduleStatus.PENDING, now, now)
    assert state.is_due(ScheduleStatus.PENDING, now - timedelta(seconds=1), now)
    assert not state.is_due(ScheduleStatus.PENDING, now + timedelta(seconds=1), now)
    assert not state.is_due(ScheduleStatus.QUEUED, now - timedelta(hours=1), now)


def test_is_due_accepts_naive_database_values():
    now = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)
    assert state.is_due(ScheduleStatus.PENDING, datetime(2026, 3, 1, 11, 59), now)


def test_can_retry():
    assert state.can_retry(ScheduleStatus.PROCESSING, 4, max_attempts=5)
    assert not state.can_retry(ScheduleStatus.PROCESSING, 5, max_attempts=5)
    assert not state.can_retry(ScheduleStatus.SUCCESS, 1)


@pytest.mark.parametrize(
    "attempt_count, expected_seconds",
    [(0, 60), (1, 120), (3, 480), (6, 3600), (500, 3600)],
)
def test_backoff_delay_is_exponential_and_capped(attempt_count, expected_seconds):
    assert state.backoff_delay(attempt_count, 60, 3600) == timedelta(seconds=expected_seconds)


def test_as_utc_converts_offsets():
    berlin_noon = datetime(2026, 3, 1, 12, 0, tzinfo=timezone(timedelta(hours=1)))
    assert state.as_utc(berlin_noon) == datetime(2026, 3, 1, 11, 0, tzinfo=timezone.utc)
    assert state.as_utc(None) is None
