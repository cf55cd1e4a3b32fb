from datetime import datetime, timedelta, timezone

import pytest
from sqlalchemy.exc import IntegrityError

from publisher.services.publish_events import RAW_RESPONSE_MAX_CHARS, PublishEventLog
from publisher.services.schedules import ScheduleStore
from publisher.state import PublishEventStatus

NOW = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)


@pytest.fixture
def schedule_id(session_factory):
    with session_factory() as session:
        schedule = ScheduleStore.create(
            session, post_variant_id=10, channel_connection_id=20, run_at=NOW, timezone="UTC", now=NOW
        )
        session.commit()
        return schedule.id


def test_success_event_drops_error_fields(session_factory, schedule_id):
    with session_factory() as session:
        event = PublishEventLog.create(
            session,
            schedule_id=schedule_id,
            attempt_index=1,
            status=PublishEventStatus.SUCCESS,
            timestamp=NOW,
            external_post_id="123",
            external_url="https://x.com/i/status/123",
            error_code="IGNORED",
            raw_response="{}",
        )
        session.commit()

        assert event.external_post_id == "123"
        assert event.error_code is None
        assert event.raw_response is None
        assert event.is_success()


def test_failed_event_drops_external_ids_and_truncates_raw_response(session_factory, schedule_id):
    with session_factory() as session:
        event = PublishEventLog.create(
            session,
            schedule_id=schedule_id,
            attempt_index=1,
            status=PublishEventStatus.FAILED,
            external_post_id="should-not-stick",
            error_code="PLATFORM_UNAVAILABLE",
            error_message="HTTP 503",
            raw_response="x" * (RAW_RESPONSE_MAX_CHARS + 100),
        )

        assert event.external_post_id is None
        assert event.error_code == "PLATFORM_UNAVAILABLE"
        assert len(event.raw_response) == RAW_RESPONSE_MAX_CHARS
        assert event.is_failure()


def test_rejects_unknown_status_and_zero_index(session_factory, schedule_id):
    with session_factory() as session:
        with pytest.raises(ValueError):
            PublishEventLog.create(session, schedule_id=schedule_id, attempt_index=1, status="queued")
        with pytest.raises(ValueError):
            PublishEventLog.create(
                session, schedule_id=schedule_id, attempt_index=0, status=PublishEventStatus.FAILED
            )


def test_attempt_index_is_unique_per_schedule(session_factory, schedule_id):
    with session_factory() as session:
        PublishEventLog.create(session, schedule_id=schedule_id, attempt_index=1, status=PublishEventStatus.FAILED)
        with pytest.raises(IntegrityError):
            PublishEventLog.create(
                session, schedule_id=schedule_id, attempt_index=1, status=PublishEventStatus.RETRIED
            )


def test_history_queries(session_factory, schedule_id):
    with session_factory() as session:
        for index, status in enumerate(
            [PublishEventStatus.FAILED, PublishEventStatus.RETRIED, PublishEventStatus.SUCCESS], start=1
        ):
            PublishEventLog.create(
                session,
                schedule_id=schedule_id,
                attempt_index=index,
                status=status,
                timestamp=NOW + timedelta(minutes=index),
            )
        session.commit()

    with session_factory() as session:
        history = PublishEventLog.list_by_schedule(session, schedule_id)
        assert [e.attempt_index for e in history] == [1, 2, 3]

        latest = PublishEventLog.get_latest_by_schedule(session, schedule_id)
        assert latest.attempt_index == 3
        assert PublishEventLog.find_by_id(session, latest.id).status == PublishEventStatus.SUCCESS

        newest_first = PublishEventLog.list(session, {"schedule_id": schedule_id})
        assert [e.attempt_index for e in newest_first] == [3, 2, 1]
        assert PublishEventLog.count(session, {"status": PublishEventStatus.RETRIED}) == 1
        assert PublishEventLog.count(session, {"timestamp_from": NOW + timedelta(minutes=2)}) == 2
