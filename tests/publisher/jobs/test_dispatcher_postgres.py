"""Row-lock behaviour against a real PostgreSQL database.

Set ``TEST_POSTGRES_URL`` to a disposable database to run these; the tables
are dropped and recreated for every test.
"""
import os
import threading
import time
from concurrent.futures import ThreadPoolExecutor
from datetime import timedelta

import pytest
from sqlalchemy import func, select

from publisher.db import models  # noqa: F401
from publisher.db.base import Base, build_engine, build_session_factory
from publisher.db.models import PublishEvent
from publisher.jobs.dispatcher import Dispatcher
from publisher.services.schedules import ScheduleStore
from publisher.state import ScheduleStatus

POSTGRES_URL = os.getenv("TEST_POSTGRES_URL")

pytestmark = [
    pytest.mark.postgres,
    pytest.mark.skipif(not POSTGRES_URL, reason="TEST_POSTGRES_URL is not set"),
]


@pytest.fixture
def pg_session_factory():
    engine = build_engine(POSTGRES_URL)
    Base.metadata.drop_all(engine)
    Base.metadata.create_all(engine)
    yield build_session_factory(engine)
    Base.metadata.drop_all(engine)
    engine.dispose()


@pytest.fixture
def make_dispatcher(registry, resolver, posts, pg_session_factory, settings, clock):
    created = []

    def make():
        dispatcher = Dispatcher(
            registry, resolver, posts, session_factory=pg_session_factory, settings=settings, clock=clock
        )
        created.append(dispatcher)
        return dispatcher

    yield make
    for dispatcher in created:
        dispatcher.close()


def _due_schedules(session_factory, clock, count=1):
    with session_factory() as session:
        ids = [
            ScheduleStore.create(
                session,
                post_variant_id=10 + i,
                channel_connection_id=20,
                run_at=clock() + timedelta(minutes=1),
                timezone="UTC",
                now=clock(),
            ).id
            for i in range(count)
        ]
        session.commit()
    clock.advance(minutes=2)
    return ids


def test_claim_skips_row_locked_by_another_transaction(make_dispatcher, pg_session_factory, clock):
    [schedule_id] = _due_schedules(pg_session_factory, clock)
    dispatcher = make_dispatcher()

    with pg_session_factory() as holder:
        assert ScheduleStore.find_by_id_for_update(holder, schedule_id, skip_locked=False) is not None
        assert dispatcher.claim(schedule_id) is False
        holder.rollback()

    assert dispatcher.claim(schedule_id) is True


def test_executor_waits_for_cancel_holding_the_lock(make_dispatcher, pg_session_factory, clock, adapter):
    [schedule_id] = _due_schedules(pg_session_factory, clock)
    dispatcher = make_dispatcher()
    assert dispatcher.claim(schedule_id) is True

    with pg_session_factory() as holder:
        ScheduleStore.find_by_id_for_update(holder, schedule_id, skip_locked=False)
        with ThreadPoolExecutor(max_workers=1) as pool:
            future = pool.submit(dispatcher.execute_schedule, schedule_id)
            # Still blocked on the row lock
            time.sleep(0.3)
            assert not future.done()

            ScheduleStore.update_status(holder, schedule_id, ScheduleStatus.CANCELLED, now=clock())
            holder.commit()
            result = future.result(timeout=10)

    assert result["status"] == "skipped"
    assert adapter.calls == []
    with pg_session_factory() as session:
        assert ScheduleStore.find_by_id(session, schedule_id).status == ScheduleStatus.CANCELLED


def test_concurrent_dispatchers_publish_each_schedule_once(make_dispatcher, pg_session_factory, clock, adapter):
    schedule_ids = _due_schedules(pg_session_factory, clock, count=20)
    dispatchers = [make_dispatcher(), make_dispatcher()]
    start = threading.Barrier(len(dispatchers))

    def cycle(dispatcher):
        start.wait()
        return dispatcher.run_cycle()

    with ThreadPoolExecutor(max_workers=len(dispatchers)) as pool:
        stats = list(pool.map(cycle, dispatchers))

    assert sum(s["success"] for s in stats) == len(schedule_ids)
    assert len(adapter.calls) == len(schedule_ids)
    with pg_session_factory() as session:
        counts = dict(
            session.execute(
                select(PublishEvent.schedule_id, func.count(PublishEvent.id)).group_by(PublishEvent.schedule_id)
            ).all()
        )
        assert counts == {schedule_id: 1 for schedule_id in schedule_ids}
        assert ScheduleStore.count(session, {"status": ScheduleStatus.SUCCESS}) == len(schedule_ids)
