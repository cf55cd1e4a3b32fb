from datetime import datetime, timedelta, timezone

import pytest

from publisher.channel_adapters import AdapterRegistry, ChannelConnection, PublishContent, PublishResult
from publisher.config import DispatchConfig, Settings
from publisher.db import models  # noqa: F401
from publisher.db.base import Base, build_engine, build_session_factory
from publisher.errors import ScheduleError
from publisher.services.collaborators import Post, PublishContext, Variant
from publisher.services.schedules import ScheduleStore
from publisher.state import ScheduleStatus

START = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)


class FakeClock:
    def __init__(self, now=START):
        self.now = now

    def __call__(self):
        return self.now

    def advance(self, **kwargs):
        self.now += timedelta(**kwargs)
        return self.now


class FakeVariantAccess:
    """Variants keyed by id, each owned by one principal id."""

    def __init__(self):
        self.owners = {}
        self.variants = {}

    def add(self, owner_id, variant_id, post_id):
        self.owners[variant_id] = owner_id
        self.variants[variant_id] = Variant(id=variant_id, post_id=post_id, content=f"variant {variant_id}")

    def get_variant(self, principal, variant_id):
        if self.owners.get(variant_id) != principal.id:
            raise ScheduleError.variant_not_found()
        return self.variants[variant_id]

    def accessible_variant_ids(self, principal):
        return [vid for vid, owner in self.owners.items() if owner == principal.id]


class FakePostRepository:
    def __init__(self):
        self.posts = {}
        self.updates = []

    def add(self, post_id, status="draft"):
        self.posts[post_id] = Post(id=post_id, status=status)

    def find_by_id(self, post_id):
        return self.posts.get(post_id)

    def update(self, post_id, fields):
        self.updates.append((post_id, fields))
        post = self.posts.get(post_id)
        if post and "status" in fields:
            post.status = fields["status"]
        return post


class FakeContextResolver:
    """Builds a fresh context per call; ``platform_key`` and ``error`` are settable."""

    def __init__(self):
        self.platform_key = "x"
        self.error = None
        self.calls = []

    def resolve(self, schedule):
        self.calls.append(schedule.id)
        if self.error:
            raise self.error
        return PublishContext(
            connection=ChannelConnection(
                id=schedule.channel_connection_id,
                platform_key=self.platform_key,
                credentials={"access_token": "token-123"},
            ),
            content=PublishContent(text=f"content for variant {schedule.post_variant_id}"),
            post_id=100,
        )


class FakeAdapter:
    """Plays back queued outcomes; publishes successfully once they run out."""

    platform_key = "x"

    def __init__(self):
        self.outcomes = []
        self.calls = []

    def publish(self, connection, content, *, timeout):
        self.calls.append((connection.id, content.text, timeout))
        outcome = self.outcomes.pop(0) if self.outcomes else None
        if isinstance(outcome, BaseException):
            raise outcome
        if outcome is not None:
            return outcome
        n = len(self.calls)
        return PublishResult(external_post_id=f"ext-{n}", external_url=f"https://x.com/i/status/ext-{n}")


@pytest.fixture
def engine(tmp_path):
    engine = build_engine(f"sqlite:///{tmp_path / 'publisher-test.db'}")
    Base.metadata.create_all(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(engine):
    return build_session_factory(engine)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def settings():
    return Settings(database_url="sqlite://", dispatch=DispatchConfig(worker_pool_size=1))


@pytest.fixture
def variant_access():
    return FakeVariantAccess()


@pytest.fixture
def posts():
    return FakePostRepository()


@pytest.fixture
def resolver():
    return FakeContextResolver()


@pytest.fixture
def adapter():
    return FakeAdapter()


@pytest.fixture
def registry(adapter):
    registry = AdapterRegistry()
    registry.register(adapter)
    return registry


# Valid transition paths from pending, used to put a schedule in a given state
STATUS_PATHS = {
    ScheduleStatus.PENDING: [],
    ScheduleStatus.QUEUED: [ScheduleStatus.QUEUED],
    ScheduleStatus.PROCESSING: [ScheduleStatus.QUEUED, ScheduleStatus.PROCESSING],
    ScheduleStatus.SUCCESS: [ScheduleStatus.QUEUED, ScheduleStatus.PROCESSING, ScheduleStatus.SUCCESS],
    ScheduleStatus.FAILED: [ScheduleStatus.QUEUED, ScheduleStatus.PROCESSING, ScheduleStatus.FAILED],
    ScheduleStatus.CANCELLED: [ScheduleStatus.CANCELLED],
}


def walk_status(session, schedule_id, status, error_details=None, now=None):
    steps = STATUS_PATHS[status]
    for i, step in enumerate(steps):
        details = error_details if i == len(steps) - 1 else None
        ScheduleStore.update_status(session, schedule_id, step, details, now=now)


@pytest.fixture
def move_schedule(session_factory):
    """Commit a pending schedule into ``status`` through valid transitions."""

    def move(schedule_id, status, error_details=None, now=None):
        with session_factory() as session:
            walk_status(session, schedule_id, status, error_details, now)
            session.commit()

    return move
