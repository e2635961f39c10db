from datetime import datetime, timedelta, timezone

import pytest

from habitisland.api import HabitIsland
from habitisland.config import EngineConfig
from habitisland.db import init_db, make_engine, make_session_factory
from habitisland.services.remote import InMemoryRemoteStore

# a Wednesday
NOW = datetime(2025, 1, 15, 12, 0, tzinfo=timezone.utc)


class Clock:
    def __init__(self, now):
        self.now = now

    def __call__(self):
        return self.now

    def advance(self, **kwargs):
        self.now += timedelta(**kwargs)
        return self.now


@pytest.fixture
def config():
    return EngineConfig(database_url="sqlite://", grace_period_minutes=0, sync_retry_delay_seconds=0)


@pytest.fixture
def session_factory():
    engine = make_engine("sqlite://")
    init_db(engine)
    yield make_session_factory(engine)
    engine.dispose()


@pytest.fixture
def db(session_factory):
    session = session_factory()
    yield session
    session.close()


@pytest.fixture
def clock():
    return Clock(NOW)


@pytest.fixture
def remote():
    return InMemoryRemoteStore()


@pytest.fixture
def app(config, session_factory, remote, clock):
    return HabitIsland(config, session_factory, remote=remote, clock=clock, sleep=lambda seconds: None)


@pytest.fixture
def file_app(tmp_path, config, remote, clock):
    # threaded tests need a connection per session, which the in-memory StaticPool cannot give
    engine = make_engine(f"sqlite:///{tmp_path / 'island.db'}")
    init_db(engine)
    yield HabitIsland(config, make_session_factory(engine), remote=remote, clock=clock, sleep=lambda seconds: None)
    engine.dispose()
