from datetime import datetime, timedelta
from typing import Generator

import pytest
from sqlalchemy.engine import Engine

from docqueue.config import EngineSettings
from docqueue.database import build_engine, build_session_factory, init_db
from docqueue.documents import DocumentStore
from docqueue.organizations import OrganizationStore
from docqueue.queue_manager import JobStore
from docqueue.scheduler import Scheduler

START = datetime(2026, 1, 5, 12, 0, 0)


class FakeClock:
    """Manually advanced naive-UTC clock."""

    def __init__(self, start: datetime = START):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float = 0, **kwargs: float) -> datetime:
        self.now += timedelta(seconds=seconds, **kwargs)
        return self.now


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def db_engine() -> Generator[Engine, None, None]:
    engine = build_engine("sqlite://")
    init_db(bind=engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(db_engine):
    return build_session_factory(db_engine)


@pytest.fixture
def engine_settings() -> EngineSettings:
    return EngineSettings(
        DATABASE_URL="sqlite://",
        PROVIDER_REQUESTS_PER_MINUTE=15,
        PROVIDER_DAILY_LIMIT=1200,
        MAX_JOBS_PER_ORG_PER_HOUR=100,
        MAX_JOBS_PER_ORG_PER_DAY=1000,
    )


@pytest.fixture
def jobs(session_factory, clock) -> JobStore:
    return JobStore(session_factory, clock)


@pytest.fixture
def organizations(session_factory, clock) -> OrganizationStore:
    return OrganizationStore(session_factory, clock)


@pytest.fixture
def documents(session_factory, clock) -> DocumentStore:
    return DocumentStore(session_factory, clock)


@pytest.fixture
def org(organizations):
    return organizations.create_organization("Acme", plan="free", organization_id="A")


@pytest.fixture
def scheduler(session_factory, engine_settings, clock, org) -> Scheduler:
    return Scheduler(session_factory, engine_settings, clock)
