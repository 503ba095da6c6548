"""Pytest configuration and shared fixtures."""

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

from convoy.database import crud
from convoy.database.models import Base

# 2026-03-02 10:00:00 UTC
FIXED_NOW = 1_772_445_600_000


class FakeClock:
    """Millisecond clock that only moves when told to."""

    def __init__(self, now: int = FIXED_NOW):
        self.now = now

    def __call__(self) -> int:
        return self.now

    def advance(self, ms: int) -> int:
        self.now += ms
        return self.now


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def db_engine(tmp_path):
    """Create a throwaway SQLite database file for testing."""
    engine = create_engine(f"sqlite:///{tmp_path / 'convoy.sqlite'}", echo=False)
    Base.metadata.create_all(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(db_engine) -> sessionmaker:
    return sessionmaker(bind=db_engine, autoflush=False)


@pytest.fixture
def db_session(session_factory):
    """Create a database session for testing."""
    session = session_factory()
    yield session
    session.close()


@pytest.fixture
def make_agent(session_factory, clock):
    """Create an agent and return its id."""

    def _make(name: str, role: str = "backend", status: str = "idle", **kwargs) -> int:
        with session_factory() as session:
            return crud.create_agent(name, role, status=status, now=clock(), session=session, **kwargs).id

    return _make


@pytest.fixture
def make_task(session_factory, clock):
    """Create a task and return its id."""

    def _make(title: str, priority: str = "medium", status: str = "backlog", **kwargs) -> int:
        kwargs.setdefault("now", clock())
        with session_factory() as session:
            return crud.create_task(title, priority=priority, status=status, session=session, **kwargs).id

    return _make
