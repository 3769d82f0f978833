"""
Shared pytest fixtures for all tests.
"""
from datetime import datetime, timedelta
from pathlib import Path
from typing import Iterator

import pytest

from activity_tracker.deriver import ActiveTimeDeriver
from activity_tracker.models import User
from activity_tracker.queries import ActiveTimeQueries
from activity_tracker.store import SqliteSessionStore, SqliteStatusStore


class FakeClock:
    """Callable clock that only moves when told to."""

    def __init__(self, start: datetime = datetime(2024, 5, 6, 9, 0, 0)) -> None:
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> datetime:
        self.now += timedelta(seconds=seconds)
        return self.now


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def db_path(tmp_path: Path) -> Path:
    return tmp_path / "tracker.sqlite3"


@pytest.fixture
def session_store(db_path: Path) -> Iterator[SqliteSessionStore]:
    store = SqliteSessionStore(db_path)
    store.add_user(User(id="u1", name="Alice", role="admin"))
    store.add_user(User(id="u2", name="Bob"))
    yield store
    store.close()


@pytest.fixture
def status_store(db_path: Path, clock: FakeClock) -> Iterator[SqliteStatusStore]:
    store = SqliteStatusStore(db_path, clock=clock)
    yield store
    store.close()


@pytest.fixture
def deriver(status_store, session_store, clock) -> ActiveTimeDeriver:
    return ActiveTimeDeriver(status_store, session_store, clock=clock)


@pytest.fixture
def queries(deriver, clock) -> ActiveTimeQueries:
    return ActiveTimeQueries(deriver, clock=clock)
