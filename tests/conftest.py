"""Shared fixtures: a controllable clock and limiter wiring."""

from datetime import datetime, timedelta, timezone

import pytest

from quota_guard.core.limiter import RateLimiter
from quota_guard.storage.memory import InMemoryUsageStore
from quota_guard.storage.repository import UsageRepository, initialize_schema

EPOCH = datetime(2024, 1, 1, 12, 0, 0, tzinfo=timezone.utc)


class FakeClock:
    """Clock frozen at a point in time until moved explicitly."""

    def __init__(self, start: datetime = EPOCH):
        self.start = start
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def at(self, seconds: float) -> datetime:
        """Move to ``seconds`` after the start and return the new time."""
        self.now = self.start + timedelta(seconds=seconds)
        return self.now

    def advance(self, seconds: float) -> datetime:
        self.now = self.now + timedelta(seconds=seconds)
        return self.now


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def memory_store():
    return InMemoryUsageStore()


@pytest.fixture
def limiter(memory_store, clock):
    return RateLimiter(store=memory_store, clock=clock)


@pytest.fixture
def db_path(tmp_path):
    path = str(tmp_path / "usage.db")
    initialize_schema(path)
    return path


@pytest.fixture
def repository(db_path):
    return UsageRepository(db_path)
