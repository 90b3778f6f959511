"""
Shared fixtures for token_meter tests.
"""
import os
import tempfile
import shutil
from datetime import datetime, timedelta, timezone

import fakeredis
import pytest

from token_meter.storage.repository import initialize_schema


class FakeClock:
    """Controllable clock returning an aware datetime."""

    def __init__(self, now: datetime):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, delta: timedelta) -> None:
        self.now = self.now + delta


@pytest.fixture
def clock():
    """Clock fixed at 22:30 UTC so a day boundary is 90 minutes away."""
    return FakeClock(datetime(2026, 10, 18, 22, 30, 0, tzinfo=timezone.utc))


@pytest.fixture
def redis_client():
    """In-memory Redis with Lua scripting."""
    client = fakeredis.FakeRedis()
    yield client
    client.flushall()


@pytest.fixture
def db_path():
    """Initialized SQLite database in a temporary directory."""
    temp_dir = tempfile.mkdtemp()
    path = os.path.join(temp_dir, "test.db")
    initialize_schema(path)
    yield path
    shutil.rmtree(temp_dir, ignore_errors=True)
