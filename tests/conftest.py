"""Shared test fixtures."""

import itertools
import tempfile
from datetime import datetime
from pathlib import Path

import pytest

from partnermatch.config import LockConfig, TeamLimits
from partnermatch.core.clock import FixedClock
from partnermatch.persistence.users import UserRole


@pytest.fixture
def temp_dir():
    """Temporary directory for tests."""
    with tempfile.TemporaryDirectory() as d:
        yield Path(d)


@pytest.fixture
def db(temp_dir):
    """Test database."""
    from partnermatch.persistence.database import Database

    return Database(temp_dir / "test.db")


@pytest.fixture
def user_store(db):
    from partnermatch.persistence.users import UserStore

    return UserStore(db)


@pytest.fixture
def team_store(db):
    from partnermatch.persistence.teams import TeamStore

    return TeamStore(db)


@pytest.fixture
def clock():
    """Clock frozen at 2024-01-01 12:00."""
    return FixedClock(datetime(2024, 1, 1, 12, 0, 0))


@pytest.fixture
def locks(db):
    """Database-backed lock service with fast polling."""
    from partnermatch.coordination.locks import SQLiteLockService

    return SQLiteLockService(db, retry_interval=0.01)


@pytest.fixture
def lock_config():
    return LockConfig(wait_seconds=10.0, retry_interval_seconds=0.01)


@pytest.fixture
def coordinator(team_store, user_store, locks, clock, lock_config):
    """Membership coordinator over the test database."""
    from partnermatch.coordination.membership import MembershipCoordinator

    return MembershipCoordinator(
        team_store,
        user_store,
        locks,
        clock=clock,
        limits=TeamLimits(),
        lock_config=lock_config,
    )


@pytest.fixture
def make_user(user_store):
    """Factory creating users with unique account names."""
    counter = itertools.count(1)

    async def _make(tags=None, role=UserRole.NORMAL, account=None):
        n = next(counter)
        return await user_store.create_user(
            account or f"user{n}",
            username=f"User {n}",
            tags=tags,
            role=role,
        )

    return _make
