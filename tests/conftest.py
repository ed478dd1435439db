"""
Test fixtures for CohortLens.

Provides:
- File-backed SQLite database per test (aiosqlite), all tables created
- GroupCipher with a fixed test master key
- In-memory stand-in for the redis.asyncio client (cache + publish)
- Helper to seed encrypted shared profile rows
"""

import fnmatch
import json
import os
from datetime import datetime
from typing import Optional

# Configure before importing cohortlens so Settings picks these up
os.environ["ENVIRONMENT"] = "testing"
os.environ["DATABASE_URL"] = "sqlite+aiosqlite:///:memory:"
os.environ["COHORTLENS_MASTER_KEY"] = "test-master-key-not-for-production"
os.environ["SYNTHESIS_ENABLED"] = "false"

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from cohortlens.db.engine import create_tables
from cohortlens.db.models import SharedProfileData, utcnow
from cohortlens.services.cache import AnalysisCache
from cohortlens.services.encryption import GroupCipher
from cohortlens.services.notifications import NotificationBus

TEST_MASTER_KEY = "test-master-key-not-for-production"


class FakeRedis:
    """The subset of redis.asyncio.Redis used by the cache and the bus."""

    def __init__(self):
        self.store: dict[str, str] = {}
        self.ttls: dict[str, Optional[int]] = {}
        self.published: list[tuple[str, dict]] = []

    async def get(self, key):
        return self.store.get(key)

    async def set(self, key, value, ex=None):
        self.store[key] = value
        self.ttls[key] = ex
        return True

    async def delete(self, *keys):
        return sum(1 for key in keys if self.store.pop(key, None) is not None)

    async def scan_iter(self, match=None):
        for key in list(self.store):
            if fnmatch.fnmatchcase(key, match or "*"):
                yield key

    async def ping(self):
        return True

    async def publish(self, channel, message):
        self.published.append((channel, json.loads(message)))
        return 1


# ── Database ──────────────────────────────────────────────────────────────


@pytest_asyncio.fixture
async def engine(tmp_path):
    """Fresh SQLite database with all tables."""
    eng = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'cohortlens.db'}", echo=False)
    await create_tables(eng)
    yield eng
    await eng.dispose()


@pytest_asyncio.fixture
async def session_factory(engine):
    return async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


# ── Collaborators ─────────────────────────────────────────────────────────


@pytest.fixture
def cipher():
    return GroupCipher(TEST_MASTER_KEY)


@pytest.fixture
def fake_redis():
    return FakeRedis()


@pytest.fixture
def cache(fake_redis):
    return AnalysisCache(client=fake_redis, prefix="test")


@pytest.fixture
def bus(fake_redis):
    return NotificationBus(client=fake_redis)


@pytest.fixture
def share(session_factory, cipher):
    """Seed one encrypted shared_profile_data row."""

    async def _share(
        group_id: str,
        user_id: str,
        data_type: str,
        payload,
        shared_at: Optional[datetime] = None,
        raw_token: Optional[str] = None,
    ) -> None:
        token = raw_token or cipher.encrypt_for_user(json.dumps(payload), user_id, group_id)
        async with session_factory() as session:
            session.add(
                SharedProfileData(
                    group_id=group_id,
                    user_id=user_id,
                    data_type=data_type,
                    encrypted_data=token,
                    shared_at=shared_at or utcnow(),
                )
            )
            await session.commit()

    return _share
