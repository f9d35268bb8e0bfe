"""Shared fixtures: controllable clock, in-memory Redis double, SQLite database."""

from __future__ import annotations

import fnmatch
import math
from datetime import datetime, timedelta, timezone

import pytest

from engram.config import LongTermConfig, ShortTermConfig
from engram.db.engine import create_engine, get_session_factory, init_schema
from engram.memory.coordinator import TieredMemoryCoordinator
from engram.memory.long_term import LongTermStore
from engram.memory.short_term import ShortTermStore


class FakeClock:
    def __init__(self, start: datetime | None = None) -> None:
        self.now = start or datetime(2026, 1, 1, 12, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += timedelta(seconds=seconds)


class FakeRedis:
    """The subset of redis.asyncio.Redis the short-term store uses.

    SCAN walks a stable slot list (insertion order, never compacted), `count`
    slots per call, so deleting during a scan never skips live keys. With
    evict_expired=False, keys past their TTL stay readable, as when Redis
    has not evicted them yet.
    """

    def __init__(self, clock: FakeClock) -> None:
        self._clock = clock
        self._data: dict[str, tuple[str, datetime | None]] = {}
        self._slots: list[str] = []
        self._slotted: set[str] = set()
        self.evict_expired = True
        self.scan_calls = 0

    def _live(self, key: str) -> tuple[str, datetime | None] | None:
        item = self._data.get(key)
        if item is None:
            return None
        if self.evict_expired and item[1] is not None and self._clock() >= item[1]:
            del self._data[key]
            return None
        return item

    async def get(self, key: str) -> str | None:
        item = self._live(key)
        return item[0] if item else None

    def _store(self, key: str, value: str, ex: int | None) -> None:
        if key not in self._slotted:
            self._slotted.add(key)
            self._slots.append(key)
        expires = self._clock() + timedelta(seconds=ex) if ex else None
        self._data[key] = (value, expires)

    async def set(self, key: str, value: str, ex: int | None = None) -> bool:
        self._store(key, value, ex)
        return True

    async def delete(self, *keys: str) -> int:
        removed = 0
        for key in keys:
            if self._live(key) is not None:
                del self._data[key]
                removed += 1
        return removed

    async def ttl(self, key: str) -> int:
        item = self._live(key)
        if item is None:
            return -2
        if item[1] is None:
            return -1
        return max(0, math.ceil((item[1] - self._clock()).total_seconds()))

    async def mget(self, keys: list[str]) -> list[str | None]:
        return [await self.get(k) for k in keys]

    async def scan(self, cursor: int = 0, match: str | None = None, count: int = 10) -> tuple[int, list[str]]:
        self.scan_calls += 1
        batch = [k for k in self._slots[cursor:cursor + count] if k in self._data]
        next_cursor = cursor + count if cursor + count < len(self._slots) else 0
        if match:
            batch = [k for k in batch if fnmatch.fnmatchcase(k, match)]
        return next_cursor, batch

    def put_raw(self, key: str, value: str, ex: int | None = None) -> None:
        self._store(key, value, ex)

    def raw(self, key: str) -> str | None:
        item = self._data.get(key)
        return item[0] if item else None


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def fake_redis(clock):
    return FakeRedis(clock)


@pytest.fixture
def short_term(fake_redis, clock):
    return ShortTermStore(fake_redis, ShortTermConfig(scan_batch_size=3), clock=clock)


@pytest.fixture
async def db_engine(tmp_path):
    engine = create_engine(f"sqlite+aiosqlite:///{tmp_path / 'memories.db'}")
    await init_schema(engine)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(db_engine):
    return get_session_factory(db_engine)


@pytest.fixture
def long_term(session_factory, short_term, clock):
    return LongTermStore(session_factory, short_term=short_term, config=LongTermConfig(), clock=clock)


@pytest.fixture
def coordinator(short_term, long_term):
    return TieredMemoryCoordinator(short_term, long_term)
