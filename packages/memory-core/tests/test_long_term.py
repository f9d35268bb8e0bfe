"""Tests for the relational long-term store: quota, filters, pagination, promotion."""

import asyncio
from datetime import timedelta
from unittest.mock import AsyncMock

import pytest
from redis.exceptions import ConnectionError as RedisConnectionError

from engram.config import LongTermConfig
from engram.db.models import Base
from engram.errors import (
    MemoryValidationError,
    NotFoundError,
    PromotionError,
    QuotaExceededError,
    StoreError,
)
from engram.memory.long_term import LongTermStore
from engram.models import MemoryTier, MemoryUpdate


@pytest.fixture
def small_quota(session_factory, short_term, clock):
    return LongTermStore(
        session_factory, short_term=short_term, config=LongTermConfig(max_memories_per_user=3), clock=clock
    )


async def _fill(store, clock, tenant_id, count, **kwargs):
    entries = []
    for i in range(count):
        entries.append(await store.create(tenant_id, f"memory {i}", **kwargs))
        clock.advance(10)
    return entries


class TestCrud:
    async def test_create_and_get(self, long_term, clock):
        entry = await long_term.create("t1", "durable", metadata={"k": "v"}, tags=["a"])
        assert entry.tier is MemoryTier.LONG_TERM
        assert entry.expires_at is None
        assert entry.created_at == clock()

        found = await long_term.get("t1", entry.id)
        assert found == entry

    async def test_get_missing_returns_none(self, long_term):
        assert await long_term.get("t1", "missing") is None

    async def test_get_other_tenant_returns_none(self, long_term):
        entry = await long_term.create("t1", "mine")
        assert await long_term.get("t2", entry.id) is None

    async def test_invalid_content_rejected(self, long_term):
        with pytest.raises(MemoryValidationError):
            await long_term.create("t1", "")
        assert await long_term.count("t1") == 0

    async def test_empty_tenant_rejected(self, long_term):
        with pytest.raises(MemoryValidationError):
            await long_term.create("", "x")

    @pytest.mark.parametrize("tenant_id", ["org:alice", "team*", "t?"])
    async def test_reserved_tenant_characters_rejected(self, long_term, tenant_id):
        with pytest.raises(MemoryValidationError, match="reserved characters"):
            await long_term.create(tenant_id, "x")
        with pytest.raises(MemoryValidationError):
            await long_term.get(tenant_id, "any")
        with pytest.raises(MemoryValidationError):
            await long_term.list(tenant_id)

    async def test_partial_update(self, long_term, clock):
        entry = await long_term.create("t1", "old", metadata={"k": 1}, tags=["a"])
        clock.advance(30)
        updated = await long_term.update("t1", entry.id, content="new")
        assert updated.content == "new"
        assert updated.metadata == {"k": 1}
        assert updated.tags == ["a"]
        assert updated.created_at == entry.created_at
        assert updated.updated_at == clock()
        assert (await long_term.get("t1", entry.id)).content == "new"

    async def test_update_clears_metadata_when_explicitly_null(self, long_term):
        entry = await long_term.create("t1", "x", metadata={"k": 1})
        updated = await long_term.update("t1", entry.id, MemoryUpdate(metadata=None))
        assert updated.metadata is None

    async def test_update_ignores_ttl(self, long_term):
        entry = await long_term.create("t1", "x")
        updated = await long_term.update("t1", entry.id, tags=["b"], ttl_seconds=60)
        assert updated.expires_at is None
        assert updated.ttl_seconds is None

    async def test_update_missing_raises(self, long_term):
        with pytest.raises(NotFoundError):
            await long_term.update("t1", "missing", content="x")

    async def test_update_other_tenant_raises(self, long_term):
        entry = await long_term.create("t1", "x")
        with pytest.raises(NotFoundError):
            await long_term.update("t2", entry.id, content="hijack")
        assert (await long_term.get("t1", entry.id)).content == "x"

    async def test_delete(self, long_term):
        entry = await long_term.create("t1", "x")
        assert await long_term.delete("t1", entry.id) is True
        assert await long_term.get("t1", entry.id) is None

    async def test_delete_missing_returns_false(self, long_term):
        assert await long_term.delete("t1", "missing") is False

    async def test_delete_other_tenant_returns_false(self, long_term):
        entry = await long_term.create("t1", "x")
        assert await long_term.delete("t2", entry.id) is False
        assert await long_term.get("t1", entry.id) is not None


class TestListing:
    async def test_default_sort_newest_first(self, long_term, clock):
        entries = await _fill(long_term, clock, "t1", 3)
        page = await long_term.list("t1")
        assert [e.id for e in page.items] == [e.id for e in reversed(entries)]
        assert page.total_count == 3
        assert page.has_next_page is False
        assert page.has_previous_page is False

    async def test_ascending_sort(self, long_term, clock):
        entries = await _fill(long_term, clock, "t1", 3)
        page = await long_term.list("t1", sort_order="asc")
        assert [e.id for e in page.items] == [e.id for e in entries]

    async def test_sort_by_updated_at(self, long_term, clock):
        first, second = await _fill(long_term, clock, "t1", 2)
        await long_term.update("t1", first.id, content="touched")
        page = await long_term.list("t1", sort_by="updated_at")
        assert [e.id for e in page.items] == [first.id, second.id]

    async def test_cursor_pagination(self, long_term, clock):
        entries = list(reversed(await _fill(long_term, clock, "t1", 5)))

        first = await long_term.list("t1", limit=2)
        assert [e.id for e in first.items] == [e.id for e in entries[:2]]
        assert first.has_next_page is True
        assert first.start_cursor == entries[0].id
        assert first.end_cursor == entries[1].id

        second = await long_term.list("t1", limit=2, cursor=first.end_cursor)
        assert [e.id for e in second.items] == [e.id for e in entries[2:4]]
        assert second.has_previous_page is True
        assert second.has_next_page is True

        third = await long_term.list("t1", limit=2, cursor=second.end_cursor)
        assert [e.id for e in third.items] == [entries[4].id]
        assert third.has_next_page is False
        assert third.total_count == 5

    async def test_cursor_pagination_with_equal_timestamps(self, long_term):
        for i in range(4):
            await long_term.create("t1", f"same time {i}")
        first = await long_term.list("t1", limit=2)
        second = await long_term.list("t1", limit=2, cursor=first.end_cursor)
        ids = [e.id for e in first.items + second.items]
        assert len(set(ids)) == 4

    async def test_unknown_cursor_yields_empty_page(self, long_term, clock):
        await _fill(long_term, clock, "t1", 2)
        page = await long_term.list("t1", cursor="no-such-id")
        assert page.items == []
        assert page.has_previous_page is True
        assert page.total_count == 2

    async def test_tag_filter_is_or(self, long_term):
        await long_term.create("t1", "a", tags=["a", "x"])
        await long_term.create("t1", "b", tags=["b"])
        await long_term.create("t1", "c", tags=["c"])
        page = await long_term.list("t1", tags=["a", "b"])
        assert sorted(e.content for e in page.items) == ["a", "b"]
        assert page.total_count == 2

    async def test_date_range_is_inclusive(self, long_term, clock):
        start = clock()
        await _fill(long_term, clock, "t1", 4)
        page = await long_term.list(
            "t1", date_from=start + timedelta(seconds=10), date_to=start + timedelta(seconds=20)
        )
        assert sorted(e.content for e in page.items) == ["memory 1", "memory 2"]

    async def test_search_case_insensitive_substring(self, long_term):
        await long_term.create("t1", "Remember the Alamo")
        await long_term.create("t1", "forget it")
        page = await long_term.list("t1", search="alamo")
        assert [e.content for e in page.items] == ["Remember the Alamo"]

    async def test_search_treats_wildcards_literally(self, long_term):
        await long_term.create("t1", "100% sure")
        await long_term.create("t1", "1000 things")
        page = await long_term.list("t1", search="100%")
        assert [e.content for e in page.items] == ["100% sure"]

    async def test_limit_above_max_rejected(self, long_term):
        with pytest.raises(MemoryValidationError):
            await long_term.list("t1", limit=101)

    async def test_invalid_sort_rejected(self, long_term):
        with pytest.raises(MemoryValidationError):
            await long_term.list("t1", sort_by="content")

    async def test_listing_is_tenant_scoped(self, long_term):
        await long_term.create("t1", "mine")
        await long_term.create("t2", "theirs")
        page = await long_term.list("t1")
        assert [e.content for e in page.items] == ["mine"]
        assert page.total_count == 1


class TestCountAndClear:
    async def test_count_with_filters(self, long_term):
        await long_term.create("t1", "alpha", tags=["x"])
        await long_term.create("t1", "beta", tags=["y"])
        await long_term.create("t2", "alpha", tags=["x"])
        assert await long_term.count("t1") == 2
        assert await long_term.count("t1", tags=["x"]) == 1
        assert await long_term.count("t1", search="BET") == 1

    async def test_clear(self, long_term):
        for i in range(3):
            await long_term.create("t1", f"m{i}")
        await long_term.create("t2", "keep")
        assert await long_term.clear("t1") == 3
        assert await long_term.count("t1") == 0
        assert await long_term.count("t2") == 1


class TestQuota:
    async def test_create_at_quota_rejected(self, small_quota):
        for i in range(3):
            await small_quota.create("t1", f"m{i}")
        with pytest.raises(QuotaExceededError) as excinfo:
            await small_quota.create("t1", "one too many")
        assert excinfo.value.limit == 3
        assert await small_quota.count("t1") == 3

    async def test_quota_is_per_tenant(self, small_quota):
        for i in range(3):
            await small_quota.create("t1", f"m{i}")
        assert (await small_quota.create("t2", "fine")).tenant_id == "t2"

    async def test_concurrent_creates_respect_quota(self, small_quota):
        for i in range(2):
            await small_quota.create("t1", f"m{i}")
        results = await asyncio.gather(
            small_quota.create("t1", "racer a"),
            small_quota.create("t1", "racer b"),
            return_exceptions=True,
        )
        assert sum(1 for r in results if isinstance(r, QuotaExceededError)) == 1
        assert sum(1 for r in results if not isinstance(r, Exception)) == 1
        assert await small_quota.count("t1") == 3

    async def test_concurrent_promotions_respect_quota(self, small_quota, short_term):
        for i in range(2):
            await small_quota.create("t1", f"m{i}")
        a = await short_term.create("t1", "stm a")
        b = await short_term.create("t1", "stm b")
        results = await asyncio.gather(
            small_quota.promote("t1", a.id),
            small_quota.promote("t1", b.id),
            return_exceptions=True,
        )
        assert sum(1 for r in results if isinstance(r, QuotaExceededError)) == 1
        assert await small_quota.count("t1") == 3


class TestPromotion:
    async def test_promote_preserves_identity(self, long_term, short_term, clock):
        source = await short_term.create("t1", "x", metadata={"origin": "chat"}, tags=["a", "b"])
        clock.advance(120)

        promoted = await long_term.promote("t1", source.id)

        assert promoted.id == source.id
        assert promoted.tenant_id == source.tenant_id
        assert promoted.content == source.content
        assert promoted.metadata == source.metadata
        assert promoted.tags == ["a", "b"]
        assert promoted.created_at == source.created_at
        assert promoted.updated_at == clock()
        assert promoted.expires_at is None
        assert promoted.tier is MemoryTier.LONG_TERM

        with pytest.raises(NotFoundError):
            await short_term.find_by_id("t1", source.id)
        assert await long_term.get("t1", source.id) == promoted

    async def test_promote_requires_short_term_store(self, session_factory):
        store = LongTermStore(session_factory)
        with pytest.raises(PromotionError, match="not available"):
            await store.promote("t1", "any")

    async def test_promote_missing_entry(self, long_term):
        with pytest.raises(PromotionError, match="not found"):
            await long_term.promote("t1", "missing")

    async def test_promote_expired_entry(self, long_term, short_term, fake_redis, clock):
        fake_redis.evict_expired = False
        source = await short_term.create("t1", "x", ttl_seconds=60)
        clock.advance(61)
        with pytest.raises(PromotionError):
            await long_term.promote("t1", source.id)
        assert await long_term.get("t1", source.id) is None

    async def test_promote_other_tenants_entry(self, long_term, short_term):
        source = await short_term.create("t1", "x")
        with pytest.raises(PromotionError):
            await long_term.promote("t2", source.id)
        assert (await short_term.find_by_id("t1", source.id)).content == "x"

    async def test_promote_over_quota_keeps_short_term_entry(self, small_quota, short_term):
        for i in range(3):
            await small_quota.create("t1", f"m{i}")
        source = await short_term.create("t1", "x")
        with pytest.raises(QuotaExceededError):
            await small_quota.promote("t1", source.id)
        assert (await short_term.find_by_id("t1", source.id)).content == "x"
        assert await small_quota.get("t1", source.id) is None

    async def test_short_term_delete_failure_does_not_fail_promotion(self, long_term, short_term, caplog):
        source = await short_term.create("t1", "x")
        short_term.delete = AsyncMock(
            side_effect=StoreError("short_term.delete", RedisConnectionError("down"))
        )
        promoted = await long_term.promote("t1", source.id)
        assert promoted.id == source.id
        assert await long_term.get("t1", source.id) is not None
        assert "Failed to delete short-term memory" in caplog.text

    async def test_repeat_promotion_of_lingering_copy_rejected(self, long_term, short_term):
        source = await short_term.create("t1", "x")
        short_term.delete = AsyncMock(
            side_effect=StoreError("short_term.delete", RedisConnectionError("down"))
        )
        await long_term.promote("t1", source.id)
        with pytest.raises(PromotionError, match="already exists"):
            await long_term.promote("t1", source.id)
        assert await long_term.count("t1") == 1


class TestStoreErrors:
    async def test_database_failure_wrapped(self, long_term, db_engine):
        async with db_engine.begin() as conn:
            await conn.run_sync(Base.metadata.drop_all)
        with pytest.raises(StoreError) as excinfo:
            await long_term.get("t1", "any")
        assert excinfo.value.operation == "long_term.get"

    async def test_create_failure_wrapped(self, long_term, db_engine):
        async with db_engine.begin() as conn:
            await conn.run_sync(Base.metadata.drop_all)
        with pytest.raises(StoreError, match="long_term.create"):
            await long_term.create("t1", "x")
