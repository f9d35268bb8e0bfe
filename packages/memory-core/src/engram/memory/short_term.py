"""Short-term memory store: Redis with per-key TTL.

Each entry is a JSON document under memory:stm:{tenant_id}:{entry_id}
whose Redis TTL is the real deletion mechanism. Reads also compare
expires_at with the clock, so a key Redis has not evicted yet is still
reported as expired.
"""

from __future__ import annotations

import logging
import uuid
from datetime import datetime, timedelta
from typing import Any, Callable

import redis.asyncio as aioredis
from pydantic import ValidationError
from redis.exceptions import RedisError

from engram.config import ShortTermConfig
from engram.errors import (
    ExpiredError,
    MemoryValidationError,
    NotFoundError,
    TtlValidationError,
    translate_errors,
)
from engram.keys import KeyBuilder
from engram.models import (
    MemoryDraft,
    MemoryEntry,
    MemoryTier,
    MemoryUpdate,
    PaginatedResult,
    utcnow,
    validate_input,
)

logger = logging.getLogger(__name__)

_TIER = MemoryTier.SHORT_TERM.value


class ShortTermStore:
    def __init__(
        self,
        client: aioredis.Redis,
        config: ShortTermConfig | None = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._redis = client
        self._config = config or ShortTermConfig()
        self._keys = KeyBuilder(self._config.key_prefix)
        self._clock = clock

    @property
    def keys(self) -> KeyBuilder:
        return self._keys

    def validate_ttl(self, ttl: Any) -> int:
        lo, hi = self._config.min_ttl, self._config.max_ttl
        if isinstance(ttl, bool) or not isinstance(ttl, int) or not lo <= ttl <= hi:
            raise TtlValidationError(ttl, lo, hi)
        return ttl

    async def create(
        self,
        tenant_id: str,
        content: str,
        metadata: dict[str, Any] | None = None,
        tags: list[str] | None = None,
        ttl_seconds: int | None = None,
    ) -> MemoryEntry:
        logger.debug("Creating short-term memory for tenant %s", tenant_id)
        draft = validate_input(MemoryDraft, content=content, metadata=metadata, tags=tags or [])
        ttl = self.validate_ttl(self._config.default_ttl if ttl_seconds is None else ttl_seconds)

        entry_id = str(uuid.uuid4())
        key = self._keys.entry_key(tenant_id, entry_id)
        now = self._clock()
        entry = MemoryEntry(
            id=entry_id,
            tenant_id=tenant_id,
            content=draft.content,
            metadata=draft.metadata,
            tags=list(draft.tags),
            tier=MemoryTier.SHORT_TERM,
            created_at=now,
            updated_at=now,
            expires_at=now + timedelta(seconds=ttl),
            ttl_seconds=ttl,
        )
        await self._write(key, entry, "create")
        logger.debug("Short-term memory %s created, expires at %s", entry_id, entry.expires_at.isoformat())
        return entry

    async def find_by_id(self, tenant_id: str, entry_id: str) -> MemoryEntry:
        key = self._keys.entry_key(tenant_id, entry_id)
        with translate_errors("short_term.find_by_id", RedisError):
            raw = await self._redis.get(key)
        if raw is None:
            raise NotFoundError(entry_id, _TIER)

        entry = self._decode(key, raw, tenant_id)
        if entry is None:
            raise NotFoundError(entry_id, _TIER)
        if self._is_expired(entry):
            logger.debug("Short-term memory %s is past expires_at, removing", entry_id)
            await self._discard([key])
            raise ExpiredError(entry_id)
        return entry

    async def update(
        self,
        tenant_id: str,
        entry_id: str,
        changes: MemoryUpdate | None = None,
        **fields: Any,
    ) -> MemoryEntry:
        """Apply the provided fields and restart the TTL countdown from now.

        Every update refreshes expires_at, even when ttl_seconds is unchanged.
        """
        if changes is None:
            changes = validate_input(MemoryUpdate, **fields)
        logger.debug("Updating short-term memory %s for tenant %s", entry_id, tenant_id)

        existing = await self.find_by_id(tenant_id, entry_id)
        if changes.provided("ttl_seconds"):
            ttl = changes.ttl_seconds
        else:
            ttl = existing.ttl_seconds or self._config.default_ttl
        ttl = self.validate_ttl(ttl)

        now = self._clock()
        values: dict[str, Any] = {
            "updated_at": now,
            "expires_at": now + timedelta(seconds=ttl),
            "ttl_seconds": ttl,
        }
        if changes.provided("content"):
            values["content"] = changes.content
        if changes.provided("metadata"):
            values["metadata"] = changes.metadata
        if changes.provided("tags"):
            values["tags"] = list(changes.tags)
        updated = existing.model_copy(update=values)

        await self._write(self._keys.entry_key(tenant_id, entry_id), updated, "update")
        return updated

    async def delete(self, tenant_id: str, entry_id: str) -> None:
        key = self._keys.entry_key(tenant_id, entry_id)
        with translate_errors("short_term.delete", RedisError):
            removed = await self._redis.delete(key)
        if removed == 0:
            raise NotFoundError(entry_id, _TIER)
        logger.debug("Short-term memory %s deleted", entry_id)

    async def get_ttl(self, tenant_id: str, entry_id: str) -> int:
        key = self._keys.entry_key(tenant_id, entry_id)
        with translate_errors("short_term.get_ttl", RedisError):
            remaining = await self._redis.ttl(key)
        if remaining == -2:
            raise NotFoundError(entry_id, _TIER)
        if remaining == -1:
            logger.warning("Short-term memory %s has no TTL set", entry_id)
            return 0
        return int(remaining)

    async def extend_ttl(self, tenant_id: str, entry_id: str, additional_seconds: int) -> MemoryEntry:
        logger.debug("Extending TTL of short-term memory %s by %s seconds", entry_id, additional_seconds)
        current = await self.get_ttl(tenant_id, entry_id)
        new_ttl = self.validate_ttl(current + additional_seconds)
        return await self.update(tenant_id, entry_id, MemoryUpdate(ttl_seconds=new_ttl))

    async def list(
        self,
        tenant_id: str,
        *,
        limit: int = 20,
        cursor: str | None = None,
        tags: list[str] | None = None,
        search: str | None = None,
    ) -> PaginatedResult:
        """One page of the tenant's entries, in SCAN order.

        Cursors have the form "{scan_cursor}:{skip}": the SCAN cursor that
        produced the batch the page stopped in, and how many matches of that
        batch were already returned.
        """
        max_page_size = self._config.max_page_size
        if not 1 <= limit <= max_page_size:
            raise MemoryValidationError(f"limit must be between 1 and {max_page_size}")
        scan_cursor, skip = self._parse_cursor(cursor)
        pattern = self._keys.tenant_pattern(tenant_id)

        items: list[MemoryEntry] = []
        next_cursor: str | None = None
        while True:
            batch_cursor = scan_cursor
            scan_cursor, keys = await self._scan(scan_cursor, pattern, "short_term.list")
            matched = [
                e for e in await self._load_many(tenant_id, keys)
                if e.matches_tags(tags) and e.matches_search(search)
            ]
            already_returned, skip = skip, 0
            matched = matched[already_returned:]

            room = limit - len(items)
            if len(matched) > room:
                items.extend(matched[:room])
                next_cursor = f"{batch_cursor}:{already_returned + room}"
                break
            items.extend(matched)
            if scan_cursor == 0:
                break
            if len(items) >= limit:
                next_cursor = f"{scan_cursor}:0"
                break

        total = await self.count(tenant_id, tags=tags, search=search)
        logger.debug("Listed %d short-term memories for tenant %s", len(items), tenant_id)
        return PaginatedResult(
            items=items,
            total_count=total,
            has_next_page=next_cursor is not None,
            has_previous_page=cursor is not None,
            start_cursor=cursor,
            end_cursor=next_cursor,
        )

    async def count(
        self,
        tenant_id: str,
        *,
        tags: list[str] | None = None,
        search: str | None = None,
    ) -> int:
        """Approximate count; SCAN may repeat keys across batches."""
        pattern = self._keys.tenant_pattern(tenant_id)
        total = 0
        scan_cursor = 0
        while True:
            scan_cursor, keys = await self._scan(scan_cursor, pattern, "short_term.count")
            if tags or search:
                entries = await self._load_many(tenant_id, keys)
                total += sum(1 for e in entries if e.matches_tags(tags) and e.matches_search(search))
            else:
                total += len(keys)
            if scan_cursor == 0:
                return total

    async def clear(self, tenant_id: str) -> int:
        logger.debug("Clearing all short-term memories for tenant %s", tenant_id)
        pattern = self._keys.tenant_pattern(tenant_id)
        deleted = 0
        scan_cursor = 0
        while True:
            scan_cursor, keys = await self._scan(scan_cursor, pattern, "short_term.clear")
            if keys:
                with translate_errors("short_term.clear", RedisError):
                    deleted += await self._redis.delete(*keys)
            if scan_cursor == 0:
                break
        logger.debug("Cleared %d short-term memories for tenant %s", deleted, tenant_id)
        return deleted

    # -- internals --------------------------------------------------------

    async def _write(self, key: str, entry: MemoryEntry, operation: str) -> None:
        # Content and physical TTL always go out in the same SET.
        with translate_errors(f"short_term.{operation}", RedisError):
            await self._redis.set(key, entry.model_dump_json(), ex=entry.ttl_seconds)

    async def _scan(self, scan_cursor: int, pattern: str, operation: str) -> tuple[int, list[str]]:
        with translate_errors(operation, RedisError):
            next_cursor, keys = await self._redis.scan(
                scan_cursor, match=pattern, count=self._config.scan_batch_size
            )
        return int(next_cursor), list(keys)

    async def _load_many(self, tenant_id: str, keys: list[str]) -> list[MemoryEntry]:
        if not keys:
            return []
        with translate_errors("short_term.mget", RedisError):
            values = await self._redis.mget(keys)

        entries: list[MemoryEntry] = []
        stale: list[str] = []
        for key, raw in zip(keys, values):
            if raw is None:
                continue
            entry = self._decode(key, raw, tenant_id)
            if entry is None:
                continue
            if self._is_expired(entry):
                stale.append(key)
                continue
            entries.append(entry)
        if stale:
            await self._discard(stale)
        return entries

    def _decode(self, key: str, raw: str | bytes, tenant_id: str) -> MemoryEntry | None:
        try:
            entry = MemoryEntry.model_validate_json(raw)
        except ValidationError:
            logger.error("Corrupt short-term payload under %s", key)
            return None
        if entry.tenant_id != tenant_id or entry.id != self._keys.extract_entry_id(key):
            logger.error("Short-term payload under %s belongs to another key", key)
            return None
        return entry

    def _is_expired(self, entry: MemoryEntry) -> bool:
        return entry.expires_at is not None and self._clock() >= entry.expires_at

    async def _discard(self, keys: list[str]) -> None:
        try:
            await self._redis.delete(*keys)
        except RedisError:
            logger.warning("Failed to remove %d expired short-term key(s)", len(keys), exc_info=True)

    @staticmethod
    def _parse_cursor(cursor: str | None) -> tuple[int, int]:
        if cursor is None:
            return 0, 0
        try:
            scan_part, _, skip_part = cursor.partition(":")
            scan_cursor, skip = int(scan_part), int(skip_part or 0)
        except ValueError:
            raise MemoryValidationError(f"Invalid short-term cursor: {cursor!r}") from None
        if scan_cursor < 0 or skip < 0:
            raise MemoryValidationError(f"Invalid short-term cursor: {cursor!r}")
        return scan_cursor, skip
