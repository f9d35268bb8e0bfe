"""Tiered memory coordinator: the single caller-facing interface.

Reads resolve short-term first and fall back to long-term; listings merge
both tiers newest-first. Only "not found" from a tier triggers a fallback,
every other failure propagates.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Any

from engram.errors import MemoryValidationError, NotFoundError, StoreError
from engram.keys import validate_tenant_id
from engram.memory.long_term import LongTermStore
from engram.memory.short_term import ShortTermStore
from engram.models import MemoryEntry, MemoryTier, MemoryUpdate, PaginatedResult, validate_input

logger = logging.getLogger(__name__)


@dataclass
class PurgeResult:
    tenant_id: str
    short_term_deleted: int
    long_term_deleted: int

    @property
    def total(self) -> int:
        return self.short_term_deleted + self.long_term_deleted


class TieredMemoryCoordinator:
    def __init__(self, short_term: ShortTermStore, long_term: LongTermStore) -> None:
        self.short_term = short_term
        self.long_term = long_term

    async def create(
        self,
        tenant_id: str,
        content: str,
        tier: MemoryTier | str,
        metadata: dict[str, Any] | None = None,
        tags: list[str] | None = None,
        ttl_seconds: int | None = None,
    ) -> MemoryEntry:
        validate_tenant_id(tenant_id)
        tier = _parse_tier(tier)
        logger.debug("Creating %s memory for tenant %s", tier.value, tenant_id)
        if tier is MemoryTier.SHORT_TERM:
            return await self.short_term.create(tenant_id, content, metadata, tags, ttl_seconds)
        return await self.long_term.create(tenant_id, content, metadata, tags)

    async def get(self, tenant_id: str, entry_id: str) -> MemoryEntry | None:
        validate_tenant_id(tenant_id)
        try:
            return await self.short_term.find_by_id(tenant_id, entry_id)
        except NotFoundError:
            logger.debug("Memory %s not in short-term, checking long-term", entry_id)
        return await self.long_term.get(tenant_id, entry_id)

    async def list(
        self,
        tenant_id: str,
        *,
        limit: int = 20,
        cursor: str | None = None,
        tags: list[str] | None = None,
        search: str | None = None,
        tier: MemoryTier | str | None = None,
    ) -> PaginatedResult:
        """Fresh top-N merge of both tiers, newest first.

        The cursor is handed to the long-term tier (an entry id there); the
        short-term tier is always read from the start of its scan.
        """
        validate_tenant_id(tenant_id)
        tier = _parse_tier(tier) if tier is not None else None
        logger.debug("Listing memories for tenant %s (limit=%s, tier=%s)", tenant_id, limit, tier)

        # A single-tier listing returns that tier's own page and cursors.
        if tier is MemoryTier.SHORT_TERM:
            return await self.short_term.list(tenant_id, limit=limit, cursor=cursor, tags=tags, search=search)
        if tier is MemoryTier.LONG_TERM:
            return await self.long_term.list(tenant_id, limit=limit, cursor=cursor, tags=tags, search=search)

        short_page, long_page = await asyncio.gather(
            self._short_term_page(tenant_id, limit, tags, search),
            self.long_term.list(tenant_id, limit=limit, cursor=cursor, tags=tags, search=search),
        )

        combined = sorted(short_page.items + long_page.items, key=lambda e: e.created_at, reverse=True)
        page = combined[:limit]
        return PaginatedResult(
            items=page,
            total_count=short_page.total_count + long_page.total_count,
            has_next_page=len(combined) > limit or short_page.has_next_page or long_page.has_next_page,
            has_previous_page=long_page.has_previous_page,
            start_cursor=page[0].id if page else None,
            end_cursor=page[-1].id if page else None,
        )

    async def update(
        self,
        tenant_id: str,
        entry_id: str,
        changes: MemoryUpdate | None = None,
        **fields: Any,
    ) -> MemoryEntry:
        if changes is None:
            changes = validate_input(MemoryUpdate, **fields)
        validate_tenant_id(tenant_id)
        try:
            return await self.short_term.update(tenant_id, entry_id, changes)
        except NotFoundError:
            logger.debug("Memory %s not in short-term, trying long-term", entry_id)

        if await self.long_term.get(tenant_id, entry_id) is None:
            raise NotFoundError(entry_id)
        return await self.long_term.update(tenant_id, entry_id, changes)

    async def delete(self, tenant_id: str, entry_id: str) -> bool:
        validate_tenant_id(tenant_id)
        deleted_short = False
        try:
            await self.short_term.delete(tenant_id, entry_id)
            deleted_short = True
            logger.debug("Memory %s deleted from short-term", entry_id)
        except NotFoundError:
            pass

        deleted_long = await self.long_term.delete(tenant_id, entry_id)
        return deleted_short or deleted_long

    async def promote(self, tenant_id: str, entry_id: str) -> MemoryEntry:
        logger.debug("Promoting memory %s for tenant %s", entry_id, tenant_id)
        return await self.long_term.promote(tenant_id, entry_id)

    async def purge_tenant(self, tenant_id: str) -> PurgeResult:
        """Erase every memory the tenant holds in both tiers."""
        validate_tenant_id(tenant_id)
        short_deleted = await self.short_term.clear(tenant_id)
        long_deleted = await self.long_term.clear(tenant_id)
        logger.info(
            "Purged tenant %s: %d short-term, %d long-term", tenant_id, short_deleted, long_deleted
        )
        return PurgeResult(tenant_id, short_deleted, long_deleted)

    async def _short_term_page(
        self, tenant_id: str, limit: int, tags: list[str] | None, search: str | None
    ) -> PaginatedResult:
        # Listing treats the short-term tier as advisory.
        try:
            return await self.short_term.list(tenant_id, limit=limit, tags=tags, search=search)
        except StoreError:
            logger.warning("Short-term listing failed for tenant %s, using long-term only", tenant_id, exc_info=True)
            return PaginatedResult()


def _parse_tier(tier: MemoryTier | str) -> MemoryTier:
    try:
        return MemoryTier(tier)
    except ValueError:
        raise MemoryValidationError(f"Unknown memory tier: {tier!r}") from None
