"""Long-term memory store: PostgreSQL rows that never expire.

Production: the memories table from engram.db.models. Quota-checked
inserts (create, promote) run count-then-insert in one transaction under
a per-tenant lock.
"""

from __future__ import annotations

import logging
import uuid
from datetime import datetime
from typing import Any, Callable

from sqlalchemy import String, and_, delete, exists, func, or_, select, type_coerce
from sqlalchemy.dialects import postgresql
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from sqlalchemy.sql.elements import ColumnElement

from engram.config import LongTermConfig
from engram.db.models import MemoryRecord
from engram.db.tenant import TenantLocks, lock_tenant
from engram.errors import (
    MemoryValidationError,
    NotFoundError,
    PromotionError,
    QuotaExceededError,
    StoreError,
    translate_errors,
)
from engram.keys import validate_tenant_id
from engram.memory.short_term import ShortTermStore
from engram.models import (
    LongTermQuery,
    MemoryDraft,
    MemoryEntry,
    MemoryTier,
    MemoryUpdate,
    PaginatedResult,
    as_utc,
    utcnow,
    validate_input,
)

logger = logging.getLogger(__name__)

_TIER = MemoryTier.LONG_TERM.value


class LongTermStore:
    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        short_term: ShortTermStore | None = None,
        config: LongTermConfig | None = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._sessions = session_factory
        self._short_term = short_term
        self._config = config or LongTermConfig()
        self._clock = clock
        self._tenant_locks = TenantLocks()

    async def create(
        self,
        tenant_id: str,
        content: str,
        metadata: dict[str, Any] | None = None,
        tags: list[str] | None = None,
    ) -> MemoryEntry:
        logger.debug("Creating long-term memory for tenant %s", tenant_id)
        validate_tenant_id(tenant_id)
        draft = validate_input(MemoryDraft, content=content, metadata=metadata, tags=tags or [])
        now = self._clock()
        record = MemoryRecord(
            id=str(uuid.uuid4()),
            user_id=tenant_id,
            content=draft.content,
            metadata_=draft.metadata,
            tags=list(draft.tags),
            type=_TIER,
            created_at=now,
            updated_at=now,
            expires_at=None,
        )
        entry = await self._insert_within_quota(tenant_id, record, "long_term.create")
        logger.debug("Long-term memory %s created", entry.id)
        return entry

    async def get(self, tenant_id: str, entry_id: str) -> MemoryEntry | None:
        validate_tenant_id(tenant_id)
        with translate_errors("long_term.get", SQLAlchemyError):
            async with self._sessions() as session:
                record = await self._find(session, tenant_id, entry_id)
                return _to_entry(record) if record is not None else None

    async def update(
        self,
        tenant_id: str,
        entry_id: str,
        changes: MemoryUpdate | None = None,
        **fields: Any,
    ) -> MemoryEntry:
        """Apply only the provided fields. ttl_seconds is ignored in this tier."""
        if changes is None:
            changes = validate_input(MemoryUpdate, **fields)
        validate_tenant_id(tenant_id)
        logger.debug("Updating long-term memory %s for tenant %s", entry_id, tenant_id)

        with translate_errors("long_term.update", SQLAlchemyError):
            async with self._sessions() as session, session.begin():
                record = await self._find(session, tenant_id, entry_id)
                if record is None:
                    raise NotFoundError(entry_id, _TIER)
                if changes.provided("content"):
                    record.content = changes.content
                if changes.provided("metadata"):
                    record.metadata_ = changes.metadata
                if changes.provided("tags"):
                    record.tags = list(changes.tags)
                record.updated_at = self._clock()
            return _to_entry(record)

    async def delete(self, tenant_id: str, entry_id: str) -> bool:
        validate_tenant_id(tenant_id)
        with translate_errors("long_term.delete", SQLAlchemyError):
            async with self._sessions() as session, session.begin():
                result = await session.execute(
                    delete(MemoryRecord).where(
                        MemoryRecord.id == entry_id, *_scope(tenant_id)
                    )
                )
        deleted = result.rowcount > 0
        if deleted:
            logger.debug("Long-term memory %s deleted", entry_id)
        else:
            logger.debug("Long-term memory %s not found for deletion", entry_id)
        return deleted

    async def list(
        self,
        tenant_id: str,
        *,
        limit: int | None = None,
        cursor: str | None = None,
        tags: list[str] | None = None,
        date_from: datetime | None = None,
        date_to: datetime | None = None,
        search: str | None = None,
        sort_by: str = "created_at",
        sort_order: str = "desc",
    ) -> PaginatedResult:
        validate_tenant_id(tenant_id)
        query = validate_input(
            LongTermQuery,
            limit=limit if limit is not None else self._config.default_page_size,
            cursor=cursor,
            tags=tags,
            date_from=date_from,
            date_to=date_to,
            search=search,
            sort_by=sort_by,
            sort_order=sort_order,
        )
        if query.limit > self._config.max_page_size:
            raise MemoryValidationError(f"limit cannot exceed {self._config.max_page_size}")
        logger.debug("Listing long-term memories for tenant %s", tenant_id)

        sort_column = getattr(MemoryRecord, query.sort_by)
        descending = query.sort_order == "desc"

        with translate_errors("long_term.list", SQLAlchemyError):
            async with self._sessions() as session:
                conditions = self._filters(
                    session, tenant_id, query.tags, query.date_from, query.date_to, query.search
                )
                total = await session.scalar(select(func.count()).select_from(MemoryRecord).where(*conditions))

                stmt = select(MemoryRecord).where(*conditions)
                if query.cursor is not None:
                    anchor = await self._find(session, tenant_id, query.cursor)
                    if anchor is None:
                        # Unknown cursor: nothing comes after it.
                        return PaginatedResult(total_count=total or 0, has_previous_page=True)
                    stmt = stmt.where(_after(sort_column, getattr(anchor, query.sort_by), anchor.id, descending))

                if descending:
                    stmt = stmt.order_by(sort_column.desc(), MemoryRecord.id.desc())
                else:
                    stmt = stmt.order_by(sort_column.asc(), MemoryRecord.id.asc())
                rows = list((await session.scalars(stmt.limit(query.limit + 1))).all())

        has_next_page = len(rows) > query.limit
        if has_next_page:
            rows.pop()
        items = [_to_entry(r) for r in rows]
        logger.debug("Listed %d long-term memories for tenant %s", len(items), tenant_id)
        return PaginatedResult(
            items=items,
            total_count=total or 0,
            has_next_page=has_next_page,
            has_previous_page=query.cursor is not None,
            start_cursor=items[0].id if items else None,
            end_cursor=items[-1].id if items else None,
        )

    async def count(
        self,
        tenant_id: str,
        *,
        tags: list[str] | None = None,
        date_from: datetime | None = None,
        date_to: datetime | None = None,
        search: str | None = None,
    ) -> int:
        validate_tenant_id(tenant_id)
        with translate_errors("long_term.count", SQLAlchemyError):
            async with self._sessions() as session:
                conditions = self._filters(session, tenant_id, tags, date_from, date_to, search)
                total = await session.scalar(select(func.count()).select_from(MemoryRecord).where(*conditions))
        logger.debug("Counted %d long-term memories for tenant %s", total, tenant_id)
        return total or 0

    async def clear(self, tenant_id: str) -> int:
        validate_tenant_id(tenant_id)
        logger.debug("Clearing all long-term memories for tenant %s", tenant_id)
        with translate_errors("long_term.clear", SQLAlchemyError):
            async with self._sessions() as session, session.begin():
                result = await session.execute(delete(MemoryRecord).where(*_scope(tenant_id)))
        logger.debug("Cleared %d long-term memories for tenant %s", result.rowcount, tenant_id)
        return result.rowcount

    async def promote(self, tenant_id: str, entry_id: str) -> MemoryEntry:
        """Move a short-term entry into this tier, keeping its identity.

        The long-term row is committed first; removing the short-term copy
        afterwards is best effort. If that delete fails the copy lingers
        until its own TTL runs out.
        """
        logger.debug("Promoting memory %s to long-term for tenant %s", entry_id, tenant_id)
        validate_tenant_id(tenant_id)
        if self._short_term is None:
            raise PromotionError(entry_id, "short-term store not available for promotion")

        try:
            source = await self._short_term.find_by_id(tenant_id, entry_id)
        except NotFoundError as e:
            raise PromotionError(entry_id, f"memory not found in short-term storage ({e})") from e

        record = MemoryRecord(
            id=source.id,
            user_id=source.tenant_id,
            content=source.content,
            metadata_=source.metadata,
            tags=list(source.tags),
            type=_TIER,
            created_at=source.created_at,
            updated_at=self._clock(),
            expires_at=None,
        )
        entry = await self._insert_within_quota(tenant_id, record, "long_term.promote", reject_existing=True)

        try:
            await self._short_term.delete(tenant_id, entry_id)
        except (NotFoundError, StoreError) as e:
            logger.warning("Failed to delete short-term memory %s after promotion: %s", entry_id, e)
        else:
            logger.debug("Promoted memory %s from short-term to long-term", entry_id)
        return entry

    # -- internals --------------------------------------------------------

    async def _insert_within_quota(
        self, tenant_id: str, record: MemoryRecord, operation: str, reject_existing: bool = False,
    ) -> MemoryEntry:
        limit = self._config.max_memories_per_user
        with translate_errors(operation, SQLAlchemyError):
            async with self._tenant_locks.hold(tenant_id):
                async with self._sessions() as session, session.begin():
                    await lock_tenant(session, tenant_id)
                    if reject_existing and await self._find(session, tenant_id, record.id) is not None:
                        raise PromotionError(record.id, "memory already exists in long-term storage")
                    current = await session.scalar(
                        select(func.count()).select_from(MemoryRecord).where(*_scope(tenant_id))
                    )
                    logger.debug("Quota check for tenant %s: %s/%s", tenant_id, current, limit)
                    if current >= limit:
                        raise QuotaExceededError(tenant_id, limit)
                    session.add(record)
        return _to_entry(record)

    @staticmethod
    async def _find(session: AsyncSession, tenant_id: str, entry_id: str) -> MemoryRecord | None:
        return await session.scalar(
            select(MemoryRecord).where(MemoryRecord.id == entry_id, *_scope(tenant_id))
        )

    @staticmethod
    def _filters(
        session: AsyncSession,
        tenant_id: str,
        tags: list[str] | None,
        date_from: datetime | None,
        date_to: datetime | None,
        search: str | None,
    ) -> list[ColumnElement[bool]]:
        conditions = list(_scope(tenant_id))
        if tags:
            conditions.append(_has_any_tag(session.get_bind().dialect.name, tags))
        if date_from is not None:
            conditions.append(MemoryRecord.created_at >= as_utc(date_from))
        if date_to is not None:
            conditions.append(MemoryRecord.created_at <= as_utc(date_to))
        if search:
            conditions.append(MemoryRecord.content.icontains(search, autoescape=True))
        return conditions


def _scope(tenant_id: str) -> tuple[ColumnElement[bool], ...]:
    return (MemoryRecord.user_id == tenant_id, MemoryRecord.type == _TIER)


def _has_any_tag(dialect: str, tags: list[str]) -> ColumnElement[bool]:
    if dialect == "postgresql":
        return type_coerce(MemoryRecord.tags, postgresql.ARRAY(String)).overlap(tags)
    # JSON array elsewhere: match through SQLite's json_each table function.
    element = func.json_each(MemoryRecord.tags).table_valued("value")
    return exists(select(1).select_from(element).where(element.c.value.in_(tags)))


def _after(column, value, anchor_id: str, descending: bool) -> ColumnElement[bool]:
    """Rows strictly after the cursor row in (column, id) order."""
    if descending:
        return or_(column < value, and_(column == value, MemoryRecord.id < anchor_id))
    return or_(column > value, and_(column == value, MemoryRecord.id > anchor_id))


def _to_entry(record: MemoryRecord) -> MemoryEntry:
    return MemoryEntry(
        id=record.id,
        tenant_id=record.user_id,
        content=record.content,
        metadata=record.metadata_,
        tags=list(record.tags or []),
        tier=MemoryTier.LONG_TERM,
        created_at=record.created_at,
        updated_at=record.updated_at,
        expires_at=None,
    )
