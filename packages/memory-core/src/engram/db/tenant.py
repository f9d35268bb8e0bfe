"""Per-tenant write serialisation for quota-checked inserts.

Count-then-insert must not interleave for one tenant:
1. Hold the in-process lock for the tenant for the whole transaction
2. On PostgreSQL, also take pg_advisory_xact_lock inside the transaction
   so other processes queue behind it until COMMIT/ROLLBACK
"""

from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager
from typing import AsyncIterator

from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession


class TenantLocks:
    """Per-tenant asyncio locks, dropped once no task holds or awaits them."""

    def __init__(self) -> None:
        self._locks: dict[str, asyncio.Lock] = {}
        self._users: dict[str, int] = {}

    def __len__(self) -> int:
        return len(self._locks)

    @asynccontextmanager
    async def hold(self, tenant_id: str) -> AsyncIterator[None]:
        lock = self._locks.setdefault(tenant_id, asyncio.Lock())
        self._users[tenant_id] = self._users.get(tenant_id, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._users[tenant_id] -= 1
            if not self._users[tenant_id]:
                del self._users[tenant_id]
                del self._locks[tenant_id]


async def lock_tenant(session: AsyncSession, tenant_id: str) -> None:
    """Take a transaction-scoped advisory lock for the tenant.

    No-op on dialects without advisory locks.
    """
    if session.get_bind().dialect.name != "postgresql":
        return
    await session.execute(
        text("SELECT pg_advisory_xact_lock(hashtext(:tenant_id))"),
        {"tenant_id": tenant_id},
    )
