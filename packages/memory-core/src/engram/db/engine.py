"""Database engine creation and session management."""

from __future__ import annotations

from sqlalchemy.ext.asyncio import create_async_engine, AsyncEngine, AsyncSession, async_sessionmaker

from engram.db.models import Base


def create_engine(url: str, **kwargs) -> AsyncEngine:
    """Create async SQLAlchemy engine."""
    options = {"echo": kwargs.get("echo", False), "pool_pre_ping": True}
    if not url.startswith("sqlite"):
        options["pool_size"] = kwargs.get("pool_size", 10)
        options["max_overflow"] = kwargs.get("max_overflow", 5)
    return create_async_engine(url, **options)


def get_session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    """Create session factory bound to engine."""
    return async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


async def init_schema(engine: AsyncEngine) -> None:
    """Create the memories table and its indexes if missing."""
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
