"""Process wiring: logging, clients, stores and the coordinator."""

from __future__ import annotations

import logging
from dataclasses import dataclass

from sqlalchemy.ext.asyncio import AsyncEngine

from engram.config import EngramSettings
from engram.db.engine import create_engine, get_session_factory, init_schema
from engram.memory.coordinator import TieredMemoryCoordinator
from engram.memory.long_term import LongTermStore
from engram.memory.short_term import ShortTermStore
from engram.redis.client import RedisManager

logger = logging.getLogger(__name__)


def configure_logging(level: str = "INFO") -> None:
    logging.basicConfig(level=level.upper(), format="%(asctime)s %(name)s %(levelname)s %(message)s")


@dataclass
class MemoryRuntime:
    coordinator: TieredMemoryCoordinator
    redis: RedisManager
    engine: AsyncEngine

    async def close(self) -> None:
        await self.redis.close()
        await self.engine.dispose()
        logger.info("Memory runtime closed")


async def build_runtime(settings: EngramSettings | None = None, create_schema: bool = True) -> MemoryRuntime:
    settings = settings or EngramSettings()

    redis = RedisManager(settings.redis_config())
    engine = create_engine(
        settings.database_url, echo=settings.database_echo, pool_size=settings.database_pool_size
    )
    if create_schema:
        await init_schema(engine)

    short_term = ShortTermStore(redis.get_client(), settings.short_term_config())
    long_term = LongTermStore(
        get_session_factory(engine), short_term=short_term, config=settings.long_term_config()
    )
    logger.info("Memory runtime ready (redis=%s:%s)", settings.redis_host, settings.redis_port)
    return MemoryRuntime(
        coordinator=TieredMemoryCoordinator(short_term, long_term), redis=redis, engine=engine,
    )
