"""Redis connection for the short-term memory tier.

Key pattern:
  memory:stm:{tenant_id}:{entry_id}: short-term memory (JSON, per-key TTL)

The client is created once and shared; close() releases the pool.
"""

from __future__ import annotations

from dataclasses import dataclass

import redis.asyncio as aioredis


@dataclass
class RedisConfig:
    host: str = "localhost"
    port: int = 6379
    password: str | None = None
    db: int = 0
    max_connections: int = 20
    socket_timeout: float | None = 5.0


class RedisManager:
    """Owns the redis.asyncio client used by ShortTermStore."""

    def __init__(self, config: RedisConfig) -> None:
        self.config = config
        self._client: aioredis.Redis | None = None

    def get_url(self) -> str:
        auth = f":{self.config.password}@" if self.config.password else ""
        return f"redis://{auth}{self.config.host}:{self.config.port}/{self.config.db}"

    def get_client(self) -> aioredis.Redis:
        if self._client is None:
            self._client = aioredis.from_url(
                self.get_url(),
                max_connections=self.config.max_connections,
                socket_timeout=self.config.socket_timeout,
                decode_responses=True,
            )
        return self._client

    async def ping(self) -> bool:
        return bool(await self.get_client().ping())

    async def close(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None
