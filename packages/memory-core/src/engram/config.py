"""Configuration via environment variables (prefix ENGRAM_)."""

from __future__ import annotations

from dataclasses import dataclass

from pydantic_settings import BaseSettings, SettingsConfigDict

from engram.redis.client import RedisConfig


@dataclass
class ShortTermConfig:
    default_ttl: int = 86400   # 24 hours
    min_ttl: int = 60          # 1 minute
    max_ttl: int = 604800      # 7 days
    key_prefix: str = "memory:stm"
    scan_batch_size: int = 1000
    max_page_size: int = 100

    def __post_init__(self) -> None:
        if self.min_ttl > self.max_ttl:
            raise ValueError(f"min_ttl {self.min_ttl} exceeds max_ttl {self.max_ttl}")
        if not self.min_ttl <= self.default_ttl <= self.max_ttl:
            raise ValueError(f"default_ttl {self.default_ttl} outside [{self.min_ttl}, {self.max_ttl}]")
        if self.scan_batch_size < 1:
            raise ValueError("scan_batch_size must be positive")
        if self.max_page_size < 1:
            raise ValueError("max_page_size must be positive")


@dataclass
class LongTermConfig:
    max_memories_per_user: int = 10000
    default_page_size: int = 20
    max_page_size: int = 100


class EngramSettings(BaseSettings):
    """All configuration loaded from env vars or .env file."""

    # Redis (short-term tier)
    redis_host: str = "localhost"
    redis_port: int = 6379
    redis_password: str | None = None
    redis_db: int = 0
    redis_max_connections: int = 20

    # PostgreSQL (long-term tier)
    database_url: str = "postgresql+asyncpg://localhost/engram"
    database_echo: bool = False
    database_pool_size: int = 10

    stm_default_ttl: int = 86400
    stm_min_ttl: int = 60
    stm_max_ttl: int = 604800
    stm_key_prefix: str = "memory:stm"
    stm_scan_batch_size: int = 1000
    stm_max_page_size: int = 100

    ltm_max_memories_per_user: int = 10000
    ltm_default_page_size: int = 20
    ltm_max_page_size: int = 100

    log_level: str = "INFO"

    model_config = SettingsConfigDict(
        env_prefix="ENGRAM_", env_file=".env", env_file_encoding="utf-8", extra="ignore",
    )

    def redis_config(self) -> RedisConfig:
        return RedisConfig(
            host=self.redis_host,
            port=self.redis_port,
            password=self.redis_password,
            db=self.redis_db,
            max_connections=self.redis_max_connections,
        )

    def short_term_config(self) -> ShortTermConfig:
        return ShortTermConfig(
            default_ttl=self.stm_default_ttl,
            min_ttl=self.stm_min_ttl,
            max_ttl=self.stm_max_ttl,
            key_prefix=self.stm_key_prefix,
            scan_batch_size=self.stm_scan_batch_size,
            max_page_size=self.stm_max_page_size,
        )

    def long_term_config(self) -> LongTermConfig:
        return LongTermConfig(
            max_memories_per_user=self.ltm_max_memories_per_user,
            default_page_size=self.ltm_default_page_size,
            max_page_size=self.ltm_max_page_size,
        )
