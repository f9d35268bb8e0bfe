"""Tiered short-term/long-term memory store for agent context."""

from engram.errors import (
    EngramError,
    ExpiredError,
    MemoryValidationError,
    NotFoundError,
    PromotionError,
    QuotaExceededError,
    StoreError,
    TtlValidationError,
)
from engram.models import MemoryEntry, MemoryTier, MemoryUpdate, PaginatedResult

__all__ = [
    "EngramError",
    "ExpiredError",
    "MemoryEntry",
    "MemoryTier",
    "MemoryUpdate",
    "MemoryValidationError",
    "NotFoundError",
    "PaginatedResult",
    "PromotionError",
    "QuotaExceededError",
    "StoreError",
    "TtlValidationError",
]
