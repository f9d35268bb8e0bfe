"""Typed failures for the tiered memory core.

Only NotFoundError/ExpiredError are reinterpreted by the coordinator;
everything else reaches the caller unchanged.
"""

from __future__ import annotations

from contextlib import contextmanager
from typing import Iterator


class EngramError(Exception):
    pass


class MemoryValidationError(EngramError, ValueError):
    pass


class TtlValidationError(MemoryValidationError):
    def __init__(self, ttl: int, min_ttl: int, max_ttl: int) -> None:
        super().__init__(f"TTL {ttl} is invalid. Must be between {min_ttl} and {max_ttl} seconds")
        self.ttl = ttl
        self.min_ttl = min_ttl
        self.max_ttl = max_ttl


class NotFoundError(EngramError):
    def __init__(self, entry_id: str, tier: str | None = None) -> None:
        where = f" in {tier} storage" if tier else ""
        super().__init__(f"Memory {entry_id} not found{where}")
        self.entry_id = entry_id
        self.tier = tier


class ExpiredError(NotFoundError):
    def __init__(self, entry_id: str) -> None:
        EngramError.__init__(self, f"Memory {entry_id} has expired")
        self.entry_id = entry_id
        self.tier = "short-term"


class QuotaExceededError(EngramError):
    def __init__(self, tenant_id: str, limit: int) -> None:
        super().__init__(f"Long-term memory quota exceeded for tenant {tenant_id}. Limit: {limit} memories")
        self.tenant_id = tenant_id
        self.limit = limit


class PromotionError(EngramError):
    def __init__(self, entry_id: str, reason: str) -> None:
        super().__init__(f"Failed to promote memory {entry_id} to long-term storage: {reason}")
        self.entry_id = entry_id
        self.reason = reason


class StoreError(EngramError):
    """Underlying cache/database failure, wrapped with the operation name."""

    def __init__(self, operation: str, cause: BaseException) -> None:
        super().__init__(f"Store error during {operation}: {cause}")
        self.operation = operation
        self.cause = cause


@contextmanager
def translate_errors(operation: str, *exc_types: type[BaseException]) -> Iterator[None]:
    """Re-raise client failures of the given types as StoreError.

    EngramError subclasses pass through untouched.
    """
    try:
        yield
    except EngramError:
        raise
    except exc_types as e:
        raise StoreError(operation, e) from e
