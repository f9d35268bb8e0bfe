"""Cache key layout for short-term memories.

  {prefix}:{tenant_id}:{entry_id}

Tenant ids may not contain the delimiter, so a tenant's wildcard pattern
can never reach into another tenant's keys.
"""

from __future__ import annotations

from engram.errors import MemoryValidationError

DELIMITER = ":"
_GLOB_CHARS = set("*?[]\\")


def _check(label: str, value: str) -> None:
    if not value:
        raise MemoryValidationError(f"{label} cannot be empty")
    if DELIMITER in value or _GLOB_CHARS.intersection(value):
        raise MemoryValidationError(f"{label} contains reserved characters: {value!r}")


def validate_tenant_id(tenant_id: str) -> str:
    """The one tenant id rule for both tiers: non-empty, no delimiter or glob characters."""
    _check("tenant_id", tenant_id)
    return tenant_id


class KeyBuilder:
    def __init__(self, prefix: str = "memory:stm") -> None:
        self.prefix = prefix

    def entry_key(self, tenant_id: str, entry_id: str) -> str:
        validate_tenant_id(tenant_id)
        _check("entry_id", entry_id)
        return f"{self.prefix}{DELIMITER}{tenant_id}{DELIMITER}{entry_id}"

    def tenant_pattern(self, tenant_id: str) -> str:
        validate_tenant_id(tenant_id)
        return f"{self.prefix}{DELIMITER}{tenant_id}{DELIMITER}*"

    def _split(self, key: str | bytes) -> tuple[str, str] | None:
        if isinstance(key, bytes):
            key = key.decode("utf-8")
        head = f"{self.prefix}{DELIMITER}"
        if not key.startswith(head):
            return None
        parts = key[len(head):].split(DELIMITER)
        if len(parts) != 2 or not all(parts):
            return None
        return parts[0], parts[1]

    def extract_entry_id(self, key: str | bytes) -> str | None:
        parts = self._split(key)
        return parts[1] if parts else None

    def extract_tenant_id(self, key: str | bytes) -> str | None:
        parts = self._split(key)
        return parts[0] if parts else None
