"""Pydantic v2 models for memory entries and their inputs."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Annotated, Any, Literal, TypeVar

from pydantic import BaseModel, Field, StringConstraints, ValidationError, field_validator, model_validator

from engram.errors import MemoryValidationError

MAX_CONTENT_LENGTH = 10240
MAX_TAGS = 50
MAX_TAG_LENGTH = 100
MAX_SEARCH_LENGTH = 500

Content = Annotated[str, StringConstraints(min_length=1, max_length=MAX_CONTENT_LENGTH)]
Tag = Annotated[str, StringConstraints(min_length=1, max_length=MAX_TAG_LENGTH)]
Tags = Annotated[list[Tag], Field(max_length=MAX_TAGS)]


class MemoryTier(str, Enum):
    SHORT_TERM = "short-term"
    LONG_TERM = "long-term"


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: datetime) -> datetime:
    """Attach UTC to naive datetimes (SQLite drops tzinfo on the way back)."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


class MemoryEntry(BaseModel):
    id: str
    tenant_id: str
    content: str
    metadata: dict[str, Any] | None = None
    tags: list[str] = Field(default_factory=list)
    tier: MemoryTier
    created_at: datetime
    updated_at: datetime
    expires_at: datetime | None = None
    ttl_seconds: int | None = None

    @field_validator("created_at", "updated_at", "expires_at")
    @classmethod
    def _normalize_tz(cls, value: datetime | None) -> datetime | None:
        return as_utc(value) if value is not None else None

    def matches_tags(self, tags: list[str] | None) -> bool:
        """OR semantics: any requested tag present. No filter matches all."""
        if not tags:
            return True
        return not set(tags).isdisjoint(self.tags)

    def matches_search(self, search: str | None) -> bool:
        if not search:
            return True
        return search.lower() in self.content.lower()


class MemoryDraft(BaseModel):
    content: Content
    metadata: dict[str, Any] | None = None
    tags: Tags = Field(default_factory=list)


class MemoryUpdate(BaseModel):
    """Partial update. A field is applied only if it was explicitly set.

    ``metadata=None`` clears metadata; the other fields are not nullable.
    ``ttl_seconds`` only affects short-term entries.
    """

    content: Content | None = None
    metadata: dict[str, Any] | None = None
    tags: Tags | None = None
    ttl_seconds: int | None = None

    @model_validator(mode="after")
    def _reject_null_values(self) -> MemoryUpdate:
        for name in ("content", "tags", "ttl_seconds"):
            if name in self.model_fields_set and getattr(self, name) is None:
                raise ValueError(f"{name} cannot be null")
        return self

    def provided(self, name: str) -> bool:
        return name in self.model_fields_set


class LongTermQuery(BaseModel):
    limit: int = Field(default=20, ge=1)
    cursor: str | None = None
    tags: list[str] | None = None
    date_from: datetime | None = None
    date_to: datetime | None = None
    search: str | None = Field(default=None, max_length=MAX_SEARCH_LENGTH)
    sort_by: Literal["created_at", "updated_at"] = "created_at"
    sort_order: Literal["asc", "desc"] = "desc"


@dataclass
class PaginatedResult:
    items: list[MemoryEntry] = field(default_factory=list)
    total_count: int = 0
    has_next_page: bool = False
    has_previous_page: bool = False
    start_cursor: str | None = None
    end_cursor: str | None = None


_M = TypeVar("_M", bound=BaseModel)


def validate_input(model: type[_M], **data: Any) -> _M:
    """Build an input model, surfacing failures as MemoryValidationError."""
    try:
        return model(**data)
    except ValidationError as e:
        problems = "; ".join(
            f"{'.'.join(str(p) for p in err['loc']) or 'input'}: {err['msg']}" for err in e.errors()
        )
        raise MemoryValidationError(f"Invalid {model.__name__}: {problems}") from e
