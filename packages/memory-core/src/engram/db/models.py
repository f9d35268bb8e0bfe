"""SQLAlchemy model for long-term memories.

Every query against this table is scoped by user_id and type. The primary
key is (id, userId), so entry ids of different tenants never collide.
"""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any

from sqlalchemy import JSON, String, Text, DateTime, Index
from sqlalchemy.dialects import postgresql
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

# TEXT[] on PostgreSQL, JSON list elsewhere (SQLite in tests).
TagList = JSON().with_variant(postgresql.ARRAY(String), "postgresql")
JsonDocument = JSON().with_variant(postgresql.JSONB(), "postgresql")


class Base(DeclarativeBase):
    pass


class MemoryRecord(Base):
    __tablename__ = "memories"

    id: Mapped[str] = mapped_column(String(36), primary_key=True)
    user_id: Mapped[str] = mapped_column("userId", String(128), primary_key=True)
    content: Mapped[str] = mapped_column(Text, nullable=False)
    metadata_: Mapped[dict[str, Any] | None] = mapped_column("metadata", JsonDocument, nullable=True)
    tags: Mapped[list[str]] = mapped_column(TagList, nullable=False, default=list)
    type: Mapped[str] = mapped_column(String(16), nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        "createdAt", DateTime(timezone=True), default=lambda: datetime.now(timezone.utc)
    )
    updated_at: Mapped[datetime] = mapped_column(
        "updatedAt", DateTime(timezone=True), default=lambda: datetime.now(timezone.utc),
        onupdate=lambda: datetime.now(timezone.utc),
    )
    expires_at: Mapped[datetime | None] = mapped_column("expiresAt", DateTime(timezone=True))

    __table_args__ = (
        Index("memories_userId_idx", "userId"),
        Index("memories_userId_type_idx", "userId", "type"),
        Index("memories_expiresAt_idx", "expiresAt"),
    )
