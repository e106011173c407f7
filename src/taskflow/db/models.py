"""SQLAlchemy ORM models for persistent tables."""

from __future__ import annotations

from datetime import datetime, timezone

from sqlalchemy import (
    Boolean,
    DateTime,
    Index,
    Integer,
    String,
    Text,
)
from sqlalchemy.dialects.postgresql import JSONB as PG_JSONB
from sqlalchemy.orm import Mapped, mapped_column
from sqlalchemy.types import JSON

from taskflow.db.base import Base


def _jsonb() -> type:
    """Return JSONB for Postgres, plain JSON for SQLite."""
    return JSON().with_variant(PG_JSONB(), "postgresql")


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class NotificationRow(Base):
    """One notification.

    Columns the due-queue, group and lease queries filter on are scalar;
    nested value objects are stored as JSON documents.
    """

    __tablename__ = "notifications"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    user_id: Mapped[str] = mapped_column(String(128))
    kind: Mapped[str] = mapped_column(String(64))
    category: Mapped[str] = mapped_column(String(32))
    priority: Mapped[str] = mapped_column(String(16))
    status: Mapped[str] = mapped_column(String(32), default="scheduled")
    status_reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    title: Mapped[str] = mapped_column(Text, default="")
    body: Mapped[str] = mapped_column(Text, default="")

    source_kind: Mapped[str | None] = mapped_column(String(32), nullable=True)
    source_id: Mapped[str | None] = mapped_column(String(128), nullable=True)
    group_id: Mapped[str | None] = mapped_column(String(128), nullable=True)

    scheduled_for: Mapped[datetime] = mapped_column(DateTime(timezone=True))
    original_scheduled_for: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    expires_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    sent_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    dispatch_started_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    lease_owner: Mapped[str | None] = mapped_column(String(128), nullable=True)
    lease_expires_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    version: Mapped[int] = mapped_column(Integer, default=0)
    cancel_requested: Mapped[bool] = mapped_column(Boolean, default=False)

    metadata_json: Mapped[dict | None] = mapped_column(_jsonb(), nullable=True)
    channels: Mapped[list | None] = mapped_column(_jsonb(), nullable=True)
    retry: Mapped[dict | None] = mapped_column(_jsonb(), nullable=True)
    time_conditions: Mapped[dict | None] = mapped_column(_jsonb(), nullable=True)
    user_conditions: Mapped[dict | None] = mapped_column(_jsonb(), nullable=True)
    recurring: Mapped[dict | None] = mapped_column(_jsonb(), nullable=True)
    grouping: Mapped[dict | None] = mapped_column(_jsonb(), nullable=True)
    interaction: Mapped[dict | None] = mapped_column(_jsonb(), nullable=True)
    errors: Mapped[list | None] = mapped_column(_jsonb(), nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)

    __table_args__ = (
        Index("ix_notifications_user_scheduled", "user_id", "scheduled_for"),
        Index("ix_notifications_status_scheduled", "status", "scheduled_for"),
        Index("ix_notifications_user_group", "user_id", "group_id"),
    )
