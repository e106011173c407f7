"""Core type definitions shared across Taskflow modules."""

from __future__ import annotations

import uuid
from datetime import datetime, timezone
from typing import Any

from pydantic import BaseModel, Field


class AuditEvent(BaseModel):
    """Immutable record of one committed notification lifecycle change."""

    event_id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    timestamp: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    notification_id: str
    user_id: str
    actor: str
    action: str
    from_status: str | None = None
    to_status: str | None = None
    details: dict[str, Any] = Field(default_factory=dict)


class HealthStatus(BaseModel):
    """Health check response for any service."""

    service: str
    healthy: bool
    details: dict[str, Any] = Field(default_factory=dict)
