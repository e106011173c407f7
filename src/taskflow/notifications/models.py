"""Notification data models."""

from __future__ import annotations

import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Any

from pydantic import BaseModel, Field, field_validator, model_validator


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class NotificationKind(str, Enum):
    TASK_REMINDER = "task_reminder"
    DEADLINE_WARNING = "deadline_warning"
    TASK_OVERDUE = "task_overdue"
    SCHEDULE_REMINDER = "schedule_reminder"
    DEPENDENCY_READY = "dependency_ready"
    SMART_SUGGESTION = "smart_suggestion"
    ACHIEVEMENT = "achievement"
    WEEKLY_SUMMARY = "weekly_summary"
    CONTEXT_SUGGESTION = "context_suggestion"
    COLLABORATION_UPDATE = "collaboration_update"
    SYSTEM_NOTIFICATION = "system_notification"
    DIGEST = "digest"


class NotificationCategory(str, Enum):
    REMINDER = "reminder"
    WARNING = "warning"
    INFORMATION = "information"
    ACHIEVEMENT = "achievement"
    URGENT = "urgent"


class NotificationPriority(str, Enum):
    LOW = "low"
    NORMAL = "normal"
    HIGH = "high"
    URGENT = "urgent"


PRIORITY_RANK = {
    NotificationPriority.LOW: 0,
    NotificationPriority.NORMAL: 1,
    NotificationPriority.HIGH: 2,
    NotificationPriority.URGENT: 3,
}


class ChannelKind(str, Enum):
    IN_APP = "in_app"
    PUSH = "push"
    EMAIL = "email"
    SMS = "sms"
    WEBHOOK = "webhook"


class NotificationStatus(str, Enum):
    SCHEDULED = "scheduled"
    SENT = "sent"
    DELIVERED = "delivered"
    READ = "read"
    ACTED_UPON = "acted_upon"
    DISMISSED = "dismissed"
    FAILED = "failed"
    CANCELLED = "cancelled"
    EXPIRED = "expired"


# sent_at is populated exactly while the status is one of these.
SENT_STATUSES = frozenset({
    NotificationStatus.SENT,
    NotificationStatus.DELIVERED,
    NotificationStatus.READ,
    NotificationStatus.ACTED_UPON,
    NotificationStatus.DISMISSED,
    NotificationStatus.FAILED,
})

TERMINAL_STATUSES = frozenset({
    NotificationStatus.DELIVERED,
    NotificationStatus.READ,
    NotificationStatus.ACTED_UPON,
    NotificationStatus.DISMISSED,
    NotificationStatus.FAILED,
    NotificationStatus.CANCELLED,
    NotificationStatus.EXPIRED,
})


class SourceKind(str, Enum):
    TASK = "task"
    SCHEDULE = "schedule"


class SourceRef(BaseModel):
    """The task or schedule entry that produced a notification."""

    kind: SourceKind
    id: str


class ChannelAttempt(BaseModel):
    channel: ChannelKind
    enabled: bool = True
    delivered: bool = False
    delivered_at: datetime | None = None
    failure_reason: str | None = None


class RetryPolicy(BaseModel):
    max_retries: int = Field(default=3, ge=0)
    retry_interval_seconds: int = Field(default=300, ge=0)
    current_retries: int = Field(default=0, ge=0)

    @model_validator(mode="after")
    def _bounded(self) -> RetryPolicy:
        if self.current_retries > self.max_retries:
            raise ValueError("current_retries cannot exceed max_retries")
        return self


def _parse_hhmm(value: str) -> int:
    hours, _, minutes = value.partition(":")
    h, m = int(hours), int(minutes or 0)
    if not (0 <= h <= 24 and 0 <= m < 60) or (h == 24 and m):
        raise ValueError(f"invalid time of day {value!r}")
    return h * 60 + m


class HourWindow(BaseModel):
    """Daily ``[start, end)`` window as "HH:MM" strings; start > end wraps midnight."""

    start: str
    end: str

    @field_validator("start", "end")
    @classmethod
    def _valid_time(cls, value: str) -> str:
        _parse_hhmm(value)
        return value

    @property
    def start_minutes(self) -> int:
        return _parse_hhmm(self.start)

    @property
    def end_minutes(self) -> int:
        return _parse_hhmm(self.end)

    def contains(self, minute_of_day: int) -> bool:
        start, end = self.start_minutes, self.end_minutes
        if start == end:
            return True
        if start < end:
            return start <= minute_of_day < end
        return minute_of_day >= start or minute_of_day < end


class TimeConditions(BaseModel):
    allowed_hours: HourWindow | None = None
    # 0 = Sunday ... 6 = Saturday
    allowed_days: list[int] = Field(default_factory=list)
    timezone: str | None = None

    @field_validator("allowed_days")
    @classmethod
    def _valid_days(cls, days: list[int]) -> list[int]:
        if any(d < 0 or d > 6 for d in days):
            raise ValueError("allowed_days entries must be 0 (Sunday) through 6 (Saturday)")
        return sorted(set(days))


class UserConditions(BaseModel):
    respect_do_not_disturb: bool = False
    skip_if_in_meeting: bool = False
    only_when_active: bool = False


class RecurrencePattern(str, Enum):
    DAILY = "daily"
    WEEKLY = "weekly"
    MONTHLY = "monthly"
    YEARLY = "yearly"
    CUSTOM = "custom"


class RecurrenceRule(BaseModel):
    pattern: RecurrencePattern
    interval: int = 1
    custom_step_minutes: int | None = None
    end_date: datetime | None = None
    max_occurrences: int | None = None
    current_occurrence: int = 1
    series_id: str | None = None
    next_generated_id: str | None = None


class Grouping(BaseModel):
    group_id: str = Field(min_length=1)
    batchable: bool = True
    max_batch_size: int = Field(default=5, ge=1)
    batch_delay_seconds: int = Field(default=300, ge=0)


class Interaction(BaseModel):
    opened: bool = False
    opened_at: datetime | None = None
    clicked: bool = False
    clicked_at: datetime | None = None
    action_taken: str | None = None
    dismissed: bool = False
    dismissed_at: datetime | None = None
    snoozed: bool = False
    snooze_count: int = 0
    last_snoozed_at: datetime | None = None


class DeliveryError(BaseModel):
    timestamp: datetime = Field(default_factory=_utcnow)
    error: str
    channel: ChannelKind | None = None
    retry_count: int = 0


class Notification(BaseModel):
    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    user_id: str
    source: SourceRef | None = None
    kind: NotificationKind = NotificationKind.SYSTEM_NOTIFICATION
    category: NotificationCategory = NotificationCategory.INFORMATION
    priority: NotificationPriority = NotificationPriority.NORMAL
    title: str = ""
    body: str = ""
    metadata: dict[str, Any] = Field(default_factory=dict)

    scheduled_for: datetime
    original_scheduled_for: datetime | None = None
    expires_at: datetime | None = None
    sent_at: datetime | None = None
    dispatch_started_at: datetime | None = None

    channels: list[ChannelAttempt] = Field(default_factory=list)
    retry: RetryPolicy = Field(default_factory=RetryPolicy)
    time_conditions: TimeConditions | None = None
    user_conditions: UserConditions | None = None
    recurring: RecurrenceRule | None = None
    grouping: Grouping | None = None

    status: NotificationStatus = NotificationStatus.SCHEDULED
    status_reason: str | None = None
    interaction: Interaction = Field(default_factory=Interaction)
    errors: list[DeliveryError] = Field(default_factory=list)

    lease_owner: str | None = None
    lease_expires_at: datetime | None = None
    version: int = 0
    cancel_requested: bool = False

    created_at: datetime = Field(default_factory=_utcnow)
    updated_at: datetime = Field(default_factory=_utcnow)

    @field_validator("scheduled_for", "original_scheduled_for", "expires_at")
    @classmethod
    def _aware(cls, value: datetime | None) -> datetime | None:
        if value is not None and value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value

    @model_validator(mode="after")
    def _anchor_and_channels(self) -> Notification:
        if self.original_scheduled_for is None:
            self.original_scheduled_for = self.scheduled_for
        seen: set[ChannelKind] = set()
        for attempt in self.channels:
            if attempt.channel in seen:
                raise ValueError(f"duplicate channel {attempt.channel.value!r}")
            seen.add(attempt.channel)
        return self

    @property
    def is_batchable(self) -> bool:
        return self.grouping is not None and self.grouping.batchable

    @property
    def enabled_channels(self) -> list[ChannelAttempt]:
        return [c for c in self.channels if c.enabled]

    @property
    def pending_channels(self) -> list[ChannelAttempt]:
        """Enabled channels not yet delivered in the current delivery cycle."""
        return [c for c in self.channels if c.enabled and not c.delivered]

    def is_leased(self, now: datetime) -> bool:
        return (
            self.lease_owner is not None
            and self.lease_expires_at is not None
            and self.lease_expires_at > now
        )


class NotificationContent(BaseModel):
    """Live title/description for a source entity."""

    title: str
    description: str = ""
    data: dict[str, Any] = Field(default_factory=dict)


class NotificationTemplate(BaseModel):
    id: str
    title: str
    body: str
