"""Next-occurrence generation for recurring notifications."""

from __future__ import annotations

import uuid
from datetime import datetime, timedelta

from dateutil.relativedelta import relativedelta

from taskflow.notifications.errors import RecurrenceError
from taskflow.notifications.models import (
    ChannelAttempt,
    Interaction,
    Notification,
    NotificationStatus,
    RecurrencePattern,
    RecurrenceRule,
)

# Terminal states that produce a successor. Failed, expired and cancelled
# occurrences do not, so an undeliverable reminder cannot regenerate forever.
REGENERATING_STATUSES = frozenset({
    NotificationStatus.DELIVERED,
    NotificationStatus.READ,
    NotificationStatus.ACTED_UPON,
    NotificationStatus.DISMISSED,
})

_MAX_ROLL_FORWARD = 10_000


def step(rule: RecurrenceRule) -> timedelta | relativedelta:
    if rule.interval < 1:
        raise RecurrenceError(f"recurrence interval must be >= 1, got {rule.interval}")
    if rule.pattern is RecurrencePattern.DAILY:
        return timedelta(days=rule.interval)
    if rule.pattern is RecurrencePattern.WEEKLY:
        return timedelta(weeks=rule.interval)
    if rule.pattern is RecurrencePattern.MONTHLY:
        return relativedelta(months=rule.interval)
    if rule.pattern is RecurrencePattern.YEARLY:
        return relativedelta(years=rule.interval)
    if not rule.custom_step_minutes or rule.custom_step_minutes <= 0:
        raise RecurrenceError("custom recurrence requires a positive custom_step_minutes")
    return timedelta(minutes=rule.custom_step_minutes * rule.interval)


def next_occurrence_time(notification: Notification, now: datetime) -> datetime | None:
    """When the next occurrence is due, or None once the series has ended.

    Steps from the occurrence anchor (``original_scheduled_for``) so snoozes
    and reschedules do not drift the series; a result still in the past is
    rolled forward to the first slot after ``now``. For an occurrence that
    was delivered on time the anchor equals ``scheduled_for``, so a weekly
    series lands exactly seven days after the previous slot.
    """
    rule = notification.recurring
    if rule is None:
        return None
    if rule.max_occurrences is not None and rule.current_occurrence >= rule.max_occurrences:
        return None

    increment = step(rule)
    anchor = notification.original_scheduled_for or notification.scheduled_for
    candidate = anchor + increment
    for _ in range(_MAX_ROLL_FORWARD):
        if candidate > now:
            break
        candidate = candidate + increment
    else:
        raise RecurrenceError("could not find a future occurrence")

    if rule.end_date is not None and candidate > rule.end_date:
        return None
    return candidate


def generate_next(notification: Notification, now: datetime) -> Notification | None:
    """Build the successor occurrence as a fresh ``scheduled`` entity.

    Returns None when the notification is not recurring, is not in a
    regenerating state, already produced its successor, or the series ended.
    Raises RecurrenceError for malformed rules.
    """
    rule = notification.recurring
    if rule is None or notification.status not in REGENERATING_STATUSES:
        return None
    if rule.next_generated_id is not None:
        return None

    when = next_occurrence_time(notification, now)
    if when is None:
        return None

    expires_at = None
    if notification.expires_at is not None and notification.original_scheduled_for is not None:
        expires_at = when + (notification.expires_at - notification.original_scheduled_for)

    successor = Notification(
        id=str(uuid.uuid4()),
        user_id=notification.user_id,
        source=notification.source,
        kind=notification.kind,
        category=notification.category,
        priority=notification.priority,
        title=notification.title,
        body=notification.body,
        metadata=dict(notification.metadata),
        scheduled_for=when,
        expires_at=expires_at,
        channels=[
            ChannelAttempt(channel=attempt.channel, enabled=attempt.enabled)
            for attempt in notification.channels
        ],
        retry=notification.retry.model_copy(update={"current_retries": 0}),
        time_conditions=notification.time_conditions,
        user_conditions=notification.user_conditions,
        recurring=rule.model_copy(update={
            "current_occurrence": rule.current_occurrence + 1,
            "series_id": rule.series_id or notification.id,
            "next_generated_id": None,
        }),
        grouping=notification.grouping,
        interaction=Interaction(),
        created_at=now,
        updated_at=now,
    )
    return successor


def mark_generated(notification: Notification, successor_id: str, now: datetime) -> Notification:
    updated = notification.model_copy(deep=True)
    updated.recurring.next_generated_id = successor_id
    updated.updated_at = now
    return updated
