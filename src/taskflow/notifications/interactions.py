"""Apply user actions reported by a channel to a notification."""

from __future__ import annotations

from datetime import datetime, timedelta
from enum import Enum

from taskflow.notifications.errors import InvalidTransitionError
from taskflow.notifications.models import Notification, NotificationStatus
from taskflow.notifications.state import Transition, move, unchanged

S = NotificationStatus

DEFAULT_SNOOZE_MINUTES = 15


class InteractionType(str, Enum):
    OPENED = "opened"
    CLICKED = "clicked"
    DISMISSED = "dismissed"
    SNOOZED = "snoozed"


def record_interaction(
    notification: Notification,
    interaction: InteractionType,
    now: datetime,
    *,
    action: str | None = None,
    snooze_minutes: int | None = None,
) -> Transition:
    """Apply one interaction.

    Repeating an interaction whose effect is already in place returns a
    no-op transition instead of raising.
    """
    handler = _HANDLERS[interaction]
    if interaction is InteractionType.CLICKED:
        return handler(notification, now, action)
    if interaction is InteractionType.SNOOZED:
        return handler(notification, now, snooze_minutes)
    return handler(notification, now)


def _opened(notification: Notification, now: datetime) -> Transition:
    if notification.status in (S.READ, S.ACTED_UPON):
        return unchanged(notification, "opened")
    if notification.status is not S.DELIVERED:
        raise InvalidTransitionError(notification.id, notification.status.value, "opened")
    updated = move(notification, S.READ, now, event="opened")
    updated.interaction.opened = True
    updated.interaction.opened_at = now
    return Transition(notification=updated, from_status=notification.status, event="opened")


def _clicked(notification: Notification, now: datetime, action: str | None) -> Transition:
    if notification.status is S.ACTED_UPON:
        return unchanged(notification, "clicked")
    if notification.status not in (S.DELIVERED, S.READ):
        raise InvalidTransitionError(notification.id, notification.status.value, "clicked")
    updated = move(notification, S.ACTED_UPON, now, event="clicked")
    info = updated.interaction
    if not info.opened:
        info.opened = True
        info.opened_at = now
    info.clicked = True
    info.clicked_at = now
    info.action_taken = action
    return Transition(
        notification=updated,
        from_status=notification.status,
        event="clicked",
        details={"action": action},
    )


def _dismissed(notification: Notification, now: datetime) -> Transition:
    if notification.status is S.DISMISSED:
        return unchanged(notification, "dismissed")
    if notification.status not in (S.SENT, S.DELIVERED, S.READ):
        raise InvalidTransitionError(notification.id, notification.status.value, "dismissed")
    updated = move(notification, S.DISMISSED, now, event="dismissed", reason="dismissed by user")
    updated.interaction.dismissed = True
    updated.interaction.dismissed_at = now
    return Transition(notification=updated, from_status=notification.status, event="dismissed")


def _snoozed(notification: Notification, now: datetime, minutes: int | None) -> Transition:
    if notification.status is S.SCHEDULED and notification.interaction.snoozed:
        return unchanged(notification, "snoozed")
    if notification.status not in (S.DELIVERED, S.READ):
        raise InvalidTransitionError(notification.id, notification.status.value, "snoozed")
    minutes = DEFAULT_SNOOZE_MINUTES if minutes is None else minutes
    if minutes <= 0:
        raise ValueError("snooze minutes must be positive")

    updated = move(notification, S.SCHEDULED, now, event="snoozed")
    updated.scheduled_for = max(notification.scheduled_for, now + timedelta(minutes=minutes))
    for attempt in updated.channels:
        attempt.delivered = False
        attempt.delivered_at = None
        attempt.failure_reason = None
    info = updated.interaction
    info.snoozed = True
    info.snooze_count += 1
    info.last_snoozed_at = now
    return Transition(
        notification=updated,
        from_status=notification.status,
        event="snoozed",
        details={"minutes": minutes, "scheduled_for": updated.scheduled_for.isoformat()},
    )


_HANDLERS = {
    InteractionType.OPENED: _opened,
    InteractionType.CLICKED: _clicked,
    InteractionType.DISMISSED: _dismissed,
    InteractionType.SNOOZED: _snoozed,
}
