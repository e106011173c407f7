"""Notification lifecycle state machine.

Transition functions are pure: they never mutate the notification they are
given. Each returns a :class:`Transition` carrying an updated copy and the
persistence action the caller must perform, so the rules can be exercised
without any store.
"""

from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, Field

from taskflow.notifications.errors import InvalidTransitionError
from taskflow.notifications.models import (
    SENT_STATUSES,
    Notification,
    NotificationStatus,
)

S = NotificationStatus

DEFAULT_CANCEL_REASON = "cancelled by producer"

_ALLOWED: dict[NotificationStatus, frozenset[NotificationStatus]] = {
    S.SCHEDULED: frozenset({S.SCHEDULED, S.SENT, S.CANCELLED, S.EXPIRED}),
    # sent -> scheduled is a retry; sent -> cancelled only honours a pending
    # cancellation request raised while the dispatch was in flight.
    S.SENT: frozenset({S.DELIVERED, S.FAILED, S.DISMISSED, S.SCHEDULED, S.CANCELLED}),
    # -> scheduled is a snooze.
    S.DELIVERED: frozenset({S.READ, S.ACTED_UPON, S.DISMISSED, S.SCHEDULED}),
    S.READ: frozenset({S.ACTED_UPON, S.DISMISSED, S.SCHEDULED}),
    S.ACTED_UPON: frozenset(),
    S.DISMISSED: frozenset(),
    S.FAILED: frozenset(),
    S.CANCELLED: frozenset(),
    S.EXPIRED: frozenset(),
}


class PersistAction(str, Enum):
    SAVE = "save"
    NONE = "none"


class Transition(BaseModel):
    """Result of applying one lifecycle rule."""

    notification: Notification
    from_status: NotificationStatus
    event: str
    action: PersistAction = PersistAction.SAVE
    details: dict[str, Any] = Field(default_factory=dict)
    created: list[Notification] = Field(default_factory=list)

    @property
    def to_status(self) -> NotificationStatus:
        return self.notification.status

    @property
    def changed(self) -> bool:
        return self.action is PersistAction.SAVE


def can_transition(current: NotificationStatus, target: NotificationStatus) -> bool:
    return target in _ALLOWED[current]


def move(
    notification: Notification,
    target: NotificationStatus,
    now: datetime,
    *,
    event: str,
    reason: str | None = None,
) -> Notification:
    """Return a copy of ``notification`` in ``target`` status.

    Keeps ``sent_at`` consistent with the status: stamped when entering a
    sent-family status, cleared when returning to an unsent one.
    """
    if not can_transition(notification.status, target):
        raise InvalidTransitionError(notification.id, notification.status.value, event)
    updated = notification.model_copy(deep=True)
    updated.status = target
    if target in SENT_STATUSES:
        if updated.sent_at is None:
            updated.sent_at = now
    else:
        updated.sent_at = None
    updated.status_reason = reason
    updated.updated_at = now
    return updated


def unchanged(notification: Notification, event: str, **details: Any) -> Transition:
    return Transition(
        notification=notification,
        from_status=notification.status,
        event=event,
        action=PersistAction.NONE,
        details=details,
    )


def begin_dispatch(notification: Notification, now: datetime) -> Transition:
    """scheduled -> sent, once preconditions have passed."""
    updated = move(notification, S.SENT, now, event="dispatch")
    if updated.dispatch_started_at is None:
        updated.dispatch_started_at = now
    return Transition(notification=updated, from_status=notification.status, event="dispatch")


def reschedule(
    notification: Notification,
    when: datetime,
    now: datetime,
    *,
    reason: str,
    window_closes_at: datetime | None = None,
) -> Transition:
    """Push ``scheduled_for`` forward without leaving ``scheduled``.

    When the new slot is an allowed window that opens at or after the hard
    expiry, the expiry moves to the window's close so the slot stays usable.
    """
    if notification.status is not S.SCHEDULED:
        raise InvalidTransitionError(notification.id, notification.status.value, "reschedule")
    updated = move(notification, S.SCHEDULED, now, event="reschedule")
    updated.scheduled_for = max(notification.scheduled_for, when)
    details = {"reason": reason, "scheduled_for": updated.scheduled_for.isoformat()}
    if (
        window_closes_at is not None
        and updated.expires_at is not None
        and updated.scheduled_for >= updated.expires_at
        and window_closes_at > updated.expires_at
    ):
        updated.expires_at = window_closes_at
        details["expires_at"] = window_closes_at.isoformat()
    return Transition(
        notification=updated,
        from_status=notification.status,
        event="rescheduled",
        details=details,
    )


def cancel(notification: Notification, now: datetime, *, reason: str | None = None) -> Transition:
    """scheduled -> cancelled, or sent -> cancelled when a cancel was requested mid-flight.

    Without an explicit ``reason`` a pending request keeps the reason it was
    filed with.
    """
    if notification.status is S.SENT and not notification.cancel_requested:
        raise InvalidTransitionError(notification.id, notification.status.value, "cancel")
    if reason is None:
        pending = notification.status_reason if notification.cancel_requested else None
        reason = pending or DEFAULT_CANCEL_REASON
    updated = move(notification, S.CANCELLED, now, event="cancel", reason=reason)
    updated.cancel_requested = False
    return Transition(notification=updated, from_status=notification.status, event="cancelled")


def is_expired(notification: Notification, now: datetime) -> bool:
    """True once the hard expiry passed without any successful precondition pass."""
    return (
        notification.status is S.SCHEDULED
        and notification.dispatch_started_at is None
        and notification.expires_at is not None
        and now >= notification.expires_at
    )


def expire(notification: Notification, now: datetime) -> Transition:
    if not is_expired(notification, now):
        raise InvalidTransitionError(notification.id, notification.status.value, "expire")
    reason = f"not deliverable before expiry at {notification.expires_at.isoformat()}"
    updated = move(notification, S.EXPIRED, now, event="expire", reason=reason)
    return Transition(notification=updated, from_status=notification.status, event="expired")
