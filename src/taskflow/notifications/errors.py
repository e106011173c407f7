"""Exceptions raised by the notification engine."""

from __future__ import annotations


class NotificationNotFoundError(KeyError):
    """No notification exists with the given id."""

    def __init__(self, notification_id: str) -> None:
        super().__init__(notification_id)
        self.notification_id = notification_id

    def __str__(self) -> str:
        return f"Notification {self.notification_id!r} not found"


class InvalidTransitionError(ValueError):
    """The requested lifecycle move is not legal from the current status."""

    def __init__(self, notification_id: str, current: str, requested: str) -> None:
        super().__init__(
            f"Notification {notification_id} is '{current}'; cannot apply '{requested}'."
        )
        self.notification_id = notification_id
        self.current = current
        self.requested = requested


class LeaseLostError(RuntimeError):
    """A commit was attempted by a worker that no longer holds the lease."""


class CancellationPendingError(LeaseLostError):
    """A cancellation was requested while the lease holder was working."""


class RecurrenceError(ValueError):
    """A recurrence rule cannot produce a next occurrence."""
