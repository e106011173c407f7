"""In-memory notification store."""

from __future__ import annotations

import threading
from datetime import datetime

from taskflow.notifications.errors import CancellationPendingError, LeaseLostError
from taskflow.notifications.models import (
    TERMINAL_STATUSES,
    Notification,
    NotificationStatus,
)

_CANCELLABLE = (NotificationStatus.SCHEDULED, NotificationStatus.SENT)


def _is_cancellation(notification: Notification) -> bool:
    return notification.cancel_requested or notification.status is NotificationStatus.CANCELLED


class NotificationStore:
    """Thread-safe in-memory store.

    Records are copied on the way in and out so callers can never mutate
    stored state except through ``save`` / ``save_leased``.
    """

    def __init__(self) -> None:
        self._notifications: dict[str, Notification] = {}
        self._lock = threading.RLock()

    def _put(self, notification: Notification) -> Notification:
        stored = notification.model_copy(deep=True)
        previous = self._notifications.get(notification.id)
        stored.version = (previous.version if previous else notification.version) + 1
        self._notifications[stored.id] = stored
        return stored.model_copy(deep=True)

    def save(self, notification: Notification) -> Notification:
        with self._lock:
            return self._put(notification)

    def get(self, notification_id: str) -> Notification | None:
        with self._lock:
            n = self._notifications.get(notification_id)
            return n.model_copy(deep=True) if n else None

    def list_for_user(
        self, user_id: str, status: NotificationStatus | None = None
    ) -> list[Notification]:
        with self._lock:
            return [
                n.model_copy(deep=True)
                for n in self._notifications.values()
                if n.user_id == user_id and (status is None or n.status is status)
            ]

    def list_all(self) -> list[Notification]:
        with self._lock:
            return [n.model_copy(deep=True) for n in self._notifications.values()]

    def find_due(self, now: datetime, limit: int = 100) -> list[Notification]:
        """Unleased ``scheduled`` records that are due or flagged for
        cancellation, plus ``sent`` records whose lease lapsed mid-dispatch."""
        with self._lock:
            due = [
                n for n in self._notifications.values()
                if not n.is_leased(now) and (
                    (n.status is NotificationStatus.SCHEDULED
                     and (n.scheduled_for <= now or n.cancel_requested))
                    or n.status is NotificationStatus.SENT
                )
            ]
            due.sort(key=lambda n: n.scheduled_for)
            return [n.model_copy(deep=True) for n in due[:limit]]

    def list_group(self, user_id: str, group_id: str) -> list[Notification]:
        with self._lock:
            return [
                n.model_copy(deep=True)
                for n in self._notifications.values()
                if n.user_id == user_id
                and n.status is NotificationStatus.SCHEDULED
                and n.grouping is not None
                and n.grouping.group_id == group_id
            ]

    def claim(
        self, notification_id: str, owner: str, until: datetime, now: datetime
    ) -> Notification | None:
        claimed = self.claim_many([notification_id], owner, until, now)
        return claimed[0] if claimed else None

    def claim_many(
        self, notification_ids: list[str], owner: str, until: datetime, now: datetime
    ) -> list[Notification]:
        """Lease every listed record that is currently free, in one step."""
        with self._lock:
            claimed: list[Notification] = []
            for notification_id in notification_ids:
                n = self._notifications.get(notification_id)
                if n is None or n.is_leased(now):
                    continue
                n.lease_owner = owner
                n.lease_expires_at = until
                n.version += 1
                claimed.append(n.model_copy(deep=True))
            return claimed

    def save_leased(
        self, notification: Notification, owner: str, *, defer_to_cancel: bool = False
    ) -> Notification:
        """Commit under ``owner``'s lease.

        A pending cancellation refuses every commit except a cancellation, and
        with ``defer_to_cancel`` refuses that too.
        """
        with self._lock:
            current = self._notifications.get(notification.id)
            if current is None or current.lease_owner != owner:
                raise LeaseLostError(f"lease on {notification.id} is not held by {owner}")
            if (
                current.cancel_requested
                and current.status in _CANCELLABLE
                and (defer_to_cancel or not _is_cancellation(notification))
            ):
                raise CancellationPendingError(f"cancellation pending on {notification.id}")
            notification = notification.model_copy(
                update={"lease_owner": owner, "lease_expires_at": current.lease_expires_at}
            )
            return self._put(notification)

    def release(self, notification_id: str, owner: str) -> None:
        with self._lock:
            n = self._notifications.get(notification_id)
            if n is not None and n.lease_owner == owner:
                n.lease_owner = None
                n.lease_expires_at = None
                n.version += 1

    def request_cancel(
        self, notification_id: str, reason: str | None = None
    ) -> Notification | None:
        with self._lock:
            n = self._notifications.get(notification_id)
            if n is None:
                return None
            if n.status in _CANCELLABLE:
                n.cancel_requested = True
                n.status_reason = reason
                n.version += 1
            return n.model_copy(deep=True)

    def purge_terminal(self, older_than: datetime) -> int:
        with self._lock:
            doomed = [
                n.id for n in self._notifications.values()
                if n.status in TERMINAL_STATUSES and n.updated_at < older_than
            ]
            for notification_id in doomed:
                del self._notifications[notification_id]
            return len(doomed)

    @property
    def count(self) -> int:
        return len(self._notifications)
