"""Protocol definition for notification storage.

Both the in-memory store (sync) and the SQL repository (async) satisfy this
interface; callers wrap every call in ``resolve()``.
"""

from __future__ import annotations

from datetime import datetime
from typing import Protocol, runtime_checkable

from taskflow.notifications.models import Notification, NotificationStatus


@runtime_checkable
class NotificationRepository(Protocol):
    """Persistence plus the lease primitives the workers rely on."""

    def save(self, notification: Notification) -> Notification: ...

    def get(self, notification_id: str) -> Notification | None: ...

    def list_for_user(
        self, user_id: str, status: NotificationStatus | None = None
    ) -> list[Notification]: ...

    def list_all(self) -> list[Notification]: ...

    def find_due(self, now: datetime, limit: int = 100) -> list[Notification]: ...

    def list_group(self, user_id: str, group_id: str) -> list[Notification]: ...

    def claim(
        self, notification_id: str, owner: str, until: datetime, now: datetime
    ) -> Notification | None: ...

    def claim_many(
        self, notification_ids: list[str], owner: str, until: datetime, now: datetime
    ) -> list[Notification]: ...

    def save_leased(
        self, notification: Notification, owner: str, *, defer_to_cancel: bool = False
    ) -> Notification: ...

    def release(self, notification_id: str, owner: str) -> None: ...

    def request_cancel(
        self, notification_id: str, reason: str | None = None
    ) -> Notification | None: ...

    def purge_terminal(self, older_than: datetime) -> int: ...
