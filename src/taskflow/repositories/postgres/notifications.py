"""PostgreSQL notification repository."""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any

from sqlalchemy import delete, func, or_, select, update

from taskflow.db.engine import DatabaseManager
from taskflow.db.models import NotificationRow
from taskflow.notifications.errors import CancellationPendingError, LeaseLostError
from taskflow.notifications.models import (
    TERMINAL_STATUSES,
    Notification,
    NotificationStatus,
)

_CANCELLABLE = (NotificationStatus.SCHEDULED.value, NotificationStatus.SENT.value)

_JSON_FIELDS = (
    "channels",
    "retry",
    "time_conditions",
    "user_conditions",
    "recurring",
    "grouping",
    "interaction",
    "errors",
)


def _as_utc(value: datetime | None) -> datetime | None:
    """SQLite hands back naive datetimes; everything stored is UTC."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def _lease_free(now: datetime):
    return or_(
        NotificationRow.lease_owner.is_(None),
        NotificationRow.lease_expires_at.is_(None),
        NotificationRow.lease_expires_at <= now,
    )


class PostgresNotificationRepository:
    """Postgres-backed notification storage.

    Leases are taken with a conditional ``UPDATE`` so two workers can never
    both believe they hold the same record.
    """

    def __init__(self, db: DatabaseManager) -> None:
        self._db = db

    async def save(self, notification: Notification) -> Notification:
        async with self._db.session() as db:
            row = await db.get(NotificationRow, notification.id)
            if row is None:
                row = NotificationRow(id=notification.id, version=notification.version)
                db.add(row)
            self._apply(row, notification)
            row.lease_owner = notification.lease_owner
            row.lease_expires_at = _as_utc(notification.lease_expires_at)
            row.version = (row.version or 0) + 1
            await db.commit()
            return self._row_to_notification(row)

    async def get(self, notification_id: str) -> Notification | None:
        async with self._db.session() as db:
            row = await db.get(NotificationRow, notification_id)
            if row is None:
                return None
            return self._row_to_notification(row)

    async def list_for_user(
        self, user_id: str, status: NotificationStatus | None = None
    ) -> list[Notification]:
        query = select(NotificationRow).where(NotificationRow.user_id == user_id)
        if status is not None:
            query = query.where(NotificationRow.status == status.value)
        async with self._db.session() as db:
            result = await db.execute(query)
            return [self._row_to_notification(r) for r in result.scalars().all()]

    async def list_all(self) -> list[Notification]:
        async with self._db.session() as db:
            result = await db.execute(select(NotificationRow))
            return [self._row_to_notification(r) for r in result.scalars().all()]

    async def find_due(self, now: datetime, limit: int = 100) -> list[Notification]:
        now = _as_utc(now)
        query = (
            select(NotificationRow)
            .where(_lease_free(now))
            .where(
                or_(
                    (NotificationRow.status == NotificationStatus.SCHEDULED.value)
                    & (
                        (NotificationRow.scheduled_for <= now)
                        | NotificationRow.cancel_requested.is_(True)
                    ),
                    NotificationRow.status == NotificationStatus.SENT.value,
                )
            )
            .order_by(NotificationRow.scheduled_for)
            .limit(limit)
        )
        async with self._db.session() as db:
            result = await db.execute(query)
            return [self._row_to_notification(r) for r in result.scalars().all()]

    async def list_group(self, user_id: str, group_id: str) -> list[Notification]:
        async with self._db.session() as db:
            result = await db.execute(
                select(NotificationRow).where(
                    NotificationRow.user_id == user_id,
                    NotificationRow.group_id == group_id,
                    NotificationRow.status == NotificationStatus.SCHEDULED.value,
                )
            )
            return [self._row_to_notification(r) for r in result.scalars().all()]

    async def claim(
        self, notification_id: str, owner: str, until: datetime, now: datetime
    ) -> Notification | None:
        claimed = await self.claim_many([notification_id], owner, until, now)
        return claimed[0] if claimed else None

    async def claim_many(
        self, notification_ids: list[str], owner: str, until: datetime, now: datetime
    ) -> list[Notification]:
        if not notification_ids:
            return []
        now, until = _as_utc(now), _as_utc(until)
        async with self._db.session() as db:
            await db.execute(
                update(NotificationRow)
                .where(NotificationRow.id.in_(notification_ids))
                .where(_lease_free(now))
                .values(
                    lease_owner=owner,
                    lease_expires_at=until,
                    version=NotificationRow.version + 1,
                )
                .execution_options(synchronize_session=False)
            )
            await db.commit()
            result = await db.execute(
                select(NotificationRow).where(
                    NotificationRow.id.in_(notification_ids),
                    NotificationRow.lease_owner == owner,
                    NotificationRow.lease_expires_at == until,
                )
            )
            rows = {r.id: r for r in result.scalars().all()}
        return [self._row_to_notification(rows[i]) for i in notification_ids if i in rows]

    async def save_leased(
        self, notification: Notification, owner: str, *, defer_to_cancel: bool = False
    ) -> Notification:
        async with self._db.session() as db:
            row = await db.get(NotificationRow, notification.id, with_for_update=True)
            if row is None or row.lease_owner != owner:
                raise LeaseLostError(f"lease on {notification.id} is not held by {owner}")
            cancelling = (
                notification.cancel_requested
                or notification.status is NotificationStatus.CANCELLED
            )
            if (
                row.cancel_requested
                and row.status in _CANCELLABLE
                and (defer_to_cancel or not cancelling)
            ):
                raise CancellationPendingError(f"cancellation pending on {notification.id}")
            self._apply(row, notification)
            row.version = row.version + 1
            await db.commit()
            return self._row_to_notification(row)

    async def release(self, notification_id: str, owner: str) -> None:
        async with self._db.session() as db:
            await db.execute(
                update(NotificationRow)
                .where(NotificationRow.id == notification_id, NotificationRow.lease_owner == owner)
                .values(lease_owner=None, lease_expires_at=None, version=NotificationRow.version + 1)
                .execution_options(synchronize_session=False)
            )
            await db.commit()

    async def request_cancel(
        self, notification_id: str, reason: str | None = None
    ) -> Notification | None:
        async with self._db.session() as db:
            await db.execute(
                update(NotificationRow)
                .where(
                    NotificationRow.id == notification_id,
                    NotificationRow.status.in_(_CANCELLABLE),
                )
                .values(
                    cancel_requested=True,
                    status_reason=reason,
                    version=NotificationRow.version + 1,
                )
                .execution_options(synchronize_session=False)
            )
            await db.commit()
        return await self.get(notification_id)

    async def purge_terminal(self, older_than: datetime) -> int:
        async with self._db.session() as db:
            result = await db.execute(
                delete(NotificationRow)
                .where(NotificationRow.status.in_([s.value for s in TERMINAL_STATUSES]))
                .where(NotificationRow.updated_at < _as_utc(older_than))
                .execution_options(synchronize_session=False)
            )
            await db.commit()
            return result.rowcount or 0

    @property
    def count(self) -> int:
        raise NotImplementedError("Use async_count() instead for Postgres")

    async def async_count(self) -> int:
        async with self._db.session() as db:
            result = await db.execute(select(func.count()).select_from(NotificationRow))
            return result.scalar_one()

    @staticmethod
    def _apply(row: NotificationRow, notification: Notification) -> None:
        """Copy every non-lease field of ``notification`` onto ``row``."""
        row.user_id = notification.user_id
        row.kind = notification.kind.value
        row.category = notification.category.value
        row.priority = notification.priority.value
        row.status = notification.status.value
        row.status_reason = notification.status_reason
        row.title = notification.title
        row.body = notification.body
        row.source_kind = notification.source.kind.value if notification.source else None
        row.source_id = notification.source.id if notification.source else None
        row.group_id = notification.grouping.group_id if notification.grouping else None
        row.scheduled_for = _as_utc(notification.scheduled_for)
        row.original_scheduled_for = _as_utc(notification.original_scheduled_for)
        row.expires_at = _as_utc(notification.expires_at)
        row.sent_at = _as_utc(notification.sent_at)
        row.dispatch_started_at = _as_utc(notification.dispatch_started_at)
        row.cancel_requested = notification.cancel_requested
        row.created_at = _as_utc(notification.created_at)
        row.updated_at = _as_utc(notification.updated_at)

        dumped = notification.model_dump(mode="json", include=set(_JSON_FIELDS))
        for field in _JSON_FIELDS:
            setattr(row, field, dumped.get(field))
        row.metadata_json = notification.model_dump(mode="json", include={"metadata"})["metadata"]

    @staticmethod
    def _row_to_notification(row: NotificationRow) -> Notification:
        data: dict[str, Any] = {
            "id": row.id,
            "user_id": row.user_id,
            "kind": row.kind,
            "category": row.category,
            "priority": row.priority,
            "status": row.status,
            "status_reason": row.status_reason,
            "title": row.title or "",
            "body": row.body or "",
            "metadata": row.metadata_json or {},
            "scheduled_for": _as_utc(row.scheduled_for),
            "original_scheduled_for": _as_utc(row.original_scheduled_for),
            "expires_at": _as_utc(row.expires_at),
            "sent_at": _as_utc(row.sent_at),
            "dispatch_started_at": _as_utc(row.dispatch_started_at),
            "lease_owner": row.lease_owner,
            "lease_expires_at": _as_utc(row.lease_expires_at),
            "version": row.version or 0,
            "cancel_requested": bool(row.cancel_requested),
            "created_at": _as_utc(row.created_at),
            "updated_at": _as_utc(row.updated_at),
        }
        if row.source_kind and row.source_id:
            data["source"] = {"kind": row.source_kind, "id": row.source_id}
        for field in _JSON_FIELDS:
            value = getattr(row, field)
            if value is not None:
                data[field] = value
        return Notification.model_validate(data)
