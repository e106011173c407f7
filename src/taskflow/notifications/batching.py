"""Collapse due, batchable notifications of one group into a digest."""

from __future__ import annotations

import logging
import uuid
from datetime import datetime, timedelta

from pydantic import BaseModel, Field

from taskflow.notifications.dispatcher import default_channels_for
from taskflow.notifications.errors import CancellationPendingError, LeaseLostError
from taskflow.notifications.models import (
    PRIORITY_RANK,
    Notification,
    NotificationCategory,
    NotificationKind,
    NotificationStatus,
    RetryPolicy,
)
from taskflow.notifications.state import Transition, cancel
from taskflow.notifications.templates import TemplateRenderer
from taskflow.repositories import resolve
from taskflow.repositories.protocols import NotificationRepository

logger = logging.getLogger(__name__)

_DIGEST_NAMESPACE = uuid.UUID("6f1c2d4e-8a5b-4c3d-9e7f-0a1b2c3d4e5f")


def digest_id_for(member_ids: list[str]) -> str:
    """Same member set, same digest id."""
    return str(uuid.uuid5(_DIGEST_NAMESPACE, ",".join(sorted(member_ids))))


def eligible(notification: Notification, now: datetime) -> bool:
    """Due, batchable, unleased, not being cancelled, and never partially failed."""
    return (
        notification.is_batchable
        and not notification.cancel_requested
        and notification.retry.current_retries == 0
        and notification.scheduled_for <= now
        and not notification.is_leased(now)
    )


class BatchResult(BaseModel):
    user_id: str
    group_id: str
    digest: Notification | None = None
    cancelled: list[Transition] = Field(default_factory=list)
    # Members whose producer cancelled them while the batch was forming.
    withdrawn: list[Transition] = Field(default_factory=list)
    held: list[str] = Field(default_factory=list)


class BatchingEngine:
    """Runs before dispatch for one ``(user, group)`` pair.

    Members are leased together before anything is cancelled, so a worker
    cannot deliver a notification that is about to be folded into a digest.
    The digest is saved only after its members are cancelled and lists
    exactly those members.
    """

    def __init__(
        self,
        store: NotificationRepository,
        renderer: TemplateRenderer | None = None,
        lease_seconds: int = 60,
    ) -> None:
        self._store = store
        self._renderer = renderer or TemplateRenderer()
        self._lease = timedelta(seconds=lease_seconds)

    async def collapse(
        self, user_id: str, group_id: str, now: datetime, owner: str
    ) -> BatchResult:
        result = BatchResult(user_id=user_id, group_id=group_id)
        members = await resolve(self._store.list_group(user_id, group_id))
        due = sorted(
            (m for m in members if eligible(m, now)), key=lambda m: m.scheduled_for
        )
        if len(due) < 2:
            if len(due) == 1 and self._hold_for_siblings(due[0], members, now):
                result.held.append(due[0].id)
            return result

        limit = min(m.grouping.max_batch_size for m in due)
        claimed = await resolve(
            self._store.claim_many([m.id for m in due[:limit]], owner, now + self._lease, now)
        )
        try:
            # Re-check under the lease: the listing may be stale.
            for member in claimed:
                if member.status is NotificationStatus.SCHEDULED and member.cancel_requested:
                    await self._withdraw(member.id, owner, now, result)
            candidates = [
                m for m in claimed
                if m.status is NotificationStatus.SCHEDULED
                and not m.cancel_requested
                and m.retry.current_retries == 0
            ]
            if len(candidates) < 2:
                return result

            digest_id = digest_id_for([m.id for m in candidates])
            members: list[Notification] = []
            for member in candidates:
                transition = cancel(member, now, reason=f"batched into digest {digest_id}")
                try:
                    transition.notification = await resolve(
                        self._store.save_leased(transition.notification, owner, defer_to_cancel=True)
                    )
                except CancellationPendingError:
                    await self._withdraw(member.id, owner, now, result)
                    continue
                except LeaseLostError:
                    logger.debug("Lost lease on %s while batching", member.id)
                    continue
                transition.details["digest_id"] = digest_id
                result.cancelled.append(transition)
                members.append(member)
            if not members:
                return result

            digest = await resolve(self._store.get(digest_id))
            if digest is None:
                digest = await resolve(
                    self._store.save(self.build_digest(members, now, digest_id=digest_id))
                )
            result.digest = digest
            logger.info(
                "Collapsed %d notifications into digest %s",
                len(members), digest_id,
                extra={"user_id": user_id, "group_id": group_id},
            )
            return result
        finally:
            for member in claimed:
                await resolve(self._store.release(member.id, owner))

    def build_digest(
        self, members: list[Notification], now: datetime, digest_id: str | None = None
    ) -> Notification:
        member_ids = [m.id for m in members]
        first = members[0]
        rendered = self._renderer.render(
            "digest",
            {"count": len(members), "titles": ", ".join(m.title for m in members)},
        )
        title, body = rendered if rendered else (f"{len(members)} pending notifications", "")
        priority = max((m.priority for m in members), key=PRIORITY_RANK.__getitem__)
        expires_at = None
        if first.expires_at is not None and first.original_scheduled_for is not None:
            expires_at = now + (first.expires_at - first.original_scheduled_for)
        return Notification(
            id=digest_id or digest_id_for(member_ids),
            user_id=first.user_id,
            kind=NotificationKind.DIGEST,
            category=NotificationCategory.INFORMATION,
            priority=priority,
            title=title,
            body=body,
            metadata={
                "source": "batch_processor",
                "group_id": first.grouping.group_id,
                "batched_ids": member_ids,
            },
            scheduled_for=now,
            expires_at=expires_at,
            channels=default_channels_for(priority),
            retry=RetryPolicy(
                max_retries=first.retry.max_retries,
                retry_interval_seconds=first.retry.retry_interval_seconds,
            ),
            time_conditions=first.time_conditions,
            user_conditions=first.user_conditions,
            created_at=now,
            updated_at=now,
        )

    async def _withdraw(
        self, notification_id: str, owner: str, now: datetime, result: BatchResult
    ) -> None:
        """Commit a producer cancellation that arrived while the batch held the lease."""
        current = await resolve(self._store.get(notification_id))
        if current is None or current.status is not NotificationStatus.SCHEDULED:
            return
        transition = cancel(current, now)
        try:
            transition.notification = await resolve(
                self._store.save_leased(transition.notification, owner)
            )
        except LeaseLostError:
            logger.debug("Lost lease on %s while withdrawing it", notification_id)
            return
        result.withdrawn.append(transition)

    @staticmethod
    def _hold_for_siblings(
        member: Notification, group: list[Notification], now: datetime
    ) -> bool:
        """Keep a lone due member back while a sibling falls due within its batch delay."""
        window_end = member.scheduled_for + timedelta(seconds=member.grouping.batch_delay_seconds)
        if now >= window_end:
            return False
        return any(
            other.id != member.id
            and other.is_batchable
            and not other.cancel_requested
            and other.retry.current_retries == 0
            and now < other.scheduled_for <= window_end
            for other in group
        )
