"""Notification engine: the only component that commits lifecycle changes.

Every mutation follows the same discipline: claim the record's lease, apply
a pure transition from :mod:`taskflow.notifications.state` (or one of the
modules built on it), commit it with ``save_leased`` and release the lease.
"""

from __future__ import annotations

import inspect
import logging
import uuid
from datetime import datetime, timedelta, timezone
from typing import Any, Callable

from taskflow.core.config import Settings
from taskflow.core.types import AuditEvent
from taskflow.governance.audit import AuditLogger
from taskflow.notifications import interactions
from taskflow.notifications.batching import BatchingEngine, BatchResult
from taskflow.notifications.conditions import PreconditionEvaluator
from taskflow.notifications.dispatcher import (
    ChannelDispatcher,
    ChannelOutcome,
    apply_preferences,
    default_channels_for,
)
from taskflow.notifications.errors import (
    CancellationPendingError,
    InvalidTransitionError,
    LeaseLostError,
    NotificationNotFoundError,
    RecurrenceError,
)
from taskflow.notifications.interactions import InteractionType
from taskflow.notifications.models import (
    Notification,
    NotificationCategory,
    NotificationPriority,
    NotificationStatus,
    RetryPolicy,
)
from taskflow.notifications.providers import ContentProvider, UserContext, UserContextProvider
from taskflow.notifications.recurrence import REGENERATING_STATUSES, generate_next, mark_generated
from taskflow.notifications.retry import apply_outcomes, recover_interrupted, settle_dispatch
from taskflow.notifications.state import (
    DEFAULT_CANCEL_REASON,
    Transition,
    begin_dispatch,
    cancel,
    expire,
    is_expired,
    reschedule,
)
from taskflow.notifications.templates import TemplateRenderer
from taskflow.notifications.transports import TransportRegistry, default_registry
from taskflow.repositories import resolve
from taskflow.repositories.protocols import NotificationRepository

logger = logging.getLogger(__name__)

S = NotificationStatus

FailureListener = Callable[[Notification], Any]


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class NotificationEngine:
    """Schedules, dispatches and tracks notifications.

    Args:
        store: Any :class:`NotificationRepository` (sync or async).
        transports: Channel transports; defaults to :func:`default_registry`.
        context_provider: Source of user availability. Without one every
            user gets a permissive default context.
        content_provider: Source of live task/schedule content used to
            refresh title and body before dispatch.
        audit_logger: Receives one event per committed transition.
        settings: Application settings; defaults to ``Settings()``.
        clock: Returns the current aware UTC time.
    """

    def __init__(
        self,
        store: NotificationRepository,
        transports: TransportRegistry | None = None,
        context_provider: UserContextProvider | None = None,
        content_provider: ContentProvider | None = None,
        audit_logger: AuditLogger | None = None,
        settings: Settings | None = None,
        renderer: TemplateRenderer | None = None,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self._settings = settings or Settings()
        delivery = self._settings.delivery
        scheduler = self._settings.scheduler

        self._store = store
        self._transports = transports or default_registry(
            webhook_url=delivery.webhook_url,
            timeout_seconds=delivery.channel_timeout_seconds,
        )
        self._dispatcher = ChannelDispatcher(self._transports, delivery.channel_timeout_seconds)
        self._default_delay = timedelta(minutes=scheduler.default_reschedule_minutes)
        self._evaluator = PreconditionEvaluator(default_delay=self._default_delay)
        self._context = context_provider
        self._content = content_provider
        self._audit = audit_logger
        self._renderer = renderer or TemplateRenderer(self._settings.notification.templates_path)
        self._lease = timedelta(seconds=scheduler.lease_seconds)
        self._batching = BatchingEngine(store, self._renderer, scheduler.lease_seconds)
        self._clock = clock or _utcnow
        self._failure_listeners: list[FailureListener] = []

    # -- accessors ----------------------------------------------------------

    @property
    def store(self) -> NotificationRepository:
        return self._store

    @property
    def settings(self) -> Settings:
        return self._settings

    @property
    def transports(self) -> TransportRegistry:
        return self._transports

    def now(self) -> datetime:
        return self._clock()

    def add_failure_listener(self, listener: FailureListener) -> None:
        """Register a callback invoked with every notification that ends ``failed``."""
        self._failure_listeners.append(listener)

    # -- producer operations ------------------------------------------------

    async def schedule(self, notification: Notification, now: datetime | None = None) -> Notification:
        """Create a notification, applying creation-time defaults once."""
        now = now or self.now()
        if notification.status is not S.SCHEDULED:
            raise InvalidTransitionError(notification.id, notification.status.value, "schedule")
        existing = await resolve(self._store.get(notification.id))
        if existing is not None:
            raise InvalidTransitionError(notification.id, existing.status.value, "schedule")

        explicit = notification.model_fields_set
        update: dict[str, Any] = {
            "lease_owner": None,
            "lease_expires_at": None,
            "cancel_requested": False,
            "sent_at": None,
            "dispatch_started_at": None,
            "status_reason": None,
            "version": 0,
            "created_at": now,
            "updated_at": now,
        }
        priority = notification.priority
        if notification.category is NotificationCategory.URGENT and "priority" not in explicit:
            priority = NotificationPriority.URGENT
            update["priority"] = priority
        if not notification.channels:
            update["channels"] = default_channels_for(priority)
        if "retry" not in explicit:
            update["retry"] = RetryPolicy(
                max_retries=self._settings.delivery.max_retries,
                retry_interval_seconds=self._settings.delivery.retry_interval_seconds,
            )
        if notification.expires_at is None:
            anchor = notification.original_scheduled_for or notification.scheduled_for
            update["expires_at"] = anchor + timedelta(hours=self._settings.scheduler.expiry_hours)
        if notification.grouping is not None:
            grouping = notification.grouping.model_copy()
            if "max_batch_size" not in grouping.model_fields_set:
                grouping.max_batch_size = self._settings.notification.default_max_batch_size
            if "batch_delay_seconds" not in grouping.model_fields_set:
                grouping.batch_delay_seconds = self._settings.notification.default_batch_delay_seconds
            update["grouping"] = grouping
        if notification.recurring is not None and notification.recurring.series_id is None:
            update["recurring"] = notification.recurring.model_copy(
                update={"series_id": notification.id}
            )

        created = await resolve(self._store.save(notification.model_copy(update=update, deep=True)))
        logger.info(
            "Scheduled notification %s", created.id,
            extra={"user_id": created.user_id, "scheduled_for": created.scheduled_for.isoformat()},
        )
        self._record(
            Transition(notification=created, from_status=S.SCHEDULED, event="scheduled"),
            actor="producer",
        )
        return created

    async def get(self, notification_id: str) -> Notification:
        notification = await resolve(self._store.get(notification_id))
        if notification is None:
            raise NotificationNotFoundError(notification_id)
        return notification

    async def list_for_user(
        self, user_id: str, status: NotificationStatus | None = None
    ) -> list[Notification]:
        notifications = await resolve(self._store.list_for_user(user_id, status))
        return sorted(notifications, key=lambda n: n.scheduled_for)

    async def cancel(
        self,
        notification_id: str,
        reason: str = DEFAULT_CANCEL_REASON,
        now: datetime | None = None,
    ) -> Notification:
        """Cancel now, or flag a leased notification for its worker to cancel.

        The returned record is ``cancelled`` when the cancellation was
        committed directly, otherwise still in flight with
        ``cancel_requested`` set.
        """
        now = now or self.now()
        owner = f"cancel-{uuid.uuid4().hex[:8]}"
        claimed = await resolve(self._store.claim(notification_id, owner, now + self._lease, now))
        if claimed is None:
            flagged = await resolve(self._store.request_cancel(notification_id, reason))
            if flagged is None:
                raise NotificationNotFoundError(notification_id)
            if not flagged.cancel_requested:
                raise InvalidTransitionError(notification_id, flagged.status.value, "cancel")
            logger.info("Cancellation requested for in-flight notification %s", notification_id)
            return flagged

        try:
            target = claimed
            if claimed.status is S.SENT:
                # Orphaned mid-dispatch; treat as a pending request.
                target = claimed.model_copy(update={"cancel_requested": True})
            transition = await self._commit(cancel(target, now, reason=reason), owner, "producer")
            return transition.notification
        finally:
            await resolve(self._store.release(notification_id, owner))

    async def record_interaction(
        self,
        notification_id: str,
        interaction: InteractionType,
        *,
        action: str | None = None,
        snooze_minutes: int | None = None,
        now: datetime | None = None,
    ) -> Transition:
        """Apply a user action reported by a channel.

        Raises LeaseLostError while the notification is being dispatched;
        the caller may report the interaction again.
        """
        now = now or self.now()
        owner = f"interaction-{uuid.uuid4().hex[:8]}"
        claimed = await resolve(self._store.claim(notification_id, owner, now + self._lease, now))
        if claimed is None:
            if await resolve(self._store.get(notification_id)) is None:
                raise NotificationNotFoundError(notification_id)
            raise LeaseLostError(f"notification {notification_id} is being processed")

        try:
            transition = interactions.record_interaction(
                claimed, interaction, now, action=action, snooze_minutes=snooze_minutes
            )
            if not transition.changed:
                return transition
            transition = await self._commit(transition, owner, "user")
            return await self._after_terminal(transition, owner, now)
        finally:
            await resolve(self._store.release(notification_id, owner))

    # -- worker operations --------------------------------------------------

    async def process_notification(
        self, notification_id: str, worker_id: str, now: datetime | None = None
    ) -> Transition | None:
        """Run one due notification through the pipeline under a lease.

        Returns the committed transition, or None when the notification was
        leased elsewhere, no longer due, or the lease was lost.
        """
        now = now or self.now()
        claimed = await resolve(
            self._store.claim(notification_id, worker_id, now + self._lease, now)
        )
        if claimed is None:
            logger.debug("Skipping %s: leased by another worker", notification_id)
            return None
        try:
            return await self._process_claimed(claimed, worker_id, now)
        except CancellationPendingError:
            return await self._honour_cancel(notification_id, worker_id, now)
        except LeaseLostError:
            logger.debug("Lease on %s lost during processing", notification_id)
            return None
        finally:
            await resolve(self._store.release(notification_id, worker_id))

    async def batch_group(
        self,
        user_id: str,
        group_id: str,
        owner: str = "batcher",
        now: datetime | None = None,
    ) -> BatchResult:
        now = now or self.now()
        result = await self._batching.collapse(user_id, group_id, now, owner)
        if result.digest is not None and result.cancelled:
            self._record(
                Transition(
                    notification=result.digest,
                    from_status=S.SCHEDULED,
                    event="digest_created",
                    details={"batched_ids": result.digest.metadata.get("batched_ids", [])},
                ),
                actor=owner,
            )
        for transition in result.cancelled:
            self._record(transition, actor=owner)
        for transition in result.withdrawn:
            self._record(transition, actor="producer")
        return result

    async def cleanup(self, days: int | None = None, now: datetime | None = None) -> int:
        """Purge terminal notifications untouched for ``days`` (default: retention)."""
        now = now or self.now()
        days = self._settings.retention.retention_days if days is None else days
        purged = await resolve(self._store.purge_terminal(now - timedelta(days=days)))
        logger.info("Purged %d terminal notifications older than %d days", purged, days)
        return purged

    # -- pipeline -----------------------------------------------------------

    async def _process_claimed(
        self, notification: Notification, owner: str, now: datetime
    ) -> Transition | None:
        if notification.status is S.SENT:
            if notification.cancel_requested:
                return await self._commit(cancel(notification, now), owner, owner)
            logger.warning(
                "Recovering interrupted dispatch",
                extra={"notification_id": notification.id, "worker": owner},
            )
            settled = await self._commit(recover_interrupted(notification, now), owner, owner)
            return await self._after_terminal(settled, owner, now)

        if notification.status is not S.SCHEDULED:
            return None
        if notification.cancel_requested:
            return await self._commit(cancel(notification, now), owner, owner)
        if notification.scheduled_for > now:
            return None
        if is_expired(notification, now):
            return await self._commit(expire(notification, now), owner, owner)

        try:
            context = await self._user_context(notification.user_id)
        except Exception as exc:
            logger.warning("User context unavailable for %s: %s", notification.user_id, exc)
            return await self._commit(
                reschedule(
                    notification, now + self._default_delay, now,
                    reason=f"user context unavailable: {exc}",
                ),
                owner, owner,
            )

        verdict = self._evaluator.evaluate(notification, context, now)
        if not verdict.allowed:
            logger.info(
                "Precondition rejected",
                extra={"notification_id": notification.id, "reason": verdict.reason},
            )
            return await self._commit(
                reschedule(
                    notification, verdict.retry_at, now,
                    reason=verdict.reason, window_closes_at=verdict.window_closes_at,
                ),
                owner, owner,
            )

        notification = apply_preferences(notification, context)
        if not notification.pending_channels and not any(c.delivered for c in notification.channels):
            logger.info(
                "Every channel disabled by user preference",
                extra={"notification_id": notification.id, "user_id": notification.user_id},
            )
            return await self._commit(
                cancel(notification, now, reason="all channels disabled by user preference"),
                owner, owner,
            )

        notification = await self._refresh_content(notification)
        started = await self._commit(begin_dispatch(notification, now), owner, owner)
        sent = started.notification

        outcomes = await self._dispatcher.dispatch(sent, now)
        finished_at = max(now, self.now())

        current = await resolve(self._store.get(sent.id))
        if current is not None and current.cancel_requested:
            return await self._honour_cancel(sent.id, owner, finished_at, outcomes)
        try:
            settled = await self._commit(settle_dispatch(sent, outcomes, finished_at), owner, owner)
        except CancellationPendingError:
            return await self._honour_cancel(sent.id, owner, finished_at, outcomes)
        return await self._after_terminal(settled, owner, finished_at)

    async def _honour_cancel(
        self,
        notification_id: str,
        owner: str,
        now: datetime,
        outcomes: list[ChannelOutcome] | None = None,
    ) -> Transition | None:
        """Commit a cancellation requested while ``owner`` held the lease.

        Channel outcomes of the in-flight attempt are kept on the record but
        never turn into ``delivered`` or ``failed``.
        """
        current = await resolve(self._store.get(notification_id))
        if current is None or current.status not in (S.SCHEDULED, S.SENT):
            return None
        if outcomes:
            current = apply_outcomes(current, outcomes, now)
        current.cancel_requested = True
        return await self._commit(cancel(current, now), owner, owner)

    async def _after_terminal(
        self, transition: Transition, owner: str, now: datetime
    ) -> Transition:
        notification = transition.notification
        if notification.status is S.FAILED:
            await self._notify_failure(notification)
        if notification.status in REGENERATING_STATUSES and notification.recurring is not None:
            await self._regenerate(transition, owner, now)
        return transition

    async def _regenerate(self, transition: Transition, owner: str, now: datetime) -> None:
        """Create the next occurrence and link it from the current one."""
        notification = transition.notification
        try:
            successor = generate_next(notification, now)
        except RecurrenceError as exc:
            logger.warning(
                "Recurrence stopped for %s: %s", notification.id, exc,
                extra={"notification_id": notification.id},
            )
            return
        if successor is None:
            return

        successor = await resolve(self._store.save(successor))
        marked = mark_generated(notification, successor.id, now)
        transition.notification = await resolve(self._store.save_leased(marked, owner))
        transition.created.append(successor)
        logger.info(
            "Generated occurrence %d of %s",
            successor.recurring.current_occurrence, successor.recurring.series_id,
            extra={"notification_id": successor.id},
        )
        self._record(
            Transition(
                notification=successor,
                from_status=S.SCHEDULED,
                event="occurrence_generated",
                details={"previous_id": notification.id},
            ),
            actor=owner,
        )

    async def _user_context(self, user_id: str) -> UserContext:
        if self._context is None:
            return UserContext(user_id=user_id)
        return await resolve(self._context.get_context(user_id))

    async def _refresh_content(self, notification: Notification) -> Notification:
        """Re-render title and body from the live source entity, if any."""
        if self._content is None or notification.source is None:
            return notification
        try:
            content = await resolve(self._content.get_content(notification.source))
        except Exception as exc:
            logger.warning("Content refresh failed for %s: %s", notification.id, exc)
            return notification
        if content is None:
            return notification

        rendered = self._renderer.render(
            notification.kind.value,
            {**content.data, "title": content.title, "description": content.description},
        )
        if rendered is None:
            rendered = (content.title, content.description or notification.body)
        title, body = rendered
        return notification.model_copy(update={"title": title, "body": body})

    async def _notify_failure(self, notification: Notification) -> None:
        for listener in list(self._failure_listeners):
            try:
                result = listener(notification)
                if inspect.isawaitable(result):
                    await result
            except Exception:
                logger.exception("Failure listener raised for %s", notification.id)

    # -- persistence --------------------------------------------------------

    async def _commit(self, transition: Transition, owner: str, actor: str) -> Transition:
        saved = await resolve(self._store.save_leased(transition.notification, owner))
        transition.notification = saved
        self._record(transition, actor)
        return transition

    def _record(self, transition: Transition, actor: str) -> None:
        if self._audit is None or not transition.changed:
            return
        notification = transition.notification
        self._audit.log(
            AuditEvent(
                notification_id=notification.id,
                user_id=notification.user_id,
                actor=actor,
                action=transition.event,
                from_status=transition.from_status.value,
                to_status=notification.status.value,
                details=transition.details,
            )
        )
