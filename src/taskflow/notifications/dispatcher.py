"""Fan a notification out to its channels and collect per-channel outcomes."""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime

from pydantic import BaseModel

from taskflow.notifications.models import (
    ChannelAttempt,
    ChannelKind,
    Notification,
    NotificationPriority,
)
from taskflow.notifications.providers import UserContext
from taskflow.notifications.transports import ChannelPayload, TransportRegistry

logger = logging.getLogger(__name__)

PREFERENCE_SKIP_REASON = "disabled by user preference"

_DEFAULT_CHANNELS: dict[NotificationPriority, tuple[ChannelKind, ...]] = {
    NotificationPriority.URGENT: (ChannelKind.PUSH, ChannelKind.IN_APP, ChannelKind.EMAIL),
    NotificationPriority.HIGH: (ChannelKind.PUSH, ChannelKind.IN_APP),
    NotificationPriority.NORMAL: (ChannelKind.IN_APP,),
    NotificationPriority.LOW: (ChannelKind.IN_APP,),
}


def default_channels_for(priority: NotificationPriority) -> list[ChannelAttempt]:
    """Channel set for a notification created without explicit channels.

    Applied once at creation; retries reuse whatever was stored.
    """
    return [ChannelAttempt(channel=kind) for kind in _DEFAULT_CHANNELS[priority]]


def apply_preferences(notification: Notification, context: UserContext) -> Notification:
    """Copy of ``notification`` with channels the user opted out of switched off.

    A skipped channel keeps its attempt record with
    :data:`PREFERENCE_SKIP_REASON` and is never retried.
    """
    updated = notification.model_copy(deep=True)
    for attempt in updated.pending_channels:
        if not context.allows(attempt.channel, notification.kind):
            attempt.enabled = False
            attempt.failure_reason = PREFERENCE_SKIP_REASON
    return updated


class ChannelOutcome(BaseModel):
    channel: ChannelKind
    success: bool
    reason: str | None = None
    completed_at: datetime


def build_payload(notification: Notification) -> ChannelPayload:
    data = {
        "notification_id": notification.id,
        "kind": notification.kind.value,
        "category": notification.category.value,
        "priority": notification.priority.value,
    }
    if notification.source is not None:
        data["source"] = notification.source.model_dump(mode="json")
    if "batched_ids" in notification.metadata:
        data["batched_ids"] = list(notification.metadata["batched_ids"])
    return ChannelPayload(title=notification.title, body=notification.body, data=data)


class ChannelDispatcher:
    """Delivers to every pending channel concurrently, one call per channel.

    Each transport call is bounded by ``timeout_seconds``. Timeouts, raised
    exceptions, missing transports and negative results all come back as
    failed outcomes; nothing raised by a transport escapes this class.
    """

    def __init__(self, transports: TransportRegistry, timeout_seconds: float = 10.0) -> None:
        self._transports = transports
        self._timeout = timeout_seconds

    async def dispatch(self, notification: Notification, now: datetime) -> list[ChannelOutcome]:
        pending = notification.pending_channels
        if not pending:
            return []
        payload = build_payload(notification)
        results = await asyncio.gather(
            *(self._deliver_one(notification, attempt.channel, payload, now) for attempt in pending)
        )
        return list(results)

    async def _deliver_one(
        self,
        notification: Notification,
        channel: ChannelKind,
        payload: ChannelPayload,
        now: datetime,
    ) -> ChannelOutcome:
        transport = self._transports.get(channel)
        if transport is None:
            reason = f"no transport registered for {channel.value}"
        else:
            try:
                result = await asyncio.wait_for(
                    transport.deliver(notification, payload), timeout=self._timeout
                )
            except asyncio.TimeoutError:
                reason = f"{channel.value} timed out after {self._timeout:g}s"
            except Exception as exc:
                reason = f"{channel.value} transport error: {exc}"
            else:
                if result.success:
                    return ChannelOutcome(channel=channel, success=True, completed_at=now)
                reason = result.reason or f"{channel.value} delivery failed"

        logger.warning(
            "Channel delivery failed",
            extra={"notification_id": notification.id, "channel": channel.value, "reason": reason},
        )
        return ChannelOutcome(channel=channel, success=False, reason=reason, completed_at=now)
