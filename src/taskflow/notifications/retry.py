"""Settle a dispatch cycle: delivered, retry later, or failed."""

from __future__ import annotations

from datetime import datetime, timedelta

from taskflow.notifications.dispatcher import ChannelOutcome
from taskflow.notifications.errors import InvalidTransitionError
from taskflow.notifications.models import (
    DeliveryError,
    Notification,
    NotificationStatus,
)
from taskflow.notifications.state import Transition, move

INTERRUPTED_REASON = "dispatch interrupted before completion"


def apply_outcomes(
    notification: Notification, outcomes: list[ChannelOutcome], now: datetime
) -> Notification:
    """Copy of ``notification`` with channel flags and the error log updated."""
    updated = notification.model_copy(deep=True)
    by_channel = {attempt.channel: attempt for attempt in updated.channels}
    for outcome in outcomes:
        attempt = by_channel.get(outcome.channel)
        if attempt is None:
            continue
        if outcome.success:
            attempt.delivered = True
            attempt.delivered_at = outcome.completed_at
            attempt.failure_reason = None
        else:
            attempt.failure_reason = outcome.reason
            updated.errors.append(
                DeliveryError(
                    timestamp=now,
                    error=outcome.reason or "delivery failed",
                    channel=outcome.channel,
                    retry_count=updated.retry.current_retries,
                )
            )
    return updated


def settle_dispatch(
    notification: Notification, outcomes: list[ChannelOutcome], now: datetime
) -> Transition:
    """Aggregate one cycle's outcomes into the next lifecycle state.

    Every enabled channel delivered -> ``delivered``. Otherwise the failed
    attempt consumes one unit of the retry budget; with budget left the
    notification returns to ``scheduled`` after a linear
    ``retry_interval_seconds`` delay (only undelivered channels are retried),
    and once ``current_retries`` reaches ``max_retries`` it is ``failed``.
    """
    if notification.status is not NotificationStatus.SENT:
        raise InvalidTransitionError(notification.id, notification.status.value, "settle")

    updated = apply_outcomes(notification, outcomes, now)
    failing = [attempt.channel.value for attempt in updated.pending_channels]
    if not failing:
        delivered = move(updated, NotificationStatus.DELIVERED, now, event="delivered")
        return Transition(
            notification=delivered, from_status=notification.status, event="delivered"
        )

    retry = updated.retry
    retry.current_retries = min(retry.current_retries + 1, retry.max_retries)
    if retry.current_retries < retry.max_retries:
        pending = move(updated, NotificationStatus.SCHEDULED, now, event="retry")
        pending.scheduled_for = max(
            updated.scheduled_for, now + timedelta(seconds=retry.retry_interval_seconds)
        )
        return Transition(
            notification=pending,
            from_status=notification.status,
            event="retry_scheduled",
            details={
                "failing_channels": failing,
                "attempt": retry.current_retries,
                "scheduled_for": pending.scheduled_for.isoformat(),
            },
        )

    reason = f"delivery failed on {', '.join(failing)} after {retry.current_retries} attempt(s)"
    if retry.max_retries == 0:
        reason = f"delivery failed on {', '.join(failing)}; retries disabled"
    failed = move(updated, NotificationStatus.FAILED, now, event="failed", reason=reason)
    return Transition(
        notification=failed,
        from_status=notification.status,
        event="failed",
        details={"failing_channels": failing},
    )


def recover_interrupted(notification: Notification, now: datetime) -> Transition:
    """Settle a ``sent`` notification whose worker died mid-dispatch.

    Channels that never reported are counted as failed for that attempt.
    """
    outcomes = [
        ChannelOutcome(
            channel=attempt.channel,
            success=False,
            reason=INTERRUPTED_REASON,
            completed_at=now,
        )
        for attempt in notification.pending_channels
    ]
    return settle_dispatch(notification, outcomes, now)
