"""FastAPI router for notification endpoints."""

from __future__ import annotations

from datetime import datetime
from typing import Any

from fastapi import APIRouter, HTTPException, Request
from pydantic import BaseModel, ValidationError

from taskflow.notifications.engine import NotificationEngine
from taskflow.notifications.errors import (
    InvalidTransitionError,
    LeaseLostError,
    NotificationNotFoundError,
)
from taskflow.notifications.interactions import InteractionType
from taskflow.notifications.models import (
    ChannelAttempt,
    ChannelKind,
    Grouping,
    Notification,
    NotificationCategory,
    NotificationKind,
    NotificationPriority,
    NotificationStatus,
    RecurrenceRule,
    RetryPolicy,
    SourceRef,
    TimeConditions,
    UserConditions,
)
from taskflow.notifications.scheduler import NotificationScheduler
from taskflow.repositories import resolve

router = APIRouter()


class ScheduleNotificationRequest(BaseModel):
    user_id: str
    scheduled_for: datetime
    kind: NotificationKind = NotificationKind.SYSTEM_NOTIFICATION
    category: NotificationCategory = NotificationCategory.INFORMATION
    priority: NotificationPriority | None = None
    title: str = ""
    body: str = ""
    metadata: dict[str, Any] | None = None
    source: SourceRef | None = None
    channels: list[ChannelKind] | None = None
    max_retries: int | None = None
    retry_interval_seconds: int | None = None
    expires_at: datetime | None = None
    time_conditions: TimeConditions | None = None
    user_conditions: UserConditions | None = None
    recurring: RecurrenceRule | None = None
    grouping: Grouping | None = None


class InteractionRequest(BaseModel):
    type: InteractionType
    action: str | None = None
    snooze_minutes: int | None = None


def _engine(request: Request) -> NotificationEngine:
    engine = getattr(request.app.state, "notification_engine", None)
    if engine is None:
        raise HTTPException(status_code=503, detail="Notification engine not available")
    return engine


def _serialize(notification: Notification) -> dict[str, Any]:
    return notification.model_dump(mode="json", exclude={"lease_owner", "lease_expires_at"})


def _build(body: ScheduleNotificationRequest, engine: NotificationEngine) -> Notification:
    fields = body.model_dump(
        exclude_unset=True,
        exclude_none=True,
        exclude={"channels", "max_retries", "retry_interval_seconds", "priority"},
    )
    if body.priority is not None:
        fields["priority"] = body.priority
    if body.channels:
        fields["channels"] = [ChannelAttempt(channel=c) for c in body.channels]
    if body.max_retries is not None or body.retry_interval_seconds is not None:
        delivery = engine.settings.delivery
        fields["retry"] = RetryPolicy(
            max_retries=delivery.max_retries if body.max_retries is None else body.max_retries,
            retry_interval_seconds=(
                delivery.retry_interval_seconds
                if body.retry_interval_seconds is None
                else body.retry_interval_seconds
            ),
        )
    return Notification(**fields)


@router.post("/api/notifications", status_code=201)
async def schedule_notification(
    body: ScheduleNotificationRequest, request: Request
) -> dict[str, Any]:
    """Schedule a new notification."""
    engine = _engine(request)
    try:
        notification = _build(body, engine)
    except ValidationError as exc:
        raise HTTPException(status_code=422, detail=str(exc))
    try:
        created = await engine.schedule(notification)
    except InvalidTransitionError as exc:
        raise HTTPException(status_code=409, detail=str(exc))
    return _serialize(created)


@router.get("/api/notifications/{notification_id}")
async def get_notification(notification_id: str, request: Request) -> dict[str, Any]:
    """Get one notification."""
    engine = _engine(request)
    try:
        notification = await engine.get(notification_id)
    except NotificationNotFoundError as exc:
        raise HTTPException(status_code=404, detail=str(exc))
    return _serialize(notification)


@router.get("/api/notifications")
async def list_notifications(
    request: Request,
    user_id: str | None = None,
    status: NotificationStatus | None = None,
) -> list[dict[str, Any]]:
    """List notifications, optionally for one user and status."""
    engine = _engine(request)
    if user_id:
        notifications = await engine.list_for_user(user_id, status)
    else:
        notifications = await resolve(engine.store.list_all())
        if status is not None:
            notifications = [n for n in notifications if n.status is status]
    return [_serialize(n) for n in notifications]


@router.post("/api/notifications/{notification_id}/cancel")
async def cancel_notification(
    notification_id: str, request: Request, reason: str | None = None
) -> dict[str, Any]:
    """Cancel a notification, or flag it if a worker is dispatching it."""
    engine = _engine(request)
    try:
        if reason:
            notification = await engine.cancel(notification_id, reason=reason)
        else:
            notification = await engine.cancel(notification_id)
    except NotificationNotFoundError as exc:
        raise HTTPException(status_code=404, detail=str(exc))
    except InvalidTransitionError as exc:
        raise HTTPException(status_code=409, detail=str(exc))
    data = _serialize(notification)
    data["cancel_pending"] = notification.status is not NotificationStatus.CANCELLED
    return data


@router.post("/api/notifications/{notification_id}/interactions")
async def record_interaction(
    notification_id: str, body: InteractionRequest, request: Request
) -> dict[str, Any]:
    """Record an opened/clicked/dismissed/snoozed event."""
    engine = _engine(request)
    try:
        transition = await engine.record_interaction(
            notification_id,
            body.type,
            action=body.action,
            snooze_minutes=body.snooze_minutes,
        )
    except NotificationNotFoundError as exc:
        raise HTTPException(status_code=404, detail=str(exc))
    except (InvalidTransitionError, LeaseLostError) as exc:
        raise HTTPException(status_code=409, detail=str(exc))
    except ValueError as exc:
        raise HTTPException(status_code=422, detail=str(exc))
    return {
        "changed": transition.changed,
        "event": transition.event,
        "notification": _serialize(transition.notification),
        "created": [n.id for n in transition.created],
    }


@router.post("/api/admin/notifications/process")
async def process_due(request: Request) -> dict[str, Any]:
    """Run one scheduler sweep now."""
    scheduler: NotificationScheduler | None = getattr(
        request.app.state, "notification_scheduler", None
    )
    if scheduler is None:
        raise HTTPException(status_code=503, detail="Notification scheduler not available")
    report = await scheduler.run_once()
    return report.model_dump(mode="json")


@router.post("/api/admin/notifications/cleanup")
async def cleanup(request: Request, days: int | None = None) -> dict[str, Any]:
    """Purge terminal notifications past the retention window."""
    engine = _engine(request)
    if days is not None and days < 0:
        raise HTTPException(status_code=422, detail="days must be >= 0")
    purged = await engine.cleanup(days)
    return {
        "purged": purged,
        "days": engine.settings.retention.retention_days if days is None else days,
    }
