"""Channel transports: the narrow boundary to push, email, SMS and webhooks.

The engine only shapes a generic :class:`ChannelPayload`; each transport is
responsible for its own wire format. Transports may raise; the dispatcher
turns exceptions into failure reasons.
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any, Callable, Protocol, runtime_checkable

import httpx
from pydantic import BaseModel, Field

from taskflow.notifications.models import ChannelKind, Notification

logger = logging.getLogger(__name__)


class ChannelPayload(BaseModel):
    title: str
    body: str
    data: dict[str, Any] = Field(default_factory=dict)


class DeliveryResult(BaseModel):
    success: bool
    reason: str | None = None

    @classmethod
    def ok(cls) -> DeliveryResult:
        return cls(success=True)

    @classmethod
    def failure(cls, reason: str) -> DeliveryResult:
        return cls(success=False, reason=reason)


@runtime_checkable
class ChannelTransport(Protocol):
    """One transport per channel kind."""

    @property
    def channel(self) -> ChannelKind: ...

    async def deliver(
        self, notification: Notification, payload: ChannelPayload
    ) -> DeliveryResult: ...


class InboxItem(BaseModel):
    notification_id: str
    title: str
    body: str
    data: dict[str, Any] = Field(default_factory=dict)
    received_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))


class InAppInbox:
    """Per-user in-app feed with synchronous subscriber callbacks."""

    def __init__(self) -> None:
        self._items: dict[str, list[InboxItem]] = {}
        self._subscribers: list[Callable[[str, InboxItem], None]] = []

    def subscribe(self, callback: Callable[[str, InboxItem], None]) -> None:
        self._subscribers.append(callback)

    def push(self, user_id: str, item: InboxItem) -> None:
        self._items.setdefault(user_id, []).append(item)
        for callback in self._subscribers:
            callback(user_id, item)

    def items_for(self, user_id: str) -> list[InboxItem]:
        return list(self._items.get(user_id, []))


class InAppTransport:
    """Local write-and-signal; no network involved."""

    def __init__(self, inbox: InAppInbox | None = None) -> None:
        self._inbox = inbox or InAppInbox()

    @property
    def channel(self) -> ChannelKind:
        return ChannelKind.IN_APP

    @property
    def inbox(self) -> InAppInbox:
        return self._inbox

    async def deliver(self, notification: Notification, payload: ChannelPayload) -> DeliveryResult:
        self._inbox.push(
            notification.user_id,
            InboxItem(
                notification_id=notification.id,
                title=payload.title,
                body=payload.body,
                data=payload.data,
            ),
        )
        return DeliveryResult.ok()


class WebhookTransport:
    """POSTs the payload as JSON.

    The target URL comes from ``notification.metadata["webhook_url"]`` and
    falls back to ``default_url``.
    """

    def __init__(
        self,
        default_url: str | None = None,
        client: httpx.AsyncClient | None = None,
        timeout_seconds: float = 10.0,
    ) -> None:
        self._default_url = default_url
        self._http = client or httpx.AsyncClient(timeout=httpx.Timeout(timeout_seconds))

    @property
    def channel(self) -> ChannelKind:
        return ChannelKind.WEBHOOK

    async def deliver(self, notification: Notification, payload: ChannelPayload) -> DeliveryResult:
        url = notification.metadata.get("webhook_url") or self._default_url
        if not url:
            return DeliveryResult.failure("no webhook url configured")
        body = {
            "notification_id": notification.id,
            "user_id": notification.user_id,
            "kind": notification.kind.value,
            "title": payload.title,
            "body": payload.body,
            "data": payload.data,
        }
        try:
            resp = await self._http.post(url, json=body)
        except httpx.HTTPError as exc:
            return DeliveryResult.failure(f"webhook transport error: {exc}")
        if resp.status_code >= 300:
            return DeliveryResult.failure(f"webhook returned HTTP {resp.status_code}")
        return DeliveryResult.ok()

    async def close(self) -> None:
        await self._http.aclose()


class MockTransport:
    """Records deliveries instead of sending them.

    Stands in for push/email/SMS gateways. ``fail_with`` makes every call
    fail with that reason; ``failures`` fails only the next N calls.
    """

    def __init__(
        self,
        channel: ChannelKind,
        fail_with: str | None = None,
        failures: int = 0,
    ) -> None:
        self._channel = channel
        self.fail_with = fail_with
        self._failures_left = failures
        self.sent: list[tuple[str, ChannelPayload]] = []
        self.calls = 0

    @property
    def channel(self) -> ChannelKind:
        return self._channel

    async def deliver(self, notification: Notification, payload: ChannelPayload) -> DeliveryResult:
        self.calls += 1
        if self.fail_with is not None:
            return DeliveryResult.failure(self.fail_with)
        if self._failures_left > 0:
            self._failures_left -= 1
            return DeliveryResult.failure(f"{self._channel.value} gateway unavailable")
        self.sent.append((notification.id, payload))
        return DeliveryResult.ok()


class TransportRegistry:
    """Maps channel kinds to transports."""

    def __init__(self, transports: list[ChannelTransport] | None = None) -> None:
        self._transports: dict[ChannelKind, ChannelTransport] = {}
        for transport in transports or []:
            self.register(transport)

    def register(self, transport: ChannelTransport) -> None:
        self._transports[transport.channel] = transport

    def get(self, channel: ChannelKind) -> ChannelTransport | None:
        return self._transports.get(channel)

    @property
    def channels(self) -> list[ChannelKind]:
        return list(self._transports.keys())


def default_registry(
    inbox: InAppInbox | None = None,
    webhook_url: str | None = None,
    timeout_seconds: float = 10.0,
) -> TransportRegistry:
    """In-app and webhook transports plus recording stand-ins for the gateways."""
    return TransportRegistry([
        InAppTransport(inbox),
        MockTransport(ChannelKind.PUSH),
        MockTransport(ChannelKind.EMAIL),
        MockTransport(ChannelKind.SMS),
        WebhookTransport(default_url=webhook_url, timeout_seconds=timeout_seconds),
    ])
