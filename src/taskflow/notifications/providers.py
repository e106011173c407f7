"""User-context and content providers consumed by the engine.

Both are read-only collaborators owned by other parts of the product. The
engine only depends on the Protocols; the static implementations back tests
and single-process deployments.
"""

from __future__ import annotations

import threading
import time
from datetime import datetime, timezone
from typing import Awaitable, Callable, Protocol, runtime_checkable

from pydantic import BaseModel, Field

from taskflow.notifications.models import (
    ChannelKind,
    NotificationContent,
    NotificationKind,
    SourceRef,
)
from taskflow.repositories import resolve


class DoNotDisturbWindow(BaseModel):
    enabled: bool = False
    start: str | None = None  # "22:00"
    end: str | None = None  # "08:00"
    weekends_only: bool = False


class UserContext(BaseModel):
    """Point-in-time view of a user's availability."""

    user_id: str
    timezone: str = "UTC"
    do_not_disturb: DoNotDisturbWindow = Field(default_factory=DoNotDisturbWindow)
    in_meeting: bool = False
    is_active: bool = True
    disabled_channels: list[ChannelKind] = Field(default_factory=list)
    # channel -> {notification kind: enabled}; kinds not listed are allowed
    channel_preferences: dict[ChannelKind, dict[NotificationKind, bool]] = Field(default_factory=dict)
    captured_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

    def allows(self, channel: ChannelKind, kind: NotificationKind) -> bool:
        if channel in self.disabled_channels:
            return False
        return self.channel_preferences.get(channel, {}).get(kind, True)


@runtime_checkable
class UserContextProvider(Protocol):
    """May return the context directly or as an awaitable."""

    def get_context(self, user_id: str) -> UserContext | Awaitable[UserContext]: ...


@runtime_checkable
class ContentProvider(Protocol):
    def get_content(
        self, source: SourceRef
    ) -> NotificationContent | None | Awaitable[NotificationContent | None]: ...


class StaticContextProvider:
    """In-memory user contexts; unknown users get a permissive default."""

    def __init__(self, contexts: dict[str, UserContext] | None = None) -> None:
        self._contexts = dict(contexts or {})

    def set_context(self, context: UserContext) -> None:
        self._contexts[context.user_id] = context

    def get_context(self, user_id: str) -> UserContext:
        context = self._contexts.get(user_id)
        if context is None:
            return UserContext(user_id=user_id)
        return context.model_copy(update={"captured_at": datetime.now(timezone.utc)})


class CachedContextProvider:
    """Wrap a provider with a short TTL.

    User state is time-sensitive, so the TTL should stay at a few seconds.
    """

    def __init__(
        self,
        provider: UserContextProvider,
        ttl_seconds: float = 5.0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._provider = provider
        self._ttl = ttl_seconds
        self._clock = clock
        self._entries: dict[str, tuple[float, UserContext]] = {}
        self._lock = threading.Lock()

    async def get_context(self, user_id: str) -> UserContext:
        with self._lock:
            cached = self._entries.get(user_id)
            if cached and self._clock() - cached[0] < self._ttl:
                return cached[1]
        context = await resolve(self._provider.get_context(user_id))
        with self._lock:
            self._entries[user_id] = (self._clock(), context)
        return context

    def invalidate(self, user_id: str | None = None) -> None:
        with self._lock:
            if user_id is None:
                self._entries.clear()
            else:
                self._entries.pop(user_id, None)


class StaticContentProvider:
    """In-memory source entity content keyed by ``(kind, id)``."""

    def __init__(self) -> None:
        self._content: dict[tuple[str, str], NotificationContent] = {}

    def set_content(self, source: SourceRef, content: NotificationContent) -> None:
        self._content[(source.kind.value, source.id)] = content

    def remove(self, source: SourceRef) -> None:
        self._content.pop((source.kind.value, source.id), None)

    def get_content(self, source: SourceRef) -> NotificationContent | None:
        return self._content.get((source.kind.value, source.id))
