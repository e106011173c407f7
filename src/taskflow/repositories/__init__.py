"""Repository layer for Taskflow notifications.

The engine talks to storage through the NotificationRepository protocol.
The in-memory store answers synchronously while the SQL repository returns
coroutines; ``resolve()`` lets callers treat both the same way.
"""

from __future__ import annotations

import inspect
from typing import Awaitable, TypeVar

T = TypeVar("T")


async def resolve(value: T | Awaitable[T]) -> T:
    """Await ``value`` if it is awaitable, otherwise return it unchanged.

        notification = await resolve(store.get(notification_id))
    """
    if inspect.isawaitable(value):
        return await value  # type: ignore[return-value]
    return value  # type: ignore[return-value]
