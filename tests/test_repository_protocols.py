"""Both stores satisfy the repository protocol."""

from __future__ import annotations

from taskflow.db.engine import DatabaseManager
from taskflow.notifications.store import NotificationStore
from taskflow.repositories import resolve
from taskflow.repositories.postgres.notifications import PostgresNotificationRepository
from taskflow.repositories.protocols import NotificationRepository


def test_in_memory_store_satisfies_protocol():
    assert isinstance(NotificationStore(), NotificationRepository)


async def test_sql_repository_satisfies_protocol():
    db = DatabaseManager("sqlite+aiosqlite:///:memory:")
    assert isinstance(PostgresNotificationRepository(db), NotificationRepository)
    await db.close()


async def test_resolve_handles_values_and_coroutines():
    async def later():
        return 2

    assert await resolve(1) == 1
    assert await resolve(later()) == 2
