"""Tests for PostgresNotificationRepository with SQLite async."""

from __future__ import annotations

from datetime import timedelta

import pytest

from taskflow.db.engine import DatabaseManager
from taskflow.notifications.engine import NotificationEngine
from taskflow.notifications.errors import CancellationPendingError, LeaseLostError
from taskflow.notifications.models import (
    ChannelKind,
    Grouping,
    HourWindow,
    NotificationStatus,
    RecurrencePattern,
    RecurrenceRule,
    SourceKind,
    SourceRef,
    TimeConditions,
)
from taskflow.notifications.state import begin_dispatch, cancel, move
from taskflow.notifications.transports import InAppTransport, TransportRegistry
from taskflow.repositories.postgres.notifications import PostgresNotificationRepository
from tests.conftest import T0, FakeClock, channels, make_notification, make_settings

S = NotificationStatus
UNTIL = T0 + timedelta(minutes=1)


@pytest.fixture
async def repo():
    db = DatabaseManager("sqlite+aiosqlite:///:memory:")
    await db.create_all()
    yield PostgresNotificationRepository(db)
    await db.close()


async def test_save_and_get(repo):
    n = make_notification(
        source=SourceRef(kind=SourceKind.TASK, id="t-1"),
        metadata={"project": "q3"},
        channels=channels(ChannelKind.IN_APP, ChannelKind.PUSH),
        time_conditions=TimeConditions(
            allowed_hours=HourWindow(start="09:00", end="18:00"), allowed_days=[1, 2]
        ),
        recurring=RecurrenceRule(pattern=RecurrencePattern.WEEKLY, series_id="s-1"),
        grouping=Grouping(group_id="daily"),
    )
    saved = await repo.save(n)
    assert saved.version == 1

    found = await repo.get(n.id)
    assert found.source == SourceRef(kind=SourceKind.TASK, id="t-1")
    assert found.metadata == {"project": "q3"}
    assert [a.channel for a in found.channels] == [ChannelKind.IN_APP, ChannelKind.PUSH]
    assert found.time_conditions.allowed_hours.start == "09:00"
    assert found.time_conditions.allowed_days == [1, 2]
    assert found.recurring.series_id == "s-1"
    assert found.grouping.group_id == "daily"
    assert found.scheduled_for == T0
    assert found.scheduled_for.tzinfo is not None


async def test_get_missing(repo):
    assert await repo.get("missing") is None


async def test_update(repo):
    n = await repo.save(make_notification())
    n.title = "Updated"
    await repo.save(n)
    found = await repo.get(n.id)
    assert found.title == "Updated"
    assert found.version == 2


async def test_list_for_user_and_all(repo):
    await repo.save(make_notification())
    await repo.save(make_notification(user_id="u2"))
    await repo.save(move(make_notification(), S.CANCELLED, T0, event="cancel"))
    assert len(await repo.list_for_user("u1")) == 2
    assert len(await repo.list_for_user("u1", S.CANCELLED)) == 1
    assert len(await repo.list_all()) == 3
    assert await repo.async_count() == 3


async def test_count_property_not_supported(repo):
    with pytest.raises(NotImplementedError):
        _ = repo.count


async def test_find_due(repo):
    early = await repo.save(make_notification(scheduled_for=T0 - timedelta(minutes=5)))
    due = await repo.save(make_notification())
    await repo.save(make_notification(scheduled_for=T0 + timedelta(minutes=5)))
    orphan = await repo.save(begin_dispatch(make_notification(), T0).notification)
    leased = await repo.save(make_notification())
    await repo.claim(leased.id, "w1", UNTIL, T0)

    found = [n.id for n in await repo.find_due(T0)]
    assert found[0] == early.id
    assert set(found) == {early.id, due.id, orphan.id}


async def test_list_group(repo):
    member = await repo.save(make_notification(grouping=Grouping(group_id="daily")))
    await repo.save(make_notification(grouping=Grouping(group_id="weekly")))
    await repo.save(make_notification())
    assert [n.id for n in await repo.list_group("u1", "daily")] == [member.id]


async def test_claim_is_exclusive(repo):
    n = await repo.save(make_notification())
    claimed = await repo.claim(n.id, "w1", UNTIL, T0)
    assert claimed.lease_owner == "w1"
    assert await repo.claim(n.id, "w2", UNTIL, T0) is None
    taken = await repo.claim(n.id, "w2", UNTIL + timedelta(minutes=1), UNTIL)
    assert taken.lease_owner == "w2"


async def test_claim_many_preserves_order(repo):
    a = await repo.save(make_notification())
    b = await repo.save(make_notification())
    c = await repo.save(make_notification())
    await repo.claim(b.id, "other", UNTIL, T0)
    claimed = await repo.claim_many([c.id, b.id, a.id], "batcher", UNTIL, T0)
    assert [n.id for n in claimed] == [c.id, a.id]
    assert await repo.claim_many([], "batcher", UNTIL, T0) == []


async def test_save_leased_checks_owner(repo):
    n = await repo.save(make_notification())
    claimed = await repo.claim(n.id, "w1", UNTIL, T0)
    with pytest.raises(LeaseLostError):
        await repo.save_leased(claimed, "w2")
    saved = await repo.save_leased(begin_dispatch(claimed, T0).notification, "w1")
    assert saved.status == S.SENT
    assert saved.lease_owner == "w1"


async def test_pending_cancel_blocks_commit(repo):
    n = await repo.save(make_notification())
    claimed = await repo.claim(n.id, "w1", UNTIL, T0)
    flagged = await repo.request_cancel(n.id)
    assert flagged.cancel_requested
    with pytest.raises(CancellationPendingError):
        await repo.save_leased(begin_dispatch(claimed, T0).notification, "w1")
    done = await repo.save_leased(cancel(flagged, T0).notification, "w1")
    assert done.status == S.CANCELLED


async def test_release(repo):
    n = await repo.save(make_notification())
    await repo.claim(n.id, "w1", UNTIL, T0)
    await repo.release(n.id, "w2")
    assert (await repo.get(n.id)).lease_owner == "w1"
    await repo.release(n.id, "w1")
    assert (await repo.get(n.id)).lease_owner is None


async def test_request_cancel_terminal_or_missing(repo):
    done = await repo.save(move(make_notification(), S.CANCELLED, T0, event="cancel"))
    assert not (await repo.request_cancel(done.id)).cancel_requested
    assert await repo.request_cancel("missing") is None


async def test_purge_terminal(repo):
    old = await repo.save(
        move(make_notification(), S.CANCELLED, T0 - timedelta(days=40), event="cancel")
    )
    await repo.save(move(make_notification(), S.CANCELLED, T0, event="cancel"))
    await repo.save(make_notification(updated_at=T0 - timedelta(days=40)))
    assert await repo.purge_terminal(T0 - timedelta(days=30)) == 1
    assert await repo.get(old.id) is None
    assert await repo.async_count() == 2


async def test_engine_delivers_through_sql_store(repo, tmp_path):
    in_app = InAppTransport()
    engine = NotificationEngine(
        repo,
        transports=TransportRegistry([in_app]),
        settings=make_settings(tmp_path),
        clock=FakeClock(),
    )
    n = await engine.schedule(make_notification())
    transition = await engine.process_notification(n.id, "w1")
    assert transition.event == "delivered"
    stored = await repo.get(n.id)
    assert stored.status == S.DELIVERED
    assert stored.lease_owner is None
    assert stored.channels[0].delivered
    assert len(in_app.inbox.items_for("u1")) == 1


async def test_cancel_reason_and_defer_to_cancel(repo):
    n = await repo.save(make_notification())
    claimed = await repo.claim(n.id, "batcher", UNTIL, T0)
    await repo.request_cancel(n.id, reason="task deleted")
    batched = cancel(claimed, T0, reason="batched into digest d-1").notification
    with pytest.raises(CancellationPendingError):
        await repo.save_leased(batched, "batcher", defer_to_cancel=True)
    done = await repo.save_leased(cancel(await repo.get(n.id), T0).notification, "batcher")
    assert done.status == S.CANCELLED
    assert done.status_reason == "task deleted"


async def test_find_due_includes_future_record_flagged_for_cancel(repo):
    future = await repo.save(make_notification(scheduled_for=T0 + timedelta(hours=3)))
    assert await repo.find_due(T0) == []
    await repo.request_cancel(future.id)
    assert [n.id for n in await repo.find_due(T0)] == [future.id]
