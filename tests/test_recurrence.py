"""Tests for recurring notification generation."""

from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest

from taskflow.notifications.errors import RecurrenceError
from taskflow.notifications.interactions import InteractionType, record_interaction
from taskflow.notifications.models import (
    NotificationStatus,
    RecurrencePattern,
    RecurrenceRule,
    RetryPolicy,
)
from taskflow.notifications.recurrence import (
    generate_next,
    mark_generated,
    next_occurrence_time,
    step,
)
from taskflow.notifications.state import begin_dispatch, move
from tests.conftest import T0, make_notification

S = NotificationStatus


def _finished(status: NotificationStatus = S.DELIVERED, at: datetime = T0, **overrides):
    sent = begin_dispatch(make_notification(**overrides), at).notification
    return move(sent, status, at, event=status.value)


class TestStep:
    def test_fixed_steps(self) -> None:
        assert step(RecurrenceRule(pattern=RecurrencePattern.DAILY, interval=2)) == timedelta(days=2)
        assert step(RecurrenceRule(pattern=RecurrencePattern.WEEKLY)) == timedelta(days=7)
        assert step(
            RecurrenceRule(pattern=RecurrencePattern.CUSTOM, custom_step_minutes=90, interval=2)
        ) == timedelta(minutes=180)

    def test_custom_without_step_is_malformed(self) -> None:
        with pytest.raises(RecurrenceError):
            step(RecurrenceRule(pattern=RecurrencePattern.CUSTOM))

    def test_zero_interval_is_malformed(self) -> None:
        with pytest.raises(RecurrenceError):
            step(RecurrenceRule(pattern=RecurrencePattern.DAILY, interval=0))


class TestNextOccurrenceTime:
    def test_monthly_clamps_to_month_end(self) -> None:
        jan31 = datetime(2026, 1, 31, 12, 0, tzinfo=timezone.utc)
        n = make_notification(
            scheduled_for=jan31, recurring=RecurrenceRule(pattern=RecurrencePattern.MONTHLY)
        )
        assert next_occurrence_time(n, jan31) == datetime(2026, 2, 28, 12, 0, tzinfo=timezone.utc)

    def test_yearly(self) -> None:
        n = make_notification(recurring=RecurrenceRule(pattern=RecurrencePattern.YEARLY))
        assert next_occurrence_time(n, T0) == datetime(2027, 3, 2, 12, 0, tzinfo=timezone.utc)

    def test_rolls_forward_past_now(self) -> None:
        n = make_notification(recurring=RecurrenceRule(pattern=RecurrencePattern.DAILY))
        now = T0 + timedelta(days=3, hours=1)
        assert next_occurrence_time(n, now) == T0 + timedelta(days=4)

    def test_anchor_ignores_snooze_drift(self) -> None:
        n = make_notification(
            recurring=RecurrenceRule(pattern=RecurrencePattern.DAILY),
            scheduled_for=T0,
        )
        n.scheduled_for = T0 + timedelta(minutes=45)
        assert next_occurrence_time(n, T0 + timedelta(hours=1)) == T0 + timedelta(days=1)

    def test_stops_at_max_occurrences(self) -> None:
        n = make_notification(
            recurring=RecurrenceRule(
                pattern=RecurrencePattern.DAILY, max_occurrences=3, current_occurrence=3
            )
        )
        assert next_occurrence_time(n, T0) is None

    def test_stops_after_end_date(self) -> None:
        n = make_notification(
            recurring=RecurrenceRule(
                pattern=RecurrencePattern.WEEKLY, end_date=T0 + timedelta(days=3)
            )
        )
        assert next_occurrence_time(n, T0) is None

    def test_not_recurring(self) -> None:
        assert next_occurrence_time(make_notification(), T0) is None


class TestGenerateNext:
    def test_weekly_after_dismissal(self) -> None:
        n = _finished(recurring=RecurrenceRule(pattern=RecurrencePattern.WEEKLY))
        dismissed = record_interaction(
            n, InteractionType.DISMISSED, T0 + timedelta(minutes=5)
        ).notification
        successor = generate_next(dismissed, T0 + timedelta(minutes=5))
        assert successor is not None
        assert successor.id != n.id
        assert successor.status == S.SCHEDULED
        assert successor.scheduled_for == T0 + timedelta(days=7)
        assert successor.original_scheduled_for == T0 + timedelta(days=7)
        assert successor.recurring.current_occurrence == 2
        assert successor.recurring.series_id == n.id
        assert successor.recurring.next_generated_id is None

    def test_successor_is_reset(self) -> None:
        n = _finished(
            recurring=RecurrenceRule(pattern=RecurrencePattern.DAILY),
            retry=RetryPolicy(max_retries=3, current_retries=2),
            expires_at=T0 + timedelta(hours=6),
        )
        n.interaction.opened = True
        n.channels[0].delivered = True
        successor = generate_next(n, T0)
        assert successor.retry.current_retries == 0
        assert successor.retry.max_retries == 3
        assert not successor.interaction.opened
        assert successor.errors == []
        assert successor.sent_at is None
        assert all(not c.delivered for c in successor.channels)
        assert successor.expires_at == successor.scheduled_for + timedelta(hours=6)

    def test_failed_occurrence_does_not_regenerate(self) -> None:
        n = _finished(S.FAILED, recurring=RecurrenceRule(pattern=RecurrencePattern.DAILY))
        assert generate_next(n, T0) is None

    def test_only_one_successor(self) -> None:
        n = _finished(recurring=RecurrenceRule(pattern=RecurrencePattern.DAILY))
        successor = generate_next(n, T0)
        marked = mark_generated(n, successor.id, T0)
        assert marked.recurring.next_generated_id == successor.id
        assert generate_next(marked, T0) is None

    def test_series_id_carries_forward(self) -> None:
        first = _finished(recurring=RecurrenceRule(pattern=RecurrencePattern.DAILY))
        second = generate_next(first, T0)
        second_done = move(
            begin_dispatch(second, second.scheduled_for).notification,
            S.DELIVERED, second.scheduled_for, event="delivered",
        )
        third = generate_next(second_done, second.scheduled_for)
        assert third.recurring.series_id == first.id
        assert third.recurring.current_occurrence == 3

    def test_malformed_rule_raises(self) -> None:
        n = _finished(recurring=RecurrenceRule(pattern=RecurrencePattern.CUSTOM))
        with pytest.raises(RecurrenceError):
            generate_next(n, T0)
