"""Shared test fixtures and helpers."""

from __future__ import annotations

from datetime import datetime, timedelta, timezone
from pathlib import Path

import pytest

from taskflow.core.config import AuditConfig, DatabaseConfig, Settings
from taskflow.notifications.models import ChannelAttempt, ChannelKind, Notification

# Monday, 12:00 UTC.
T0 = datetime(2026, 3, 2, 12, 0, tzinfo=timezone.utc)


def make_notification(**overrides) -> Notification:
    """A due, single-channel in-app notification unless overridden."""
    fields = {
        "user_id": "u1",
        "title": "Write report",
        "scheduled_for": T0,
        "channels": [ChannelAttempt(channel=ChannelKind.IN_APP)],
    }
    fields.update(overrides)
    return Notification(**fields)


def channels(*kinds: ChannelKind) -> list[ChannelAttempt]:
    return [ChannelAttempt(channel=kind) for kind in kinds]


class FakeClock:
    """Settable clock for the engine."""

    def __init__(self, start: datetime = T0) -> None:
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs: float) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


def make_settings(tmp_path: Path, **overrides) -> Settings:
    """Settings with the audit log under ``tmp_path`` and an in-memory store."""
    return Settings(
        audit=AuditConfig(log_dir=str(tmp_path / "audit")),
        database=DatabaseConfig(url=None),
        **overrides,
    )


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def settings(tmp_path: Path) -> Settings:
    return make_settings(tmp_path)
