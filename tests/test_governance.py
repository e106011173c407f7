"""Tests for the hash-chained audit logger."""

from __future__ import annotations

import json
from datetime import timedelta
from pathlib import Path

import pytest

from taskflow.core.config import AuditConfig
from taskflow.core.types import AuditEvent
from taskflow.governance.audit import AuditLogger
from tests.conftest import T0


def _make_event(**overrides) -> AuditEvent:
    """Helper to build an AuditEvent with sensible defaults."""
    defaults = {
        "notification_id": "n-001",
        "user_id": "u1",
        "actor": "scheduler-w0",
        "action": "delivered",
        "from_status": "sent",
        "to_status": "delivered",
    }
    defaults.update(overrides)
    return AuditEvent(**defaults)


@pytest.fixture()
def audit_dir(tmp_path: Path) -> Path:
    d = tmp_path / "audit"
    d.mkdir()
    return d


@pytest.fixture()
def logger(audit_dir: Path) -> AuditLogger:
    return AuditLogger(config=AuditConfig(log_dir=str(audit_dir)))


class TestAuditLogger:
    def test_log_creates_file(self, logger: AuditLogger) -> None:
        logger.log(_make_event())
        assert logger.log_path.exists()

    def test_log_returns_entry_with_hash(self, logger: AuditLogger) -> None:
        entry = logger.log(_make_event())
        assert entry.entry_hash
        assert entry.entry_hash != entry.previous_hash
        assert logger.last_hash == entry.entry_hash

    def test_verify_chain_empty(self, logger: AuditLogger) -> None:
        assert logger.verify_chain() is True

    def test_verify_chain_multiple_entries(self, logger: AuditLogger) -> None:
        for i in range(5):
            logger.log(_make_event(action=f"action_{i}"))
        assert logger.verify_chain() is True

    def test_hash_chain_links_entries(self, logger: AuditLogger) -> None:
        e1 = logger.log(_make_event(action="dispatch"))
        e2 = logger.log(_make_event(action="delivered"))
        assert e2.previous_hash == e1.entry_hash

    def test_tampered_entry_breaks_chain(self, logger: AuditLogger) -> None:
        for action in ("scheduled", "dispatch", "delivered"):
            logger.log(_make_event(action=action))
        assert logger.verify_chain() is True

        lines = logger.log_path.read_text().strip().split("\n")
        data = json.loads(lines[1])
        data["event"]["to_status"] = "cancelled"
        lines[1] = json.dumps(data)
        logger.log_path.write_text("\n".join(lines) + "\n")

        assert logger.verify_chain() is False

    def test_tampered_hash_breaks_chain(self, logger: AuditLogger) -> None:
        logger.log(_make_event(action="a"))
        logger.log(_make_event(action="b"))

        lines = logger.log_path.read_text().strip().split("\n")
        data = json.loads(lines[0])
        data["entry_hash"] = "0" * 64
        lines[0] = json.dumps(data)
        logger.log_path.write_text("\n".join(lines) + "\n")

        assert logger.verify_chain() is False

    def test_query_no_filters(self, logger: AuditLogger) -> None:
        logger.log(_make_event(action="a"))
        logger.log(_make_event(action="b"))
        assert len(logger.query()) == 2

    def test_query_exact_filters(self, logger: AuditLogger) -> None:
        logger.log(_make_event(notification_id="n-1", actor="user", action="opened"))
        logger.log(_make_event(notification_id="n-2", action="failed", to_status="failed"))
        logger.log(_make_event(notification_id="n-1", action="delivered"))
        assert len(logger.query({"notification_id": "n-1"})) == 2
        assert [e.action for e in logger.query({"actor": "user"})] == ["opened"]
        assert [e.notification_id for e in logger.query({"to_status": "failed"})] == ["n-2"]

    def test_query_time_range(self, logger: AuditLogger) -> None:
        for hours in range(3):
            logger.log(_make_event(timestamp=T0 + timedelta(hours=hours), action=f"a{hours}"))
        results = logger.query({
            "after": T0.isoformat(),
            "before": T0 + timedelta(hours=2),
        })
        assert [e.action for e in results] == ["a1"]

    def test_query_missing_file(self, logger: AuditLogger) -> None:
        assert logger.query({"action": "delivered"}) == []

    def test_recover_last_hash_on_reopen(self, audit_dir: Path) -> None:
        config = AuditConfig(log_dir=str(audit_dir))
        first = AuditLogger(config=config)
        e1 = first.log(_make_event(action="scheduled"))

        second = AuditLogger(config=config)
        assert second.last_hash == e1.entry_hash
        e2 = second.log(_make_event(action="dispatch"))
        assert e2.previous_hash == e1.entry_hash
        assert second.verify_chain() is True
