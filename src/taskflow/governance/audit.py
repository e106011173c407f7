"""Hash-chained audit trail of notification lifecycle transitions.

Every committed transition is appended to a JSONL file. Each line's hash
covers the previous line's hash plus the serialized event, so rewriting any
historical line invalidates every line after it.
"""

from __future__ import annotations

import hashlib
import json
import threading
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

from taskflow.core.config import AuditConfig
from taskflow.core.types import AuditEvent

_GENESIS_SEED = b"taskflow-notification-audit"
_EXACT_MATCH_FIELDS = ("notification_id", "user_id", "actor", "action", "to_status")


def _parse_bound(raw: str | datetime) -> datetime:
    value = raw if isinstance(raw, datetime) else datetime.fromisoformat(raw)
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value


class AuditEntry:
    """An AuditEvent together with its position in the hash chain."""

    def __init__(self, event: AuditEvent, previous_hash: str, entry_hash: str) -> None:
        self.event = event
        self.previous_hash = previous_hash
        self.entry_hash = entry_hash

    def to_dict(self) -> dict[str, Any]:
        return {
            "previous_hash": self.previous_hash,
            "entry_hash": self.entry_hash,
            "event": json.loads(self.event.model_dump_json()),
        }


class AuditLogger:
    """Append-only audit log for notification transitions.

    Args:
        config: AuditConfig instance; defaults to AuditConfig() from the
            environment.
        log_file: File name inside ``config.log_dir``.
    """

    def __init__(
        self,
        config: AuditConfig | None = None,
        log_file: str = "notifications.jsonl",
    ) -> None:
        self._config = config or AuditConfig()
        log_dir = Path(self._config.log_dir)
        log_dir.mkdir(parents=True, exist_ok=True)
        self._log_path = log_dir / log_file
        self._lock = threading.Lock()
        self._last_hash = self._genesis_hash()
        if self._log_path.exists():
            for data in self._iter_lines():
                self._last_hash = data["entry_hash"]

    @staticmethod
    def _genesis_hash() -> str:
        return hashlib.sha256(_GENESIS_SEED).hexdigest()

    @staticmethod
    def _chain(previous_hash: str, event_json: str) -> str:
        return hashlib.sha256((previous_hash + event_json).encode("utf-8")).hexdigest()

    def _iter_lines(self):
        with open(self._log_path) as fh:
            for line in fh:
                stripped = line.strip()
                if stripped:
                    yield json.loads(stripped)

    def log(self, event: AuditEvent) -> AuditEntry:
        """Append an event and advance the chain head."""
        event_json = event.model_dump_json()
        with self._lock:
            entry = AuditEntry(
                event=event,
                previous_hash=self._last_hash,
                entry_hash=self._chain(self._last_hash, event_json),
            )
            with open(self._log_path, "a") as fh:
                fh.write(json.dumps(entry.to_dict()) + "\n")
            self._last_hash = entry.entry_hash
        return entry

    def verify_chain(self) -> bool:
        """Recompute every hash; False if any line was altered or reordered."""
        if not self._log_path.exists():
            return True
        previous_hash = self._genesis_hash()
        for data in self._iter_lines():
            if data["previous_hash"] != previous_hash:
                return False
            event_json = AuditEvent(**data["event"]).model_dump_json()
            if data["entry_hash"] != self._chain(previous_hash, event_json):
                return False
            previous_hash = data["entry_hash"]
        return True

    def query(self, filters: dict[str, Any] | None = None) -> list[AuditEvent]:
        """Return events matching all given filters.

        Exact-match keys: ``notification_id``, ``user_id``, ``actor``,
        ``action``, ``to_status``. Range keys ``after`` / ``before`` take an
        ISO string or datetime and are exclusive.
        """
        filters = filters or {}
        if not self._log_path.exists():
            return []
        after = _parse_bound(filters["after"]) if "after" in filters else None
        before = _parse_bound(filters["before"]) if "before" in filters else None

        results: list[AuditEvent] = []
        for data in self._iter_lines():
            event = AuditEvent(**data["event"])
            if any(
                key in filters and getattr(event, key) != filters[key]
                for key in _EXACT_MATCH_FIELDS
            ):
                continue
            if after and event.timestamp <= after:
                continue
            if before and event.timestamp >= before:
                continue
            results.append(event)
        return results

    @property
    def log_path(self) -> Path:
        return self._log_path

    @property
    def last_hash(self) -> str:
        return self._last_hash
