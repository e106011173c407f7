"""Time-driven sweep over the due queue."""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime

from pydantic import BaseModel, Field

from taskflow.notifications.engine import NotificationEngine
from taskflow.notifications.models import NotificationStatus
from taskflow.repositories import resolve

logger = logging.getLogger(__name__)


class SweepReport(BaseModel):
    """What one sweep did."""

    started_at: datetime
    finished_at: datetime | None = None
    due: int = 0
    processed: int = 0
    skipped: int = 0
    errors: int = 0
    digests: int = 0
    batched: int = 0
    held: int = 0
    outcomes: dict[str, int] = Field(default_factory=dict)

    def count(self, event: str) -> None:
        self.outcomes[event] = self.outcomes.get(event, 0) + 1


class NotificationScheduler:
    """Finds due notifications and hands them to a bounded pool of workers.

    Batching runs first for every ``(user, group)`` that has a due
    batchable member; the due set is then re-read so cancelled members are
    not dispatched. Exclusivity between workers, and between schedulers in
    different processes, comes from the per-notification lease.
    """

    def __init__(
        self,
        engine: NotificationEngine,
        workers: int | None = None,
        batch_limit: int | None = None,
        poll_interval_seconds: float | None = None,
        name: str = "scheduler",
    ) -> None:
        config = engine.settings.scheduler
        self._engine = engine
        self._workers = max(1, workers if workers is not None else config.workers)
        self._batch_limit = batch_limit if batch_limit is not None else config.batch_limit
        self._interval = (
            poll_interval_seconds if poll_interval_seconds is not None
            else config.poll_interval_seconds
        )
        self._name = name

    async def run_once(self, now: datetime | None = None) -> SweepReport:
        now = now or self._engine.now()
        report = SweepReport(started_at=now)
        store = self._engine.store

        due = await resolve(store.find_due(now, self._batch_limit))
        groups = sorted({
            (n.user_id, n.grouping.group_id)
            for n in due
            if n.status is NotificationStatus.SCHEDULED and n.is_batchable
        })
        held: set[str] = set()
        for user_id, group_id in groups:
            try:
                result = await self._engine.batch_group(
                    user_id, group_id, owner=f"{self._name}-batch", now=now
                )
            except Exception:
                logger.exception("Batching failed for %s/%s", user_id, group_id)
                report.errors += 1
                continue
            held.update(result.held)
            if result.digest is not None and result.cancelled:
                report.digests += 1
                report.batched += len(result.cancelled)
        if groups:
            due = await resolve(store.find_due(now, self._batch_limit))

        queue: asyncio.Queue[str] = asyncio.Queue()
        for notification in due:
            if notification.id not in held:
                queue.put_nowait(notification.id)
        report.due = queue.qsize()
        report.held = len(held)

        workers = [
            asyncio.create_task(self._worker(f"{self._name}-w{i}", queue, report, now))
            for i in range(min(self._workers, max(queue.qsize(), 1)))
        ]
        await asyncio.gather(*workers)

        report.finished_at = self._engine.now()
        if report.due or report.digests:
            logger.info(
                "Sweep finished",
                extra={
                    "due": report.due,
                    "processed": report.processed,
                    "skipped": report.skipped,
                    "digests": report.digests,
                    "errors": report.errors,
                },
            )
        return report

    async def _worker(
        self,
        worker_id: str,
        queue: asyncio.Queue[str],
        report: SweepReport,
        now: datetime,
    ) -> None:
        while True:
            try:
                notification_id = queue.get_nowait()
            except asyncio.QueueEmpty:
                return
            try:
                transition = await self._engine.process_notification(
                    notification_id, worker_id, now=now
                )
            except Exception:
                logger.exception("Processing %s failed", notification_id)
                report.errors += 1
                continue
            if transition is None:
                report.skipped += 1
                continue
            report.processed += 1
            report.count(transition.event)

    async def run_forever(self, stop_event: asyncio.Event | None = None) -> None:
        """Sweep every ``poll_interval_seconds`` until ``stop_event`` is set."""
        stop_event = stop_event or asyncio.Event()
        logger.info(
            "Scheduler started",
            extra={"workers": self._workers, "poll_interval_seconds": self._interval},
        )
        while not stop_event.is_set():
            try:
                await self.run_once()
            except Exception:
                logger.exception("Sweep failed")
            try:
                await asyncio.wait_for(stop_event.wait(), timeout=self._interval)
            except asyncio.TimeoutError:
                continue
        logger.info("Scheduler stopped")
