#!/usr/bin/env python3
"""Run the Taskflow notification scheduler.

Usage:
    # Poll the due queue until interrupted (Ctrl-C / SIGTERM):
    python3 scripts/run_scheduler.py

    # One sweep, then print the report as JSON:
    python3 scripts/run_scheduler.py --once

    # Purge terminal notifications older than 14 days:
    python3 scripts/run_scheduler.py --cleanup --days 14

Storage, worker count, poll interval and lease length come from the
TASKFLOW_* environment variables (see taskflow.core.config). Without
TASKFLOW_DB_URL the in-memory store is used, which is only useful for
smoke tests.
"""

from __future__ import annotations

import argparse
import asyncio
import json
import signal
import sys

from taskflow.core.config import Settings
from taskflow.core.logging import configure_logging
from taskflow.db.engine import DatabaseManager
from taskflow.notifications.scheduler import NotificationScheduler
from taskflow.web.app import build_engine


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Taskflow notification scheduler")
    parser.add_argument("--once", action="store_true", help="Run a single sweep and exit")
    parser.add_argument(
        "--cleanup", action="store_true", help="Purge terminal notifications and exit"
    )
    parser.add_argument(
        "--days", type=int, default=None, help="Retention window for --cleanup (days)"
    )
    parser.add_argument("--workers", type=int, default=None, help="Override worker count")
    parser.add_argument(
        "--init-db", action="store_true", help="Create missing tables before starting"
    )
    return parser.parse_args(argv)


async def run(args: argparse.Namespace, settings: Settings) -> int:
    db = DatabaseManager.from_config(settings.database) if settings.database.url else None
    if db is not None and args.init_db:
        await db.create_all()

    engine = build_engine(settings, db_manager=db)
    scheduler = NotificationScheduler(engine, workers=args.workers)
    try:
        if args.cleanup:
            purged = await engine.cleanup(args.days)
            print(json.dumps({"purged": purged}))
            return 0
        if args.once:
            report = await scheduler.run_once()
            print(report.model_dump_json(indent=2))
            return 1 if report.errors else 0

        stop = asyncio.Event()
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGINT, signal.SIGTERM):
            loop.add_signal_handler(sig, stop.set)
        await scheduler.run_forever(stop)
        return 0
    finally:
        if db is not None:
            await db.close()


def main(argv: list[str] | None = None) -> int:
    args = parse_args(argv)
    if args.days is not None and not args.cleanup:
        print("--days only applies together with --cleanup", file=sys.stderr)
        return 2
    settings = Settings()
    configure_logging(settings.log_level)
    return asyncio.run(run(args, settings))


if __name__ == "__main__":
    sys.exit(main())
