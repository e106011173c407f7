"""FastAPI application for the Taskflow notification service.

Provides the producer, interaction and operator endpoints plus a health
check. The scheduler loop itself runs out of process (see
``scripts/run_scheduler.py``); the admin endpoint triggers single sweeps.
"""

from __future__ import annotations

import logging

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from taskflow.core.config import Settings
from taskflow.core.logging import configure_logging
from taskflow.core.types import HealthStatus
from taskflow.db.engine import DatabaseManager
from taskflow.governance.audit import AuditLogger
from taskflow.notifications.engine import NotificationEngine
from taskflow.notifications.providers import (
    CachedContextProvider,
    StaticContentProvider,
    StaticContextProvider,
)
from taskflow.notifications.scheduler import NotificationScheduler
from taskflow.notifications.store import NotificationStore
from taskflow.notifications.transports import InAppInbox, default_registry
from taskflow.repositories.postgres.notifications import PostgresNotificationRepository
from taskflow.web.notification_router import router as notification_router

logger = logging.getLogger(__name__)

VERSION = "0.1.0"


def build_engine(
    settings: Settings,
    audit_logger: AuditLogger | None = None,
    db_manager: DatabaseManager | None = None,
) -> NotificationEngine:
    """Wire an engine from settings.

    Without ``settings.database.url`` notifications live in the in-memory
    store; otherwise in the SQL repository behind ``db_manager``.
    """
    if db_manager is not None:
        store = PostgresNotificationRepository(db_manager)
    elif settings.database.url:
        store = PostgresNotificationRepository(DatabaseManager.from_config(settings.database))
    else:
        store = NotificationStore()

    if audit_logger is None and settings.audit.enabled:
        audit_logger = AuditLogger(config=settings.audit)

    transports = default_registry(
        inbox=InAppInbox(),
        webhook_url=settings.delivery.webhook_url,
        timeout_seconds=settings.delivery.channel_timeout_seconds,
    )
    return NotificationEngine(
        store,
        transports=transports,
        context_provider=CachedContextProvider(
            StaticContextProvider(), ttl_seconds=settings.context.cache_ttl_seconds
        ),
        content_provider=StaticContentProvider(),
        audit_logger=audit_logger,
        settings=settings,
    )


def create_app(
    settings: Settings | None = None,
    engine: NotificationEngine | None = None,
    audit_logger: AuditLogger | None = None,
) -> FastAPI:
    """Create and configure the FastAPI application.

    Uses the factory pattern so tests can create isolated app instances
    with their own engine and store.

    Args:
        settings: Application settings. Defaults to Settings().
        engine: Optional pre-built NotificationEngine.
        audit_logger: Optional pre-built AuditLogger, used when ``engine``
            is not given.

    Returns:
        A configured FastAPI instance.
    """
    if settings is None:
        settings = engine.settings if engine is not None else Settings()

    configure_logging(settings.log_level)

    app = FastAPI(
        title="Taskflow Notifications",
        description="Notification scheduling and delivery engine",
        version=VERSION,
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    db_manager = None
    if engine is None:
        if settings.database.url:
            db_manager = DatabaseManager.from_config(settings.database)
        engine = build_engine(settings, audit_logger=audit_logger, db_manager=db_manager)

    app.state.settings = settings
    app.state.db_manager = db_manager
    app.state.notification_engine = engine
    app.state.notification_store = engine.store
    app.state.notification_scheduler = NotificationScheduler(engine)

    app.include_router(notification_router)

    @app.get("/api/health", response_model=HealthStatus)
    async def health_check() -> HealthStatus:
        """Health check endpoint."""
        return HealthStatus(
            service="taskflow-notifications",
            healthy=True,
            details={
                "version": VERSION,
                "environment": settings.environment,
                "store": type(engine.store).__name__,
                "channels": [c.value for c in engine.transports.channels],
            },
        )

    logger.info(
        "Application created",
        extra={"environment": settings.environment, "store": type(engine.store).__name__},
    )
    return app
