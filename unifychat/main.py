"""
FastAPI application entry point.

Run with:
    uvicorn unifychat.main:app --reload --port 8000

All long-lived collaborators (store, adapter registry, metrics,
broadcaster, scheduler, service) are built in the lifespan and stored on
``app.state``; nothing starts at import time.
"""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from datetime import timedelta
from typing import Optional

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

# ── Core infrastructure ──
from unifychat.core.config import Settings, build_channel_configs, get_settings
from unifychat.core.database import close_db, create_engine, create_session_factory, init_db
from unifychat.core.errors import register_error_handlers
from unifychat.core.health import HealthStatus, run_health_check
from unifychat.core.logging_config import setup_logging
from unifychat.core.middleware import RequestLoggingMiddleware

# ── Messaging ──
from unifychat.messaging.broadcaster import Broadcaster, InMemoryBroadcaster
from unifychat.messaging.metrics import MetricsAggregator
from unifychat.messaging.registry import AdapterRegistry
from unifychat.messaging.scheduler import DeliveryScheduler
from unifychat.messaging.service import MessagingService
from unifychat.messaging.store import InMemoryMessageStore, MessageStore, SqlMessageStore

# ── API routers ──
from unifychat.api.v1.integrations import router as integrations_router
from unifychat.api.v1.messages import router as messages_router
from unifychat.api.v1.scheduler import router as scheduler_router
from unifychat.api.v1.webhooks import router as webhooks_router

logger = logging.getLogger(__name__)


def create_app(
    settings: Optional[Settings] = None,
    *,
    store: Optional[MessageStore] = None,
    registry: Optional[AdapterRegistry] = None,
    broadcaster: Optional[Broadcaster] = None,
) -> FastAPI:
    """
    Build the application.

    ``store`` / ``registry`` / ``broadcaster`` replace the instances the
    lifespan would otherwise build from settings.
    """
    settings = settings or get_settings()
    setup_logging(settings)

    # ── Application lifespan (startup / shutdown) ──

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        logger.info(
            "Starting %s v%s [%s]",
            settings.APP_NAME, settings.APP_VERSION, settings.ENVIRONMENT,
        )

        engine = None
        message_store = store
        if message_store is None:
            if settings.USE_IN_MEMORY_STORE:
                logger.warning("Using in-memory message store; nothing survives a restart")
                message_store = InMemoryMessageStore()
            else:
                engine = create_engine(settings.DATABASE_URL, settings)
                await init_db(engine)
                message_store = SqlMessageStore(create_session_factory(engine))

        adapter_registry = registry or AdapterRegistry(build_channel_configs(settings))
        metrics = MetricsAggregator(adapter_registry.capabilities())
        events = broadcaster or InMemoryBroadcaster()
        scheduler = DeliveryScheduler(
            message_store,
            adapter_registry,
            metrics,
            events,
            lookahead=timedelta(hours=settings.SCHEDULER_LOOKAHEAD_HOURS),
            reconcile_interval=settings.SCHEDULER_RECONCILE_INTERVAL_SECONDS,
        )

        app.state.store = message_store
        app.state.registry = adapter_registry
        app.state.metrics = metrics
        app.state.broadcaster = events
        app.state.scheduler = scheduler
        app.state.service = MessagingService(
            message_store, adapter_registry, metrics, scheduler, events,
        )

        logger.info(
            "Enabled channels: %s",
            ", ".join(c.value for c in adapter_registry.enabled_channels()) or "none",
        )
        if settings.SCHEDULER_AUTOSTART:
            await scheduler.start()

        yield

        logger.info("Shutting down %s", settings.APP_NAME)
        await scheduler.stop()
        await adapter_registry.close()
        if engine is not None:
            await close_db(engine)

    # ── Create application ──

    app = FastAPI(
        title=settings.APP_NAME,
        description=(
            "Multi-channel message dispatcher. Sends SMS, WhatsApp and email "
            "through one API, delivers scheduled messages at their instant "
            "(recovering them across restarts), normalizes vendor webhooks, "
            "and tracks per-channel reliability, latency and cost."
        ),
        version=settings.APP_VERSION,
        docs_url="/docs",
        redoc_url="/redoc",
        lifespan=lifespan,
    )
    app.state.settings = settings

    # ── Middleware stack (outermost first) ──

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.CORS_ORIGINS if not settings.CORS_ALLOW_ALL else ["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.add_middleware(RequestLoggingMiddleware)

    # ── Error handlers ──
    register_error_handlers(app)

    # ── Register routers ──
    app.include_router(messages_router)
    app.include_router(integrations_router)
    app.include_router(webhooks_router)
    app.include_router(scheduler_router)

    # ── Root & health endpoints ──

    @app.get("/", tags=["root"])
    async def root():
        return {
            "service": settings.APP_NAME,
            "version": settings.APP_VERSION,
            "environment": settings.ENVIRONMENT,
            "modules": [
                "immediate-send",
                "scheduled-delivery",
                "webhook-ingestion",
                "channel-metrics",
            ],
            "docs": "/docs",
        }

    @app.get("/health", tags=["health"])
    async def health_check(request: Request):
        """Deep health probe — checks all subsystems."""
        state = request.app.state
        report = await run_health_check(
            state.store, state.registry, state.scheduler, state.settings,
        )
        return report.to_dict()

    @app.get("/health/live", tags=["health"])
    async def liveness():
        """Kubernetes liveness probe — is the process alive?"""
        return {"status": "alive"}

    @app.get("/health/ready", tags=["health"])
    async def readiness(request: Request):
        """Kubernetes readiness probe — can we serve traffic?"""
        state = request.app.state
        report = await run_health_check(
            state.store, state.registry, state.scheduler, state.settings,
        )
        if report.status == HealthStatus.UNHEALTHY:
            return JSONResponse(status_code=503, content=report.to_dict())
        return report.to_dict()

    return app


app = create_app()
