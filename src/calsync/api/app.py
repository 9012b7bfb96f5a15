"""calsync API: FastAPI application factory.

The app factory creates a FastAPI instance with:
- CORS middleware (configurable origins)
- Lifespan handler that opens the DB pool, warms the sequence cache, wires
  the sync engine/ledger/service, and starts the push heartbeat sweep
- Health endpoint at GET /api/health
- REST routers for notifications and calendar sync
- The live push WebSocket endpoint on every configured path
"""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from calsync.api.middleware import register_error_handlers
from calsync.api.models import HealthResponse
from calsync.api.routers import calendars, notifications
from calsync.config import CalsyncConfig
from calsync.core.metrics import init_metrics
from calsync.core.telemetry import init_telemetry
from calsync.db import Database
from calsync.notifications.ledger import NotificationLedger
from calsync.realtime.broadcaster import Broadcaster
from calsync.realtime.channel import PushChannel
from calsync.realtime.registry import ConnectionRegistry
from calsync.sync.engine import SyncEngine
from calsync.sync.remote import CalDAVCollection, StaticCredentialProvider
from calsync.sync.sequence import SequenceManager
from calsync.sync.service import CalendarSyncService
from calsync.sync.store import PostgresEventStore

logger = logging.getLogger(__name__)


def _make_lifespan(config: CalsyncConfig):
    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Startup/shutdown lifecycle for the pool, sync stack and heartbeat."""
        init_telemetry("calsync")
        init_metrics("calsync")

        db = Database.from_config(config.db)
        pool = await db.connect()

        store = PostgresEventStore(pool)
        sequences = SequenceManager(store)
        warmed = await sequences.warm_up()
        logger.info("Sequence cache warmed with %d uid(s)", warmed)

        remote = CalDAVCollection(request_timeout_s=config.sync.request_timeout_s)
        engine = SyncEngine(
            store=store,
            remote=remote,
            sequences=sequences,
            credentials=StaticCredentialProvider.from_config(config.remote),
            config=config.sync,
        )
        ledger = NotificationLedger(pool)
        registry: ConnectionRegistry = app.state.registry
        service = CalendarSyncService(
            engine=engine,
            store=store,
            ledger=ledger,
            broadcaster=app.state.broadcaster,
        )
        app.state.push_channel.attach(ledger=ledger, sync_service=service)
        app.state.sync_service = service
        app.state.ledger = ledger

        app.dependency_overrides[notifications._get_ledger] = lambda: ledger
        app.dependency_overrides[calendars._get_sync_service] = lambda: service

        registry.start()
        try:
            yield
        finally:
            await registry.stop()
            await registry.close_all()
            await service.shutdown()
            await remote.shutdown()
            await db.close()

    return lifespan


def create_app(config: CalsyncConfig | None = None, *, use_lifespan: bool = True) -> FastAPI:
    """Create and configure the FastAPI application.

    Parameters
    ----------
    config:
        Parsed ``calsync.toml``; defaults apply when omitted.
    use_lifespan:
        When False, no database or background task is started.  Tests pass
        False and install their own ``dependency_overrides``.
    """
    config = config or CalsyncConfig()

    app = FastAPI(
        title="calsync API",
        version="0.1.0",
        lifespan=_make_lifespan(config) if use_lifespan else None,
    )
    app.router.redirect_slashes = False

    app.add_middleware(
        CORSMiddleware,
        allow_origins=config.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    register_error_handlers(app)

    registry = ConnectionRegistry(
        heartbeat_interval_s=config.push.heartbeat_interval_s,
        heartbeat_timeout_s=config.push.heartbeat_timeout_s,
    )
    broadcaster = Broadcaster(registry)
    channel = PushChannel(registry=registry, broadcaster=broadcaster, config=config.push)
    app.state.config = config
    app.state.registry = registry
    app.state.broadcaster = broadcaster
    app.state.push_channel = channel

    app.include_router(notifications.router)
    app.include_router(calendars.router)
    app.include_router(channel.router())

    @app.get("/api/health", response_model=HealthResponse)
    async def health() -> HealthResponse:
        stats = registry.stats()
        return HealthResponse(
            status="ok", connections=stats["connections"], users=stats["users"]
        )

    return app
