"""FastAPI application factory.

Creates the app with logging middleware, metrics middleware, CORS, Sentry,
lifespan events for database initialization and the session engine, and
the v1 API router.
"""

from __future__ import annotations

from contextlib import asynccontextmanager
from collections.abc import AsyncGenerator

import structlog
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from fastapi.requests import Request
from fastapi.responses import Response

from src.copileo.config import get_settings
from src.copileo.core.database import close_db, get_session, init_db
from src.copileo.core.monitoring import MetricsMiddleware, get_metrics_response, init_sentry
from src.copileo.api.middleware.logging import LoggingMiddleware, configure_structlog
from src.copileo.api.v1.router import router as v1_router


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Application lifespan: init DB, Sentry and the session engine; tear down on exit."""
    log = structlog.get_logger(__name__)
    settings = get_settings()
    configure_structlog()
    await init_db()

    if settings.SENTRY_DSN:
        init_sentry(dsn=settings.SENTRY_DSN, environment=settings.ENVIRONMENT.value)

    # ── Session Engine ──────────────────────────────────────────────────
    # Without a Vexa key every component stays None and the session
    # endpoints answer 503.
    app.state.session_manager = None
    app.state.poll_scheduler = None
    app.state.webhook_dispatcher = None

    if settings.VEXA_API_KEY:
        from src.copileo.sessions.locks import SessionLocks
        from src.copileo.sessions.manager import SessionManager
        from src.copileo.sessions.reconciler import TranscriptReconciler
        from src.copileo.sessions.remote.vexa_client import VexaClient
        from src.copileo.sessions.repository import MeetingRepository
        from src.copileo.sessions.scheduler import PollScheduler
        from src.copileo.sessions.webhooks import WebhookDispatcher

        repository = MeetingRepository(get_session)
        client = VexaClient(api_key=settings.VEXA_API_KEY, base_url=settings.VEXA_API_BASE_URL)
        locks = SessionLocks()
        reconciler = TranscriptReconciler(repository=repository, client=client, locks=locks)
        dispatcher = WebhookDispatcher(
            repository=repository,
            timeout=settings.WEBHOOK_TIMEOUT_SECONDS,
            max_attempts=settings.WEBHOOK_MAX_ATTEMPTS,
        )
        scheduler = PollScheduler(
            reconcile=reconciler.reconcile,
            interval=settings.POLL_INTERVAL_SECONDS,
            discovery_interval=settings.BOT_DISCOVERY_INTERVAL_SECONDS,
        )
        manager = SessionManager(
            client=client,
            repository=repository,
            scheduler=scheduler,
            dispatcher=dispatcher,
            settings=settings,
            locks=locks,
            reconciler=reconciler,
        )
        scheduler.set_discover(manager.discover_remote_bots)

        app.state.meeting_repository = repository
        app.state.session_manager = manager
        app.state.poll_scheduler = scheduler
        app.state.webhook_dispatcher = dispatcher

        scheduler.start()
        try:
            resumed = await manager.resume_active_sessions()
            log.info("sessions.initialized", resumed=resumed)
        except Exception:
            log.warning("sessions.resume_failed", exc_info=True)
    else:
        log.warning("sessions.disabled", reason="VEXA_API_KEY not configured")

    yield

    # ── Shutdown ──────────────────────────────────────────────────────────
    scheduler = getattr(app.state, "poll_scheduler", None)
    if scheduler is not None:
        await scheduler.shutdown()

    dispatcher = getattr(app.state, "webhook_dispatcher", None)
    if dispatcher is not None:
        await dispatcher.drain()

    await close_db()


def create_app() -> FastAPI:
    """Create and configure the FastAPI application."""
    settings = get_settings()

    app = FastAPI(
        title="Copileo Sessions API",
        version="0.1.0",
        description="Transcription bot sessions and transcript synchronization",
        lifespan=lifespan,
    )

    # Middleware is added in reverse order (last added = outermost)

    # CORS middleware
    if settings.CORS_ALLOWED_ORIGINS == "*":
        origins = ["*"]
    else:
        origins = [o.strip() for o in settings.CORS_ALLOWED_ORIGINS.split(",")]
    app.add_middleware(
        CORSMiddleware,
        allow_origins=origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # Logging middleware (logs every request with timing)
    app.add_middleware(LoggingMiddleware)

    # Metrics middleware (outermost -- records Prometheus metrics for all requests)
    app.add_middleware(MetricsMiddleware)

    app.include_router(v1_router, prefix="/api/v1")

    # Prometheus metrics endpoint (infrastructure route, outside v1 router)
    @app.get("/metrics", include_in_schema=False)
    async def metrics(request: Request) -> Response:
        """Prometheus metrics endpoint."""
        return get_metrics_response()

    return app


# Module-level app for uvicorn
app = create_app()
