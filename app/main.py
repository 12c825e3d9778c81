"""
FastAPI application factory.

Assembles the app, registers all routers, maps the coordinator error
taxonomy onto HTTP, and wires up lifecycle events (sweeper, accounting
webhook client, engine disposal).  Database schema is managed by
Alembic — NOT create_all.
"""

import logging

import httpx
from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.controllers.admin_controller import router as admin_router
from app.controllers.playback_controller import router as playback_router
from app.core.clock import Clock
from app.core.config import Settings, settings as default_settings
from app.core.database import SessionLocal, engine
from app.core.errors import BusinessConflict, CoordinatorError, TransientInfra
from app.models import Base  # noqa: F401 — ensures all models are registered
from app.services.accounting_hooks import AccountingWebhook
from app.services.coordinator_service import PlaybackCoordinator
from app.services.rate_gate import RateGate, rate_gate_middleware
from app.services.sweeper import SessionSweeper

logging.basicConfig(
    level=logging.DEBUG if default_settings.DEBUG else logging.INFO,
    format="%(asctime)s | %(levelname)-8s | %(name)s | %(message)s",
)
logger = logging.getLogger(__name__)


def _register_error_handlers(app: FastAPI) -> None:
    @app.exception_handler(BusinessConflict)
    async def on_conflict(request: Request, exc: BusinessConflict) -> JSONResponse:
        return JSONResponse(
            status_code=exc.status_code,
            content={"detail": exc.detail, "ownerClass": exc.owner_class.value},
        )

    @app.exception_handler(TransientInfra)
    async def on_transient(request: Request, exc: TransientInfra) -> JSONResponse:
        return JSONResponse(
            status_code=exc.status_code,
            content={"detail": exc.detail},
            headers={"Retry-After": str(exc.retry_after_seconds)},
        )

    # HardInfra and ClientMisuse (incl. SessionNotFound) carry their own status.
    @app.exception_handler(CoordinatorError)
    async def on_coordinator_error(request: Request, exc: CoordinatorError) -> JSONResponse:
        return JSONResponse(status_code=exc.status_code, content={"detail": exc.detail})


def create_app(
    settings: Settings | None = None,
    *,
    clock: Clock | None = None,
    session_factory: async_sessionmaker[AsyncSession] | None = None,
    rate_gate: RateGate | None = None,
) -> FastAPI:
    settings = settings or default_settings

    app = FastAPI(
        title=settings.APP_NAME,
        version="0.1.0",
        docs_url="/docs",
        redoc_url="/redoc",
    )

    # ── Coordinator wiring ───────────────────────────────────────────
    coordinator = PlaybackCoordinator(settings, clock=clock)
    app.state.settings = settings
    app.state.coordinator = coordinator
    app.state.session_factory = session_factory or SessionLocal
    if rate_gate is None and settings.RATE_LIMIT_ENABLED:
        rate_gate = RateGate.from_settings(settings)
    app.state.rate_gate = rate_gate
    app.state.sweeper = None
    app.state.http_client = None

    _register_error_handlers(app)
    app.middleware("http")(rate_gate_middleware)

    # ── Register routers ─────────────────────────────────────────────
    app.include_router(playback_router)
    app.include_router(admin_router)

    # ── Startup / Shutdown ───────────────────────────────────────────
    @app.on_event("startup")
    async def on_startup() -> None:
        """Attach accounting and start the sweeper.

        NOTE: Database schema is managed by Alembic migrations.
        Run `alembic upgrade head` before starting the app.
        """
        if settings.ACCOUNTING_WEBHOOK_URL:
            client = httpx.AsyncClient()
            app.state.http_client = client
            AccountingWebhook(
                url=settings.ACCOUNTING_WEBHOOK_URL,
                client=client,
                timeout_s=settings.ACCOUNTING_WEBHOOK_TIMEOUT_SECONDS,
            ).attach(coordinator.events)
            logger.info("Accounting webhook enabled.")

        if settings.SWEEPER_ENABLED:
            sweeper = SessionSweeper(
                coordinator,
                app.state.session_factory,
                interval_s=settings.SWEEP_INTERVAL_SECONDS,
            )
            sweeper.start()
            app.state.sweeper = sweeper

    @app.on_event("shutdown")
    async def on_shutdown() -> None:
        if app.state.sweeper is not None:
            await app.state.sweeper.stop()
            app.state.sweeper = None
        await coordinator.events.drain(settings.EVENT_DRAIN_TIMEOUT_SECONDS)
        if app.state.http_client is not None:
            await app.state.http_client.aclose()
            app.state.http_client = None
        if session_factory is None:
            await engine.dispose()
            logger.info("Database engine disposed.")

    # ── Health check ─────────────────────────────────────────────────
    @app.get("/health", tags=["Health"])
    async def health():
        return {"status": "ok"}

    return app


app = create_app()
