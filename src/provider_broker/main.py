"""FastAPI application entry-point.

Assembles routers, middleware, exception handlers, and lifecycle hooks.
"""

from __future__ import annotations

from contextlib import asynccontextmanager
from collections.abc import AsyncIterator

import structlog
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import ORJSONResponse

from provider_broker.adapters.inbound.rest.routers import (
    health_router,
    operations_router,
    pool_router,
    providers_router,
    sessions_router,
)
from provider_broker.config import ConfigBackend, Settings, get_settings
from provider_broker.dependencies import build_orchestrator, dispose_engine, prepare_database
from provider_broker.shared.errors import register_exception_handlers
from provider_broker.shared.middleware import (
    LoggingMiddleware,
    MetricsMiddleware,
    RateLimitMiddleware,
    RequestIdMiddleware,
)
from provider_broker.shared.observability import configure_logging
from provider_broker.shared.resilience import FailoverOrchestrator

logger = structlog.get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Application lifecycle: startup & shutdown hooks."""
    settings: Settings = app.state.settings
    configure_logging(
        log_level=settings.log_level,
        json_logs=settings.use_json_logs,
    )
    logger.info(
        "application_starting",
        env=settings.app_env.value,
        config_backend=settings.config_backend.value,
    )

    orchestrator: FailoverOrchestrator = app.state.orchestrator
    uses_database = app.state.owns_orchestrator and settings.config_backend is ConfigBackend.DATABASE
    if uses_database:
        await prepare_database(settings, orchestrator.store)
    await orchestrator.start()

    yield

    await orchestrator.shutdown()
    if uses_database:
        await dispose_engine()
    logger.info("application_shutdown")


def create_app(
    settings: Settings | None = None,
    orchestrator: FailoverOrchestrator | None = None,
) -> FastAPI:
    """Application factory: creates a fully configured FastAPI instance."""
    settings = settings or get_settings()

    app = FastAPI(
        title="Provider Broker",
        description=(
            "Resilient multi-provider orchestration: rate limiting, connection "
            "pooling, retry with backoff, sessions and priority-ordered failover "
            "across interchangeable external service providers."
        ),
        version="0.1.0",
        docs_url="/docs",
        redoc_url="/redoc",
        openapi_url="/openapi.json",
        default_response_class=ORJSONResponse,
        lifespan=lifespan,
    )

    # Store settings and the orchestrator in app state for lifecycle access
    app.state.settings = settings
    app.state.owns_orchestrator = orchestrator is None
    app.state.orchestrator = orchestrator or build_orchestrator(settings)

    # ── Middleware (order matters: last added = outermost) ───
    cors_origins = settings.cors_origins
    allow_all_origins = "*" in cors_origins

    app.add_middleware(
        CORSMiddleware,
        allow_origins=[] if allow_all_origins else cors_origins,
        allow_origin_regex=".*" if allow_all_origins else None,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    if settings.api_rate_limit_per_minute > 0:
        app.add_middleware(
            RateLimitMiddleware,
            max_requests=settings.api_rate_limit_per_minute,
            window_seconds=60,
        )
    if settings.prometheus_enabled:
        app.add_middleware(MetricsMiddleware)
    app.add_middleware(LoggingMiddleware)
    app.add_middleware(RequestIdMiddleware)

    # ── Exception handlers ───────────────────────────────────
    register_exception_handlers(app)

    # ── REST routers (versioned) ─────────────────────────────
    api_v1 = "/api/v1"
    app.include_router(health_router, prefix=api_v1)
    app.include_router(operations_router, prefix=api_v1)
    app.include_router(providers_router, prefix=api_v1)
    app.include_router(pool_router, prefix=api_v1)
    app.include_router(sessions_router, prefix=api_v1)

    @app.get("/")
    async def root() -> dict[str, str]:
        return {
            "message": "Provider Broker API is running",
            "docs": "/docs",
            "health": "/api/v1/health",
        }

    return app


# Uvicorn entry-point
app = create_app()
