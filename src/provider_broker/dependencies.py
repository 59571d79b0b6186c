"""Dependency injection container: wires adapters to ports.

FastAPI's ``Depends()`` system uses these factories to inject the
orchestrator into route handlers; ``build_orchestrator`` assembles it from
``Settings``.
"""

from __future__ import annotations

from functools import lru_cache

import structlog
from fastapi import Request
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker

from provider_broker.adapters.outbound.clients import ClientRegistry, default_registry
from provider_broker.adapters.outbound.persistence.database import (
    create_engine,
    create_session_factory,
    init_models,
)
from provider_broker.adapters.outbound.persistence.memory import (
    InMemoryServiceConfigStore,
    InMemoryStatsSink,
    load_seed_file,
)
from provider_broker.adapters.outbound.persistence.repositories import (
    SQLAlchemyServiceConfigStore,
    SQLAlchemyStatsSink,
)
from provider_broker.config import ConfigBackend, Settings, get_settings
from provider_broker.domain.value_objects import RateLimitConfig
from provider_broker.ports.outbound import ProviderStatsSink, ServiceConfigStore
from provider_broker.shared.resilience import (
    ConnectionPool,
    ConnectionPoolConfig,
    FailoverOrchestrator,
    OrchestratorConfig,
    RateLimiter,
    ResultCache,
    RetryPolicySelector,
    SessionConfig,
    SessionManager,
)

logger = structlog.get_logger(__name__)


# ── Settings ─────────────────────────────────────────────────
@lru_cache(maxsize=1)
def get_cached_settings() -> Settings:
    return get_settings()


# ── Singletons ───────────────────────────────────────────────
_engine: AsyncEngine | None = None
_session_factory: async_sessionmaker[AsyncSession] | None = None


def get_engine(settings: Settings | None = None) -> AsyncEngine:
    global _engine
    if _engine is None:
        _engine = create_engine(settings or get_cached_settings())
    return _engine


def get_session_factory(settings: Settings | None = None) -> async_sessionmaker[AsyncSession]:
    global _session_factory
    if _session_factory is None:
        _session_factory = create_session_factory(get_engine(settings))
    return _session_factory


async def dispose_engine() -> None:
    global _engine, _session_factory
    if _engine is not None:
        await _engine.dispose()
    _engine = None
    _session_factory = None


# ── Stores ───────────────────────────────────────────────────
def build_stores(settings: Settings) -> tuple[ServiceConfigStore, ProviderStatsSink]:
    if settings.config_backend is ConfigBackend.DATABASE:
        factory = get_session_factory(settings)
        return SQLAlchemyServiceConfigStore(factory), SQLAlchemyStatsSink(factory)
    if settings.providers_file:
        store = InMemoryServiceConfigStore.from_json_file(settings.providers_file)
    else:
        store = InMemoryServiceConfigStore()
    return store, InMemoryStatsSink()


async def prepare_database(settings: Settings, store: ServiceConfigStore) -> None:
    """Create tables and insert seed providers that are not stored yet."""
    await init_models(get_engine(settings))
    if not settings.providers_file:
        return
    seeded = 0
    for config in load_seed_file(settings.providers_file):
        if await store.get_provider(config.provider_id) is None:
            await store.save_provider(config)
            seeded += 1
    logger.info("providers_seeded", source=settings.providers_file, inserted=seeded)


# ── Orchestrator ─────────────────────────────────────────────
def build_orchestrator(
    settings: Settings,
    *,
    registry: ClientRegistry | None = None,
    store: ServiceConfigStore | None = None,
    stats_sink: ProviderStatsSink | None = None,
) -> FailoverOrchestrator:
    """Assemble the resilience layer from settings."""
    if store is None:
        store, default_sink = build_stores(settings)
        stats_sink = stats_sink or default_sink
    registry = registry or default_registry()

    return FailoverOrchestrator(
        store,
        registry.create,
        stats_sink=stats_sink,
        rate_limiter=RateLimiter(
            RateLimitConfig(window_seconds=settings.rate_limit_window_seconds),
            settings.rate_limit_algorithm,
        ),
        pool=ConnectionPool(
            ConnectionPoolConfig(
                max_connections=settings.pool_max_connections,
                min_connections=settings.pool_min_connections,
                max_idle_seconds=settings.pool_max_idle_seconds,
                acquire_timeout_seconds=settings.pool_acquire_timeout_seconds,
                sweep_interval_seconds=settings.pool_sweep_interval_seconds,
            )
        ),
        sessions=SessionManager(
            SessionConfig(
                session_timeout_minutes=settings.session_timeout_minutes,
                max_sessions_per_service=settings.max_sessions_per_service,
                sweep_interval_seconds=settings.session_sweep_interval_seconds,
            )
        ),
        cache=ResultCache(
            ttl_seconds=settings.cache_ttl_seconds,
            max_entries=settings.cache_max_entries,
        ),
        retry_selector=RetryPolicySelector(
            settings.retry_policy_keywords,
            default=settings.default_retry_policy,
        ),
        config=OrchestratorConfig(
            default_timeout_s=settings.default_timeout_seconds,
            health_check_timeout_s=settings.health_check_timeout_seconds,
            rate_limit_wait_s=settings.rate_limit_wait_seconds,
            rate_limit_window_s=settings.rate_limit_window_seconds,
        ),
    )


# ── Request-scoped access ────────────────────────────────────
def get_orchestrator(request: Request) -> FailoverOrchestrator:
    return request.app.state.orchestrator
