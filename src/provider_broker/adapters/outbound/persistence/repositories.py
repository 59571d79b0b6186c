"""Concrete store/sink implementations using SQLAlchemy.

These adapters implement the outbound port interfaces, translating between
domain entities and ORM models.  They are long-lived (owned by the
orchestrator), so each call opens its own short transaction.
"""

from __future__ import annotations

from datetime import datetime, timezone

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from provider_broker.domain.entities import ProviderStats, ServiceConfig
from provider_broker.domain.enums import (
    AuthType,
    Capability,
    ConnectionTestStatus,
    ProviderStatus,
)
from provider_broker.ports.outbound import ProviderStatsSink, ServiceConfigStore

from .models import ProviderStatsModel, ServiceConfigModel


def _aware(value: datetime | None) -> datetime | None:
    """SQLite hands back naive datetimes; everything stored is UTC."""
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


# ── Converters ───────────────────────────────────────────────
def _config_to_model(c: ServiceConfig) -> ServiceConfigModel:
    return ServiceConfigModel(
        provider_id=c.provider_id,
        provider_type=c.provider_type,
        capability=c.capability.value,
        name=c.name,
        enabled=c.enabled,
        priority=c.priority,
        endpoint=c.endpoint,
        auth_type=c.auth_type.value,
        credentials=dict(c.credentials),
        rate_limit_per_minute=c.rate_limit_per_minute,
        timeout_s=c.timeout_s,
        retry_policy=c.retry_policy,
        is_default=c.is_default,
        is_required=c.is_required,
        description=c.description,
        extra=dict(c.extra),
        last_tested_at=c.last_tested_at,
        last_test_status=c.last_test_status.value if c.last_test_status else None,
        last_test_error=c.last_test_error,
    )


def _model_to_config(m: ServiceConfigModel) -> ServiceConfig:
    return ServiceConfig(
        provider_id=m.provider_id,
        provider_type=m.provider_type,
        capability=Capability(m.capability),
        name=m.name,
        enabled=m.enabled,
        priority=m.priority,
        endpoint=m.endpoint,
        auth_type=AuthType(m.auth_type),
        credentials=dict(m.credentials or {}),
        rate_limit_per_minute=m.rate_limit_per_minute,
        timeout_s=m.timeout_s,
        retry_policy=m.retry_policy,
        is_default=m.is_default,
        is_required=m.is_required,
        description=m.description or "",
        extra=dict(m.extra or {}),
        last_tested_at=_aware(m.last_tested_at),
        last_test_status=ConnectionTestStatus(m.last_test_status) if m.last_test_status else None,
        last_test_error=m.last_test_error,
    )


def _stats_to_model(s: ProviderStats) -> ProviderStatsModel:
    return ProviderStatsModel(
        provider_id=s.provider_id,
        status=s.status.value,
        avg_response_time_ms=s.avg_response_time_ms,
        success_rate=s.success_rate,
        total_requests=s.total_requests,
        total_successes=s.total_successes,
        total_failures=s.total_failures,
        last_error=s.last_error,
        last_error_at=s.last_error_at,
        last_used_at=s.last_used_at,
        monthly_usage=s.monthly_usage,
        monthly_quota=s.monthly_quota,
    )


def _model_to_stats(m: ProviderStatsModel) -> ProviderStats:
    return ProviderStats(
        provider_id=m.provider_id,
        status=ProviderStatus(m.status),
        avg_response_time_ms=m.avg_response_time_ms,
        success_rate=m.success_rate,
        total_requests=m.total_requests,
        total_successes=m.total_successes,
        total_failures=m.total_failures,
        last_error=m.last_error,
        last_error_at=_aware(m.last_error_at),
        last_used_at=_aware(m.last_used_at),
        monthly_usage=m.monthly_usage,
        monthly_quota=m.monthly_quota,
    )


# ═══════════════════════════════════════════════════════════════
#  SQLAlchemy ServiceConfig store
# ═══════════════════════════════════════════════════════════════
class SQLAlchemyServiceConfigStore(ServiceConfigStore):
    def __init__(self, session_factory: async_sessionmaker[AsyncSession]) -> None:
        self._factory = session_factory

    async def list_providers(self, capability: Capability | None = None) -> list[ServiceConfig]:
        stmt = select(ServiceConfigModel).order_by(
            ServiceConfigModel.priority, ServiceConfigModel.provider_id
        )
        if capability is not None:
            stmt = stmt.where(ServiceConfigModel.capability == capability.value)
        async with self._factory() as session:
            rows = await session.execute(stmt)
            return [_model_to_config(m) for m in rows.scalars().all()]

    async def get_provider(self, provider_id: str) -> ServiceConfig | None:
        async with self._factory() as session:
            model = await session.get(ServiceConfigModel, provider_id)
            return _model_to_config(model) if model else None

    async def save_provider(self, config: ServiceConfig) -> None:
        async with self._factory() as session, session.begin():
            await session.merge(_config_to_model(config))


# ═══════════════════════════════════════════════════════════════
#  SQLAlchemy ProviderStats sink
# ═══════════════════════════════════════════════════════════════
class SQLAlchemyStatsSink(ProviderStatsSink):
    def __init__(self, session_factory: async_sessionmaker[AsyncSession]) -> None:
        self._factory = session_factory

    async def push(self, stats: ProviderStats) -> None:
        async with self._factory() as session, session.begin():
            await session.merge(_stats_to_model(stats))

    async def load_all(self) -> list[ProviderStats]:
        async with self._factory() as session:
            rows = await session.execute(select(ProviderStatsModel))
            return [_model_to_stats(m) for m in rows.scalars().all()]
