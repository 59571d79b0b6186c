"""Domain entities: objects with identity and lifecycle.

Entities are *mutable* where the domain mutates them (statistics, sessions)
and expose controlled mutation methods; configuration records are frozen
and changed by producing an updated copy.
"""

from __future__ import annotations

import dataclasses
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any

from provider_broker.domain.enums import (
    AuthType,
    Capability,
    ConnectionTestStatus,
    OperationStatus,
    ProviderStatus,
)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


# ═══════════════════════════════════════════════════════════════
#  ServiceConfig
# ═══════════════════════════════════════════════════════════════
@dataclass(frozen=True, slots=True)
class ServiceConfig:
    """Configuration of one provider for one capability.

    Owned by the configuration store; the orchestration layer reads it and
    only changes it through explicit administrative updates.

    Attributes:
        provider_id:   Unique identifier (e.g. "brave-primary").
        provider_type: Client registry key (e.g. "brave_search", "openai").
        capability:    Category of work this provider serves.
        priority:      Lower = tried first during failover.
        credentials:   Auth material; validated per provider type at connect time.
        rate_limit_per_minute: Admission budget (0 = unlimited).
        timeout_s:     Per-call timeout for a single vendor request.
        retry_policy:  Named preset; ``None`` lets the action pick one.
        extra:         Provider-specific extras (model name, API version, ...).
    """

    provider_id: str
    provider_type: str
    capability: Capability
    name: str = ""
    enabled: bool = True
    priority: int = 10
    endpoint: str | None = None
    auth_type: AuthType = AuthType.API_KEY
    credentials: dict[str, str] = field(default_factory=dict, repr=False)
    rate_limit_per_minute: int = 60
    timeout_s: float = 30.0
    retry_policy: str | None = None
    is_default: bool = False
    is_required: bool = False
    description: str = ""
    extra: dict[str, Any] = field(default_factory=dict)
    last_tested_at: datetime | None = None
    last_test_status: ConnectionTestStatus | None = None
    last_test_error: str | None = None

    def __post_init__(self) -> None:
        if not isinstance(self.capability, Capability):
            object.__setattr__(self, "capability", Capability(self.capability))
        if not isinstance(self.auth_type, AuthType):
            object.__setattr__(self, "auth_type", AuthType(self.auth_type))
        if self.last_test_status is not None and not isinstance(
            self.last_test_status, ConnectionTestStatus
        ):
            object.__setattr__(
                self, "last_test_status", ConnectionTestStatus(self.last_test_status)
            )
        if not self.name:
            object.__setattr__(self, "name", self.provider_id)

    @property
    def has_credentials(self) -> bool:
        return any(str(v).strip() for v in self.credentials.values())

    def replace(self, **changes: Any) -> ServiceConfig:
        """Return a copy with ``changes`` applied (admin updates)."""
        return dataclasses.replace(self, **changes)

    def to_public_dict(self) -> dict[str, Any]:
        """Serialisable view without credential values."""
        return {
            "provider_id": self.provider_id,
            "provider_type": self.provider_type,
            "capability": self.capability.value,
            "name": self.name,
            "enabled": self.enabled,
            "priority": self.priority,
            "endpoint": self.endpoint,
            "auth_type": self.auth_type.value,
            "has_credentials": self.has_credentials,
            "rate_limit_per_minute": self.rate_limit_per_minute,
            "timeout_s": self.timeout_s,
            "retry_policy": self.retry_policy,
            "is_default": self.is_default,
            "is_required": self.is_required,
            "description": self.description,
            "last_tested_at": self.last_tested_at.isoformat() if self.last_tested_at else None,
            "last_test_status": self.last_test_status.value if self.last_test_status else None,
            "last_test_error": self.last_test_error,
        }


# ═══════════════════════════════════════════════════════════════
#  ProviderStats
# ═══════════════════════════════════════════════════════════════
@dataclass(slots=True)
class ProviderStats:
    """Running statistics for one provider.

    Updated after every attempt and never reset except by an explicit admin
    action.  Response time is blended as ``(old + new) / 2``.
    """

    provider_id: str
    status: ProviderStatus = ProviderStatus.UNKNOWN
    avg_response_time_ms: float | None = None
    success_rate: float = 1.0
    total_requests: int = 0
    total_successes: int = 0
    total_failures: int = 0
    last_error: str | None = None
    last_error_at: datetime | None = None
    last_used_at: datetime | None = None
    monthly_usage: int = 0
    monthly_quota: int | None = None

    def record_success(self, response_time_ms: float, *, now: datetime | None = None) -> None:
        now = now or _utcnow()
        if self.avg_response_time_ms is None:
            self.avg_response_time_ms = float(response_time_ms)
        else:
            self.avg_response_time_ms = (self.avg_response_time_ms + response_time_ms) / 2
        self.status = ProviderStatus.ACTIVE
        self.last_error = None
        self.last_error_at = None
        self.total_successes += 1
        self._count_attempt(now)

    def record_failure(self, error: str, *, now: datetime | None = None) -> None:
        now = now or _utcnow()
        self.status = ProviderStatus.ERROR
        self.last_error = error or "Unknown error"
        self.last_error_at = now
        self.total_failures += 1
        self._count_attempt(now)

    @property
    def quota_exhausted(self) -> bool:
        return self.monthly_quota is not None and self.monthly_usage >= self.monthly_quota

    def copy(self) -> ProviderStats:
        return dataclasses.replace(self)

    def to_dict(self) -> dict[str, Any]:
        return {
            "provider_id": self.provider_id,
            "status": self.status.value,
            "avg_response_time_ms": (
                round(self.avg_response_time_ms, 2)
                if self.avg_response_time_ms is not None
                else None
            ),
            "success_rate": round(self.success_rate, 4),
            "total_requests": self.total_requests,
            "total_successes": self.total_successes,
            "total_failures": self.total_failures,
            "last_error": self.last_error,
            "last_error_at": self.last_error_at.isoformat() if self.last_error_at else None,
            "last_used_at": self.last_used_at.isoformat() if self.last_used_at else None,
            "monthly_usage": self.monthly_usage,
            "monthly_quota": self.monthly_quota,
        }

    def _count_attempt(self, now: datetime) -> None:
        self.total_requests += 1
        self.monthly_usage += 1
        self.last_used_at = now
        self.success_rate = self.total_successes / self.total_requests


# ═══════════════════════════════════════════════════════════════
#  Session
# ═══════════════════════════════════════════════════════════════
@dataclass(slots=True)
class Session:
    """Time-bounded handle for continuity of interaction with a service type."""

    id: str
    service_type: str
    created_at: datetime
    last_accessed_at: datetime
    expires_at: datetime
    metadata: dict[str, Any] = field(default_factory=dict)

    def is_expired(self, now: datetime) -> bool:
        return now >= self.expires_at

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "service_type": self.service_type,
            "created_at": self.created_at.isoformat(),
            "last_accessed_at": self.last_accessed_at.isoformat(),
            "expires_at": self.expires_at.isoformat(),
            "metadata": dict(self.metadata),
        }


# ═══════════════════════════════════════════════════════════════
#  OperationResult
# ═══════════════════════════════════════════════════════════════
@dataclass(slots=True)
class OperationResult:
    """Uniform result contract of every ServiceClient operation."""

    success: bool
    status: OperationStatus
    data: Any = None
    error: str | None = None
    error_code: str | None = None
    retryable: bool | None = None
    execution_time_ms: float = 0.0
    timestamp: datetime = field(default_factory=_utcnow)
    provider_id: str | None = None
    metadata: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def succeeded(
        cls,
        data: Any = None,
        *,
        execution_time_ms: float = 0.0,
        provider_id: str | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> OperationResult:
        return cls(
            success=True,
            status=OperationStatus.SUCCESS,
            data=data,
            execution_time_ms=execution_time_ms,
            provider_id=provider_id,
            metadata=metadata or {},
        )

    @classmethod
    def failed(
        cls,
        error: str,
        *,
        status: OperationStatus = OperationStatus.FAILED,
        error_code: str | None = None,
        retryable: bool | None = None,
        execution_time_ms: float = 0.0,
        provider_id: str | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> OperationResult:
        return cls(
            success=False,
            status=status,
            error=error,
            error_code=error_code,
            retryable=retryable,
            execution_time_ms=execution_time_ms,
            provider_id=provider_id,
            metadata=metadata or {},
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "success": self.success,
            "status": self.status.value,
            "data": self.data,
            "error": self.error,
            "error_code": self.error_code,
            "execution_time_ms": round(self.execution_time_ms, 2),
            "timestamp": self.timestamp.isoformat(),
            "provider_id": self.provider_id,
            "metadata": self.metadata,
        }
