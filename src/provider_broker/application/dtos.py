"""Data Transfer Objects: Pydantic models for API boundaries.

DTOs handle serialisation, validation, and documentation.  They live in the
application layer because they are *not* domain objects: they adapt between
the external world and the domain.
"""

from __future__ import annotations

from datetime import datetime
from typing import Any

from pydantic import BaseModel, ConfigDict, Field

from provider_broker.domain.enums import (
    ActionType,
    AuthType,
    Capability,
    ConnectionTestStatus,
    OperationStatus,
    ProviderStatus,
)


# ═══════════════════════════════════════════════════════════════
#  Common
# ═══════════════════════════════════════════════════════════════
class ErrorResponse(BaseModel):
    code: str
    message: str
    errors: dict[str, str] | None = None


class HealthResponse(BaseModel):
    status: str = "ok"
    version: str = "0.1.0"
    environment: str = "development"
    services: dict[str, str] = Field(default_factory=dict)


# ═══════════════════════════════════════════════════════════════
#  Operations
# ═══════════════════════════════════════════════════════════════
class OperationRequest(BaseModel):
    """One logical operation routed to the first healthy provider."""

    capability: Capability
    action: ActionType
    input: dict[str, Any] = Field(default_factory=dict)
    skip_cache: bool = False
    timeout_s: float | None = Field(None, gt=0)
    priority_hint: int | None = None
    preferred_provider: str | None = None
    session_id: str | None = None


class OperationResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    success: bool
    status: OperationStatus
    data: Any = None
    error: str | None = None
    error_code: str | None = None
    retryable: bool | None = None
    execution_time_ms: float
    timestamp: datetime
    provider_id: str | None = None
    metadata: dict[str, Any] = Field(default_factory=dict)


# ═══════════════════════════════════════════════════════════════
#  Providers
# ═══════════════════════════════════════════════════════════════
class ProviderResponse(BaseModel):
    """Public view of a provider configuration (credential values never leave)."""

    model_config = ConfigDict(from_attributes=True)

    provider_id: str
    provider_type: str
    capability: Capability
    name: str
    enabled: bool
    priority: int
    endpoint: str | None = None
    auth_type: AuthType
    has_credentials: bool
    rate_limit_per_minute: int
    timeout_s: float
    retry_policy: str | None = None
    is_default: bool
    is_required: bool
    description: str = ""
    last_tested_at: datetime | None = None
    last_test_status: ConnectionTestStatus | None = None
    last_test_error: str | None = None


class ProviderUpdateRequest(BaseModel):
    """Partial update; only fields present in the body are applied."""

    model_config = ConfigDict(extra="forbid")

    name: str | None = None
    enabled: bool | None = None
    priority: int | None = None
    endpoint: str | None = None
    auth_type: AuthType | None = None
    credentials: dict[str, Any] | None = None
    rate_limit_per_minute: int | None = Field(None, ge=0)
    timeout_s: float | None = Field(None, gt=0)
    retry_policy: str | None = None
    is_default: bool | None = None
    is_required: bool | None = None
    description: str | None = None
    extra: dict[str, Any] | None = None


class ProviderStatsResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    provider_id: str
    status: ProviderStatus
    avg_response_time_ms: float | None = None
    success_rate: float
    total_requests: int
    total_successes: int
    total_failures: int
    last_error: str | None = None
    last_error_at: datetime | None = None
    last_used_at: datetime | None = None
    monthly_usage: int
    monthly_quota: int | None = None


class AnalyticsResponse(BaseModel):
    providers: list[ProviderStatsResponse]
    average_response_time_ms: float | None = None
    total_requests: int
    overall_success_rate: float | None = None


class PoolStatusResponse(BaseModel):
    total: int
    active: int
    idle: int


# ═══════════════════════════════════════════════════════════════
#  Sessions
# ═══════════════════════════════════════════════════════════════
class SessionCreateRequest(BaseModel):
    service_type: str = Field(..., min_length=1, max_length=100, pattern=r"^[A-Za-z0-9_.:-]+$")
    metadata: dict[str, Any] = Field(default_factory=dict)


class SessionExtendRequest(BaseModel):
    minutes: float | None = Field(None, gt=0)


class SessionResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    service_type: str
    created_at: datetime
    last_accessed_at: datetime
    expires_at: datetime
    metadata: dict[str, Any] = Field(default_factory=dict)
