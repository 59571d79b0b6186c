"""Health, Operations, Providers, Pool, Sessions: REST routers."""

from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Depends, HTTPException, Query, Request, status
from prometheus_client import generate_latest, CONTENT_TYPE_LATEST
from starlette.responses import Response

from provider_broker.application.dtos import (
    AnalyticsResponse,
    ErrorResponse,
    HealthResponse,
    OperationRequest,
    OperationResponse,
    PoolStatusResponse,
    ProviderResponse,
    ProviderStatsResponse,
    ProviderUpdateRequest,
    SessionCreateRequest,
    SessionExtendRequest,
    SessionResponse,
)
from provider_broker.dependencies import get_orchestrator
from provider_broker.domain.enums import Capability
from provider_broker.shared.resilience import ExecuteOptions, FailoverOrchestrator

_SESSION_PROVIDER_KEY = "last_provider_id"


# ═══════════════════════════════════════════════════════════════
#  Health
# ═══════════════════════════════════════════════════════════════
health_router = APIRouter(tags=["Health"])


@health_router.get("/health", response_model=HealthResponse)
async def health_check(
    request: Request,
    orchestrator: FailoverOrchestrator = Depends(get_orchestrator),
) -> HealthResponse:
    settings = request.app.state.settings
    services: dict[str, str] = {}
    overall = "ok"
    try:
        providers = await orchestrator.list_providers()
        services["config_store"] = f"ok ({len(providers)} providers)"
    except Exception as e:
        services["config_store"] = "unavailable"
        services["config_store_error"] = str(e)
        overall = "degraded"

    return HealthResponse(
        status=overall,
        environment=settings.app_env.value,
        services=services,
    )


@health_router.get("/metrics")
async def prometheus_metrics(
    orchestrator: FailoverOrchestrator = Depends(get_orchestrator),
) -> Response:
    # Refresh gauges before scraping.
    orchestrator.get_pool_status()
    orchestrator.get_session_stats()
    return Response(
        content=generate_latest(),
        media_type=CONTENT_TYPE_LATEST,
    )


# ═══════════════════════════════════════════════════════════════
#  Operations
# ═══════════════════════════════════════════════════════════════
operations_router = APIRouter(prefix="/operations", tags=["Operations"])


@operations_router.post(
    "",
    response_model=OperationResponse,
    responses={
        404: {"model": ErrorResponse},
        429: {"model": ErrorResponse},
        502: {"model": ErrorResponse},
        504: {"model": ErrorResponse},
    },
)
async def execute_operation(
    body: OperationRequest,
    orchestrator: FailoverOrchestrator = Depends(get_orchestrator),
) -> OperationResponse:
    """Run an action on the first provider of the capability that succeeds.

    With ``session_id`` the provider that served the session's previous
    request is preferred, unless ``preferred_provider`` says otherwise.
    """
    preferred = body.preferred_provider
    if body.session_id:
        session = orchestrator.sessions.get_session(body.session_id)
        if session is None:
            raise HTTPException(status.HTTP_404_NOT_FOUND, "Session not found or expired")
        preferred = preferred or session.metadata.get(_SESSION_PROVIDER_KEY)

    result = await orchestrator.execute(
        body.capability,
        body.action,
        body.input,
        ExecuteOptions(
            skip_cache=body.skip_cache,
            timeout_s=body.timeout_s,
            priority_hint=body.priority_hint,
            preferred_provider=preferred,
        ),
    )
    if body.session_id and result.provider_id:
        orchestrator.sessions.update_session_metadata(
            body.session_id, {_SESSION_PROVIDER_KEY: result.provider_id}
        )
    return OperationResponse.model_validate(result)


# ═══════════════════════════════════════════════════════════════
#  Providers
# ═══════════════════════════════════════════════════════════════
providers_router = APIRouter(prefix="/providers", tags=["Providers"])


@providers_router.get("", response_model=list[ProviderResponse])
async def list_providers(
    capability: Capability | None = Query(None),
    orchestrator: FailoverOrchestrator = Depends(get_orchestrator),
) -> list[ProviderResponse]:
    configs = await orchestrator.list_providers(capability)
    return [ProviderResponse.model_validate(c) for c in configs]


@providers_router.get("/stats", response_model=list[ProviderStatsResponse])
async def provider_stats(
    orchestrator: FailoverOrchestrator = Depends(get_orchestrator),
) -> list[ProviderStatsResponse]:
    return [ProviderStatsResponse.model_validate(s) for s in orchestrator.get_all_stats()]


@providers_router.get("/analytics", response_model=AnalyticsResponse)
async def provider_analytics(
    orchestrator: FailoverOrchestrator = Depends(get_orchestrator),
) -> dict[str, Any]:
    return await orchestrator.get_analytics()


@providers_router.get(
    "/{provider_id}",
    response_model=ProviderResponse,
    responses={404: {"model": ErrorResponse}},
)
async def get_provider(
    provider_id: str,
    orchestrator: FailoverOrchestrator = Depends(get_orchestrator),
) -> ProviderResponse:
    return ProviderResponse.model_validate(await orchestrator.get_provider(provider_id))


@providers_router.patch(
    "/{provider_id}",
    response_model=ProviderResponse,
    responses={400: {"model": ErrorResponse}, 404: {"model": ErrorResponse}},
)
async def update_provider(
    provider_id: str,
    body: ProviderUpdateRequest,
    orchestrator: FailoverOrchestrator = Depends(get_orchestrator),
) -> ProviderResponse:
    changes = body.model_dump(exclude_unset=True)
    if not changes:
        raise HTTPException(status.HTTP_400_BAD_REQUEST, "No fields to update")
    updated = await orchestrator.update_provider(provider_id, **changes)
    return ProviderResponse.model_validate(updated)


@providers_router.post("/{provider_id}/connect", response_model=OperationResponse)
async def connect_provider(
    provider_id: str,
    orchestrator: FailoverOrchestrator = Depends(get_orchestrator),
) -> OperationResponse:
    return OperationResponse.model_validate(await orchestrator.connect(provider_id))


@providers_router.post("/{provider_id}/disconnect", response_model=OperationResponse)
async def disconnect_provider(
    provider_id: str,
    orchestrator: FailoverOrchestrator = Depends(get_orchestrator),
) -> OperationResponse:
    return OperationResponse.model_validate(await orchestrator.disconnect(provider_id))


@providers_router.post("/{provider_id}/test", response_model=OperationResponse)
async def test_provider(
    provider_id: str,
    orchestrator: FailoverOrchestrator = Depends(get_orchestrator),
) -> OperationResponse:
    return OperationResponse.model_validate(await orchestrator.test(provider_id))


@providers_router.get("/{provider_id}/health", response_model=OperationResponse)
async def provider_health(
    provider_id: str,
    orchestrator: FailoverOrchestrator = Depends(get_orchestrator),
) -> OperationResponse:
    return OperationResponse.model_validate(await orchestrator.health_check(provider_id))


@providers_router.post("/{provider_id}/reset-stats", response_model=ProviderStatsResponse)
async def reset_provider_stats(
    provider_id: str,
    orchestrator: FailoverOrchestrator = Depends(get_orchestrator),
) -> ProviderStatsResponse:
    return ProviderStatsResponse.model_validate(await orchestrator.reset_stats(provider_id))


# ═══════════════════════════════════════════════════════════════
#  Connection pool
# ═══════════════════════════════════════════════════════════════
pool_router = APIRouter(prefix="/pool", tags=["Pool"])


@pool_router.get("", response_model=dict[str, PoolStatusResponse])
async def pool_status(
    orchestrator: FailoverOrchestrator = Depends(get_orchestrator),
) -> dict[str, dict[str, int]]:
    return orchestrator.get_pool_status()


# ═══════════════════════════════════════════════════════════════
#  Sessions
# ═══════════════════════════════════════════════════════════════
sessions_router = APIRouter(prefix="/sessions", tags=["Sessions"])


@sessions_router.post("", response_model=SessionResponse, status_code=201)
async def create_session(
    body: SessionCreateRequest,
    orchestrator: FailoverOrchestrator = Depends(get_orchestrator),
) -> SessionResponse:
    sessions = orchestrator.sessions
    session_id = sessions.create_session(body.service_type, body.metadata)
    session = sessions.get_session(session_id)
    if session is None:  # zero-minute timeout
        raise HTTPException(status.HTTP_409_CONFLICT, "Session expired on creation")
    return SessionResponse.model_validate(session)


@sessions_router.get("/stats", response_model=dict[str, int])
async def session_stats(
    orchestrator: FailoverOrchestrator = Depends(get_orchestrator),
) -> dict[str, int]:
    return orchestrator.get_session_stats()


@sessions_router.get(
    "/{session_id}",
    response_model=SessionResponse,
    responses={404: {"model": ErrorResponse}},
)
async def get_session(
    session_id: str,
    orchestrator: FailoverOrchestrator = Depends(get_orchestrator),
) -> SessionResponse:
    session = orchestrator.sessions.get_session(session_id)
    if session is None:
        raise HTTPException(status.HTTP_404_NOT_FOUND, "Session not found or expired")
    return SessionResponse.model_validate(session)


@sessions_router.post(
    "/{session_id}/extend",
    response_model=SessionResponse,
    responses={404: {"model": ErrorResponse}},
)
async def extend_session(
    session_id: str,
    body: SessionExtendRequest | None = None,
    orchestrator: FailoverOrchestrator = Depends(get_orchestrator),
) -> SessionResponse:
    sessions = orchestrator.sessions
    minutes = body.minutes if body else None
    session = sessions.get_session(session_id) if sessions.extend_session(session_id, minutes) else None
    if session is None:
        raise HTTPException(status.HTTP_404_NOT_FOUND, "Session not found or expired")
    return SessionResponse.model_validate(session)


@sessions_router.delete("/{session_id}", status_code=204)
async def destroy_session(
    session_id: str,
    orchestrator: FailoverOrchestrator = Depends(get_orchestrator),
) -> Response:
    if not orchestrator.sessions.destroy_session(session_id):
        raise HTTPException(status.HTTP_404_NOT_FOUND, "Session not found")
    return Response(status_code=204)
