"""Global exception handlers: map broker errors to HTTP responses."""

from __future__ import annotations

from fastapi import FastAPI, Request
from fastapi.responses import ORJSONResponse
import structlog

from provider_broker.domain.exceptions import (
    AllProvidersExhaustedError,
    BrokerError,
    ConfigurationError,
    OperationTimeoutError,
    ProviderError,
    ProviderNotFoundError,
    RateLimitExceededError,
    ResourceExhaustedError,
)

logger = structlog.get_logger(__name__)


def _body(exc: BrokerError) -> dict[str, str]:
    return {"code": exc.code, "message": exc.message}


def register_exception_handlers(app: FastAPI) -> None:
    """Register all broker→HTTP exception mappings.

    Starlette resolves handlers by walking the exception MRO, so the most
    specific class always wins regardless of registration order.
    """

    @app.exception_handler(ProviderNotFoundError)
    async def handle_not_found(request: Request, exc: ProviderNotFoundError) -> ORJSONResponse:
        return ORJSONResponse(status_code=404, content=_body(exc))

    @app.exception_handler(ConfigurationError)
    async def handle_configuration(request: Request, exc: ConfigurationError) -> ORJSONResponse:
        return ORJSONResponse(status_code=400, content=_body(exc))

    @app.exception_handler(RateLimitExceededError)
    async def handle_rate_limited(
        request: Request, exc: RateLimitExceededError
    ) -> ORJSONResponse:
        headers = {}
        if exc.retry_after_s:
            headers["Retry-After"] = str(max(1, round(exc.retry_after_s)))
        return ORJSONResponse(status_code=429, content=_body(exc), headers=headers)

    @app.exception_handler(ResourceExhaustedError)
    async def handle_resource(request: Request, exc: ResourceExhaustedError) -> ORJSONResponse:
        logger.warning("resource_exhausted_http", key=exc.key, code=exc.code)
        return ORJSONResponse(status_code=503, content=_body(exc))

    @app.exception_handler(OperationTimeoutError)
    async def handle_deadline(request: Request, exc: OperationTimeoutError) -> ORJSONResponse:
        return ORJSONResponse(status_code=504, content=_body(exc))

    @app.exception_handler(AllProvidersExhaustedError)
    async def handle_exhausted(
        request: Request, exc: AllProvidersExhaustedError
    ) -> ORJSONResponse:
        logger.error("all_providers_exhausted_http", capability=exc.capability, message=exc.message)
        return ORJSONResponse(
            status_code=502,
            content={**_body(exc), "errors": exc.errors},
        )

    @app.exception_handler(ProviderError)
    async def handle_provider(request: Request, exc: ProviderError) -> ORJSONResponse:
        logger.error("provider_error_http", provider=exc.provider_id, message=exc.message)
        return ORJSONResponse(status_code=502, content=_body(exc))

    @app.exception_handler(BrokerError)
    async def handle_broker(request: Request, exc: BrokerError) -> ORJSONResponse:
        logger.error("broker_error_http", message=exc.message)
        return ORJSONResponse(status_code=500, content=_body(exc))

    @app.exception_handler(Exception)
    async def handle_unexpected(request: Request, exc: Exception) -> ORJSONResponse:
        logger.exception("unhandled_exception", error=str(exc))
        return ORJSONResponse(
            status_code=500,
            content={
                "code": "INTERNAL_ERROR",
                "message": "An unexpected error occurred",
            },
        )
