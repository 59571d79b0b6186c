"""FastAPI middleware stack: request ID, logging, metrics, rate limiting."""

from __future__ import annotations

import time
import uuid
from collections.abc import Callable, Awaitable

import structlog
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import Response

from provider_broker.domain.value_objects import RateLimitConfig
from provider_broker.shared.observability.metrics import HTTP_REQUEST_DURATION, HTTP_REQUESTS_TOTAL
from provider_broker.shared.resilience.rate_limiter import RateLimiter

logger = structlog.get_logger(__name__)


class RequestIdMiddleware(BaseHTTPMiddleware):
    """Injects a unique X-Request-ID header into every request/response."""

    async def dispatch(
        self,
        request: Request,
        call_next: Callable[[Request], Awaitable[Response]],
    ) -> Response:
        request_id = request.headers.get("X-Request-ID", uuid.uuid4().hex)
        structlog.contextvars.bind_contextvars(request_id=request_id)
        try:
            response = await call_next(request)
        finally:
            structlog.contextvars.unbind_contextvars("request_id")
        response.headers["X-Request-ID"] = request_id
        return response


class LoggingMiddleware(BaseHTTPMiddleware):
    """Logs every request with method, path, status, and duration."""

    async def dispatch(
        self,
        request: Request,
        call_next: Callable[[Request], Awaitable[Response]],
    ) -> Response:
        start = time.monotonic()
        response = await call_next(request)
        duration = time.monotonic() - start

        logger.info(
            "http_request",
            method=request.method,
            path=request.url.path,
            status=response.status_code,
            duration_ms=round(float(duration * 1000), 2),
            client=request.client.host if request.client else "unknown",
        )
        return response


class MetricsMiddleware(BaseHTTPMiddleware):
    """Collects Prometheus HTTP metrics."""

    async def dispatch(
        self,
        request: Request,
        call_next: Callable[[Request], Awaitable[Response]],
    ) -> Response:
        start = time.monotonic()
        response = await call_next(request)
        duration = time.monotonic() - start

        # Normalize path to avoid high cardinality
        path = request.url.path
        if "/api/" in path:
            # Keep the first 3 segments: /api/v1/resource
            parts = path.split("/")
            path = "/".join(parts[:4]) if len(parts) > 3 else path

        HTTP_REQUESTS_TOTAL.labels(
            method=request.method,
            endpoint=path,
            status_code=response.status_code,
        ).inc()

        HTTP_REQUEST_DURATION.labels(
            method=request.method,
            endpoint=path,
        ).observe(duration)

        return response


class RateLimitMiddleware(BaseHTTPMiddleware):
    """Per-client-IP request limit on the API surface.

    Reuses the provider ``RateLimiter`` (one bucket per client address) and
    never waits: an exhausted bucket answers 429 immediately.
    """

    def __init__(  # type: ignore[override]
        self,
        app: object,
        max_requests: int = 600,
        window_seconds: float = 60,
        limiter: RateLimiter | None = None,
    ) -> None:
        super().__init__(app)  # type: ignore[arg-type]
        self._window = window_seconds
        self._limiter = limiter or RateLimiter(
            RateLimitConfig(capacity=max_requests, window_seconds=window_seconds)
        )

    async def dispatch(
        self,
        request: Request,
        call_next: Callable[[Request], Awaitable[Response]],
    ) -> Response:
        client_ip = request.client.host if request.client else "unknown"
        key = f"http:{client_ip}"

        if not self._limiter.try_acquire(key):
            retry_after = self._limiter.retry_after(key) or self._window
            logger.warning("http_rate_limited", client_ip=client_ip)
            return Response(
                content='{"code":"RATE_LIMITED","message":"Too many requests"}',
                status_code=429,
                media_type="application/json",
                headers={"Retry-After": str(max(1, round(retry_after)))},
            )

        return await call_next(request)
