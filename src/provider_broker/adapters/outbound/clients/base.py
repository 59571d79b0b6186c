"""Shared HTTP plumbing for vendor service clients.

Subclasses declare a credentials model, a default base URL, their supported
actions, and implement ``_auth_headers``, ``_health_check`` and
``_execute_action``.  Everything that goes wrong on the wire comes back as a
failed ``OperationResult`` carrying an ``error_code`` and a ``retryable``
hint; only configuration problems raise.
"""

from __future__ import annotations

import time
from abc import abstractmethod
from typing import Any, Awaitable, Callable, ClassVar

import httpx
import structlog
from pydantic import BaseModel, ConfigDict, ValidationError

from provider_broker.domain.entities import OperationResult, ServiceConfig
from provider_broker.domain.enums import ActionType, OperationStatus
from provider_broker.domain.exceptions import ConfigurationError, ProviderError
from provider_broker.ports.outbound import ServiceClient

logger = structlog.get_logger(__name__)


class Credentials(BaseModel):
    """Base for per-vendor credential schemas (accepts snake_case or camelCase keys)."""

    model_config = ConfigDict(populate_by_name=True, str_strip_whitespace=True, extra="ignore")


class HttpServiceClient(ServiceClient):
    """``ServiceClient`` over a long-lived ``httpx.AsyncClient``."""

    provider_type: ClassVar[str]
    default_base_url: ClassVar[str]
    credentials_model: ClassVar[type[Credentials]]
    supported_actions: ClassVar[frozenset[ActionType]]

    def __init__(self, *, transport: httpx.AsyncBaseTransport | None = None) -> None:
        self._transport = transport
        self._client: httpx.AsyncClient | None = None
        self._config: ServiceConfig | None = None
        self._credentials: Any = None

    @property
    def provider_id(self) -> str:
        return self._config.provider_id if self._config else self.provider_type

    @property
    def is_connected(self) -> bool:
        return self._client is not None

    @property
    def config(self) -> ServiceConfig | None:
        return self._config

    # ── Lifecycle ────────────────────────────────────────────
    async def connect(self, config: ServiceConfig) -> None:
        try:
            credentials = self.credentials_model.model_validate(config.credentials)
        except ValidationError as exc:
            fields = ", ".join(".".join(str(p) for p in err["loc"]) for err in exc.errors())
            raise ConfigurationError(
                f"Invalid credentials for {config.provider_id!r} ({self.provider_type}): {fields}",
                code="INVALID_CREDENTIALS",
            ) from exc

        if self._client is not None:
            await self._client.aclose()
        self._config = config
        self._credentials = credentials
        self._client = httpx.AsyncClient(
            base_url=(config.endpoint or self.default_base_url).rstrip("/"),
            headers=self._auth_headers(credentials),
            timeout=config.timeout_s,
            transport=self._transport,
        )
        logger.debug("service_client_connected", provider=config.provider_id, type=self.provider_type)

    async def disconnect(self) -> None:
        client, self._client = self._client, None
        if client is not None:
            await client.aclose()
            logger.debug("service_client_disconnected", provider=self.provider_id)

    # ── Operations ───────────────────────────────────────────
    async def test(self) -> OperationResult:
        if self._client is None:
            return self._not_connected()

        async def check() -> dict[str, Any]:
            await self._health_check()
            return {"message": "Health check passed"}

        return await self._run(check)

    async def execute(self, action: ActionType, input: dict[str, Any]) -> OperationResult:
        if self._client is None:
            return self._not_connected()
        action = ActionType(action)
        if action not in self.supported_actions:
            return OperationResult.failed(
                f"Unsupported action {action.value!r} for {self.provider_type}",
                error_code="UNSUPPORTED_ACTION",
                retryable=False,
                provider_id=self.provider_id,
            )
        return await self._run(lambda: self._execute_action(action, input))

    # ── Subclass hooks ───────────────────────────────────────
    @abstractmethod
    def _auth_headers(self, credentials: Any) -> dict[str, str]: ...

    @abstractmethod
    async def _health_check(self) -> None: ...

    @abstractmethod
    async def _execute_action(self, action: ActionType, input: dict[str, Any]) -> Any: ...

    # ── Helpers ──────────────────────────────────────────────
    async def _request(self, method: str, url: str, **kwargs: Any) -> Any:
        if self._client is None:
            raise ProviderError(
                self.provider_id, "Not connected", retryable=False, code="NOT_CONNECTED"
            )
        response = await self._client.request(method, url, **kwargs)
        response.raise_for_status()
        if not response.content:
            return None
        return response.json()

    def _extra(self, key: str, default: Any = None) -> Any:
        return self._config.extra.get(key, default) if self._config else default

    async def _run(self, fn: Callable[[], Awaitable[Any]]) -> OperationResult:
        start = time.monotonic()

        def elapsed() -> float:
            return (time.monotonic() - start) * 1000

        try:
            data = await fn()
        except httpx.HTTPStatusError as exc:
            status = exc.response.status_code
            return OperationResult.failed(
                f"HTTP {status} from {exc.request.url.path}",
                error_code=f"HTTP_{status}",
                retryable=status >= 500 or status == 429,
                execution_time_ms=elapsed(),
                provider_id=self.provider_id,
            )
        except httpx.TimeoutException as exc:
            return OperationResult.failed(
                f"Request timeout: {type(exc).__name__}",
                status=OperationStatus.TIMEOUT,
                error_code="TIMEOUT",
                retryable=True,
                execution_time_ms=elapsed(),
                provider_id=self.provider_id,
            )
        except httpx.TransportError as exc:
            return OperationResult.failed(
                f"Network error: {exc}",
                error_code="NETWORK_ERROR",
                retryable=True,
                execution_time_ms=elapsed(),
                provider_id=self.provider_id,
            )
        except ProviderError as exc:
            return OperationResult.failed(
                exc.detail,
                error_code=exc.code,
                retryable=exc.retryable,
                execution_time_ms=elapsed(),
                provider_id=self.provider_id,
            )
        except (KeyError, TypeError, ValueError) as exc:
            return OperationResult.failed(
                f"Invalid input or response: {exc}",
                error_code="INVALID_INPUT",
                retryable=False,
                execution_time_ms=elapsed(),
                provider_id=self.provider_id,
            )
        return OperationResult.succeeded(
            data, execution_time_ms=elapsed(), provider_id=self.provider_id
        )

    def _not_connected(self) -> OperationResult:
        return OperationResult.failed(
            "Not connected",
            error_code="NOT_CONNECTED",
            retryable=False,
            provider_id=self.provider_id,
        )
