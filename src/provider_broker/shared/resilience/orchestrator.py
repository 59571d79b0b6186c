"""Failover orchestrator: the single entry-point for provider calls.

Composes the rate limiter, connection pool, retry executor, statistics
tracker and session manager into one resilience layer.  For every logical
operation it walks the enabled providers of a capability in ascending
priority order::

    SELECT_PROVIDER → RATE_LIMIT_CHECK → ACQUIRE_CONNECTION → EXECUTE (with retry)
        → RECORD_STATS → SUCCEEDED | next provider | ALL_PROVIDERS_EXHAUSTED

A provider is attempted at most once per operation; the preferred provider
(if any) goes first and shares its rate-limit bucket with the regular chain.
"""

from __future__ import annotations

import asyncio
import dataclasses
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable

import structlog

from provider_broker.domain.entities import OperationResult, ProviderStats, ServiceConfig
from provider_broker.domain.enums import (
    ActionType,
    Capability,
    ConnectionTestStatus,
    OperationStatus,
)
from provider_broker.domain.exceptions import (
    AllProvidersExhaustedError,
    ConfigurationError,
    NoEnabledProvidersError,
    OperationTimeoutError,
    ProviderError,
    ProviderNotFoundError,
    ProviderTimeoutError,
    RateLimitExceededError,
    ResourceExhaustedError,
    RetryExhaustedError,
)
from provider_broker.domain.value_objects import RateLimitConfig
from provider_broker.ports.outbound import ProviderStatsSink, ServiceClient, ServiceConfigStore
from provider_broker.shared.observability.metrics import (
    ACTIVE_SESSIONS,
    FAILOVERS_TOTAL,
    OPERATIONS_TOTAL,
    POOL_CONNECTIONS,
    PROVIDER_ATTEMPTS,
    PROVIDER_LATENCY,
    RATE_LIMIT_REJECTIONS,
)
from provider_broker.shared.resilience.cache import ResultCache, make_cache_key
from provider_broker.shared.resilience.connection_pool import ConnectionPool
from provider_broker.shared.resilience.rate_limiter import RateLimiter
from provider_broker.shared.resilience.retry import (
    RetryExecutor,
    RetryPolicySelector,
    is_retryable_error,
)
from provider_broker.shared.resilience.sessions import SessionManager
from provider_broker.shared.resilience.stats import ProviderStatsTracker

logger = structlog.get_logger(__name__)

ClientFactory = Callable[[ServiceConfig], ServiceClient]
SleepFn = Callable[[float], Awaitable[Any]]

# Fields an administrator may change through ``update_provider``.
_UPDATABLE_FIELDS = frozenset(
    {
        "name",
        "enabled",
        "priority",
        "endpoint",
        "auth_type",
        "credentials",
        "rate_limit_per_minute",
        "timeout_s",
        "retry_policy",
        "is_default",
        "is_required",
        "description",
        "extra",
    }
)
# Changing any of these invalidates live connections.
_CONNECTION_FIELDS = frozenset({"endpoint", "auth_type", "credentials", "extra", "timeout_s"})


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True, slots=True)
class ExecuteOptions:
    """Per-call knobs for ``FailoverOrchestrator.execute``.

    Attributes:
        skip_cache:         Bypass the result cache for read-only actions.
                            Calls with a ``preferred_provider`` always bypass it.
        timeout_s:          Overall deadline; defaults to the orchestrator setting.
        priority_hint:      Only consider providers with ``priority <= priority_hint``.
        preferred_provider: Try this provider first (e.g. the one that served a
                            related request), then fall back to the full chain.
    """

    skip_cache: bool = False
    timeout_s: float | None = None
    priority_hint: int | None = None
    preferred_provider: str | None = None

    def __post_init__(self) -> None:
        if self.timeout_s is not None and self.timeout_s <= 0:
            raise ValueError("timeout_s must be > 0")


@dataclass(frozen=True, slots=True)
class OrchestratorConfig:
    default_timeout_s: float = 120.0
    health_check_timeout_s: float = 5.0
    rate_limit_wait_s: float = 0.0
    rate_limit_window_s: float = 60.0


@dataclass(slots=True)
class _Run:
    """Mutable bookkeeping for one logical operation."""

    interrupted: ProviderStats | None = None


class FailoverOrchestrator:
    """Priority-ordered failover across the providers of a capability.

    Usage::

        orchestrator = FailoverOrchestrator(store, default_registry().create)
        result = await orchestrator.execute(
            Capability.SEARCH, ActionType.QUERY, {"query": "python asyncio"},
        )
    """

    def __init__(
        self,
        store: ServiceConfigStore,
        client_factory: ClientFactory,
        *,
        stats_sink: ProviderStatsSink | None = None,
        rate_limiter: RateLimiter | None = None,
        pool: ConnectionPool | None = None,
        sessions: SessionManager | None = None,
        stats: ProviderStatsTracker | None = None,
        cache: ResultCache | None = None,
        retry_selector: RetryPolicySelector | None = None,
        config: OrchestratorConfig | None = None,
        sleep: SleepFn = asyncio.sleep,
    ) -> None:
        self._store = store
        self._client_factory = client_factory
        self._sink = stats_sink
        self._rate_limiter = rate_limiter or RateLimiter()
        self._pool = pool or ConnectionPool()
        self._sessions = sessions or SessionManager()
        self._stats = stats or ProviderStatsTracker()
        self._cache = cache or ResultCache()
        self._retry_selector = retry_selector or RetryPolicySelector()
        self._config = config or OrchestratorConfig()
        self._sleep = sleep

        self._capability_cache: dict[Capability, list[ServiceConfig]] = {}
        self._direct_clients: dict[str, ServiceClient] = {}

    @property
    def store(self) -> ServiceConfigStore:
        return self._store

    @property
    def sessions(self) -> SessionManager:
        return self._sessions

    @property
    def pool(self) -> ConnectionPool:
        return self._pool

    @property
    def rate_limiter(self) -> RateLimiter:
        return self._rate_limiter

    # ── Lifecycle ────────────────────────────────────────────
    async def start(self) -> None:
        """Start background sweeps and restore persisted statistics."""
        self._pool.start()
        self._sessions.start()
        if self._sink is not None:
            self._stats.load(await self._sink.load_all())
        logger.info("orchestrator_started")

    async def shutdown(self) -> None:
        clients, self._direct_clients = self._direct_clients, {}
        for pid, client in clients.items():
            try:
                await client.disconnect()
            except Exception as exc:
                logger.warning("direct_client_disconnect_failed", provider=pid, error=str(exc))
        await self._pool.drain()
        await self._sessions.close()
        logger.info("orchestrator_shutdown")

    # ── Main entry-point ─────────────────────────────────────
    async def execute(
        self,
        capability: Capability | str,
        action: ActionType | str,
        input: dict[str, Any],
        options: ExecuteOptions | None = None,
    ) -> OperationResult:
        """Run ``action`` on the first provider of ``capability`` that succeeds.

        Raises:
            NoEnabledProvidersError:    nothing enabled (no network call made).
            AllProvidersExhaustedError: every candidate failed; embeds the last error.
            ResourceExhaustedError:     every candidate was rate limited / pool-starved.
            OperationTimeoutError:      the overall deadline elapsed.
        """
        capability = Capability(capability)
        action = ActionType(action)
        options = options or ExecuteOptions()

        cache_key: str | None = None
        if (
            action.is_read_only
            and not options.skip_cache
            and options.preferred_provider is None
            and self._cache.enabled
        ):
            cache_key = make_cache_key(capability.value, action.value, input, options.priority_hint)
            cached = self._cache.get(cache_key)
            if cached is not None:
                OPERATIONS_TOTAL.labels(capability.value, action.value, "cached").inc()
                logger.debug("operation_cache_hit", capability=capability.value, action=action.value)
                return dataclasses.replace(cached, metadata={**cached.metadata, "cached": True})

        chain = await self._build_chain(capability, options)
        timeout_s = (
            self._config.default_timeout_s if options.timeout_s is None else options.timeout_s
        )
        run = _Run()

        try:
            result = await asyncio.wait_for(
                self._run_chain(capability, action, input, chain, run),
                timeout=timeout_s,
            )
        except asyncio.TimeoutError:
            OPERATIONS_TOTAL.labels(capability.value, action.value, "timeout").inc()
            if run.interrupted is not None:
                await self._push(run.interrupted)
            logger.warning(
                "operation_deadline_exceeded",
                capability=capability.value,
                action=action.value,
                timeout_s=timeout_s,
            )
            raise OperationTimeoutError(capability.value, timeout_s) from None
        except AllProvidersExhaustedError:
            OPERATIONS_TOTAL.labels(capability.value, action.value, "exhausted").inc()
            raise
        except ResourceExhaustedError:
            OPERATIONS_TOTAL.labels(capability.value, action.value, "resource").inc()
            raise

        OPERATIONS_TOTAL.labels(capability.value, action.value, "success").inc()
        if cache_key is not None:
            self._cache.set(cache_key, result)
        return result

    # ── Chain walk ───────────────────────────────────────────
    async def _run_chain(
        self,
        capability: Capability,
        action: ActionType,
        payload: dict[str, Any],
        chain: list[ServiceConfig],
        run: _Run,
    ) -> OperationResult:
        errors: dict[str, str] = {}
        attempted: set[str] = set()
        failed: list[str] = []
        last_error = ""
        resource_error: ResourceExhaustedError | None = None

        for cfg in chain:
            pid = cfg.provider_id
            if pid in attempted:
                continue
            attempted.add(pid)

            outcome = await self._attempt_provider(capability, action, payload, cfg, run)
            if isinstance(outcome, OperationResult):
                if len(attempted) > 1:
                    FAILOVERS_TOTAL.labels(capability.value).inc()
                    logger.info(
                        "provider_failover_success",
                        provider=pid,
                        capability=capability.value,
                        attempts=len(attempted),
                        failed_providers=sorted(attempted - {pid}),
                    )
                return outcome

            errors[pid] = str(outcome)
            if isinstance(outcome, ResourceExhaustedError):
                resource_error = outcome
            else:
                failed.append(pid)
                last_error = str(outcome)

        if not failed and resource_error is not None:
            raise resource_error

        logger.error(
            "all_providers_exhausted",
            capability=capability.value,
            action=action.value,
            providers=list(errors),
            last_error=last_error,
        )
        raise AllProvidersExhaustedError(capability.value, errors, last_error)

    async def _attempt_provider(
        self,
        capability: Capability,
        action: ActionType,
        payload: dict[str, Any],
        cfg: ServiceConfig,
        run: _Run,
    ) -> OperationResult | Exception:
        """One provider's turn; returns the result, or the error that ended it.

        Resource exhaustion before any vendor call is a skip: the token is
        refunded and statistics are left untouched.
        """
        pid = cfg.provider_id
        log = logger.bind(provider=pid, capability=capability.value, action=action.value)

        try:
            policy = (
                self._retry_selector.policy(cfg.retry_policy)
                if cfg.retry_policy
                else self._retry_selector.select(action.value)
            )
        except ConfigurationError as exc:
            await self._record_failure(capability, pid, str(exc))
            log.warning("provider_misconfigured", error=str(exc))
            return exc

        if self._stats.get(pid).quota_exhausted:
            PROVIDER_ATTEMPTS.labels(capability.value, pid, "skipped").inc()
            log.info("provider_quota_exhausted")
            return ResourceExhaustedError(
                f"Monthly quota exhausted for {pid!r}", key=pid, code="QUOTA_EXHAUSTED"
            )

        # ── RATE_LIMIT_CHECK ──
        self._rate_limiter.configure(
            pid,
            RateLimitConfig(
                capacity=cfg.rate_limit_per_minute,
                window_seconds=self._config.rate_limit_window_s,
            ),
        )
        if not await self._rate_limiter.acquire(pid, timeout=self._config.rate_limit_wait_s):
            RATE_LIMIT_REJECTIONS.labels(pid).inc()
            PROVIDER_ATTEMPTS.labels(capability.value, pid, "skipped").inc()
            log.info("provider_rate_limited")
            return RateLimitExceededError(pid, retry_after_s=self._rate_limiter.retry_after(pid))

        calls = 0
        last_call_ms = 0.0

        async def attempt() -> OperationResult:
            nonlocal calls, last_call_ms
            # ── ACQUIRE_CONNECTION ──  (released before any retry sleep)
            async with self._pool.connection(pid, lambda: self._open_client(cfg)) as client:
                calls += 1
                start = time.monotonic()
                try:
                    result = await asyncio.wait_for(
                        client.execute(action, payload), timeout=cfg.timeout_s
                    )
                except asyncio.TimeoutError:
                    raise ProviderTimeoutError(pid, cfg.timeout_s) from None
                finally:
                    last_call_ms = (time.monotonic() - start) * 1000
            if not result.success:
                raise ProviderError(
                    pid,
                    result.error or "Unknown error",
                    retryable=result.retryable,
                    code=result.error_code or "PROVIDER_ERROR",
                )
            return result

        executor = RetryExecutor(policy, sleep=self._sleep, name=f"{pid}:{action.value}")
        try:
            # ── EXECUTE ──
            result = await executor.execute(attempt, is_retryable=self._is_retryable)
        except asyncio.CancelledError:
            if calls == 0:
                self._rate_limiter.refund(pid)
            else:
                run.interrupted = self._stats.record_failure(
                    pid, "Operation cancelled or deadline exceeded"
                )
            raise
        except Exception as exc:
            cause = exc.last_error if isinstance(exc, RetryExhaustedError) else exc
            if calls == 0:
                self._rate_limiter.refund(pid)
                if isinstance(cause, ResourceExhaustedError):
                    PROVIDER_ATTEMPTS.labels(capability.value, pid, "skipped").inc()
                    log.info("provider_resource_exhausted", error=str(cause))
                    return cause
            # ── RECORD_STATS (failure) ──
            await self._record_failure(capability, pid, str(exc))
            log.warning("provider_attempt_failed", error=str(exc), calls=calls)
            return exc

        # ── RECORD_STATS (success) ──
        snapshot = self._stats.record_success(pid, last_call_ms)
        await self._push(snapshot)
        PROVIDER_ATTEMPTS.labels(capability.value, pid, "success").inc()
        PROVIDER_LATENCY.labels(capability.value, pid).observe(last_call_ms / 1000)
        log.info("provider_attempt_succeeded", latency_ms=round(last_call_ms, 1), calls=calls)

        result.provider_id = pid
        if not result.execution_time_ms:
            result.execution_time_ms = last_call_ms
        result.metadata = {**result.metadata, "attempts": calls}
        return result

    @staticmethod
    def _is_retryable(exc: BaseException) -> bool:
        if isinstance(exc, (ResourceExhaustedError, ConfigurationError)):
            return False
        return is_retryable_error(exc)

    async def _open_client(self, cfg: ServiceConfig) -> ServiceClient:
        client = self._client_factory(cfg)
        await client.connect(cfg)
        return client

    async def _record_failure(self, capability: Capability, provider_id: str, error: str) -> None:
        snapshot = self._stats.record_failure(provider_id, error)
        await self._push(snapshot)
        PROVIDER_ATTEMPTS.labels(capability.value, provider_id, "failure").inc()

    async def _push(self, snapshot: ProviderStats) -> None:
        if self._sink is None:
            return
        try:
            await self._sink.push(snapshot)
        except Exception as exc:
            logger.warning("stats_push_failed", provider=snapshot.provider_id, error=str(exc))

    # ── Chain building ───────────────────────────────────────
    async def _enabled_providers(self, capability: Capability) -> list[ServiceConfig]:
        cached = self._capability_cache.get(capability)
        if cached is None:
            configs = await self._store.list_providers(capability)
            cached = sorted(
                (c for c in configs if c.enabled and c.capability == capability),
                key=lambda c: (c.priority, c.provider_id),
            )
            self._capability_cache[capability] = cached
        return list(cached)

    async def _build_chain(
        self, capability: Capability, options: ExecuteOptions
    ) -> list[ServiceConfig]:
        """Enabled providers by ascending priority, preferred provider first."""
        chain = await self._enabled_providers(capability)
        if options.priority_hint is not None:
            chain = [c for c in chain if c.priority <= options.priority_hint]

        if options.preferred_provider:
            preferred = next(
                (c for c in chain if c.provider_id == options.preferred_provider), None
            )
            if preferred is None:
                candidate = await self._store.get_provider(options.preferred_provider)
                if candidate and candidate.enabled and candidate.capability == capability:
                    preferred = candidate
            if preferred is not None:
                chain = [preferred] + [c for c in chain if c.provider_id != preferred.provider_id]

        if not chain:
            raise NoEnabledProvidersError(capability.value)
        return chain

    # ── Direct provider control (admin) ──────────────────────
    async def connect(self, provider_id: str) -> OperationResult:
        cfg = await self._require(provider_id)
        existing = self._direct_clients.get(provider_id)
        if existing is not None and existing.is_connected:
            return OperationResult.succeeded(
                {"connected": True, "already_connected": True}, provider_id=provider_id
            )
        start = time.monotonic()
        client = self._client_factory(cfg)
        try:
            await client.connect(cfg)
        except ConfigurationError as exc:
            return OperationResult.failed(
                str(exc), error_code=exc.code, retryable=False, provider_id=provider_id
            )
        except Exception as exc:
            logger.warning("provider_connect_failed", provider=provider_id, error=str(exc))
            return OperationResult.failed(
                str(exc), error_code="CONNECT_FAILED", provider_id=provider_id
            )
        self._direct_clients[provider_id] = client
        logger.info("provider_connected", provider=provider_id)
        return OperationResult.succeeded(
            {"connected": True},
            execution_time_ms=(time.monotonic() - start) * 1000,
            provider_id=provider_id,
        )

    async def disconnect(self, provider_id: str) -> OperationResult:
        await self._require(provider_id)
        client = self._direct_clients.pop(provider_id, None)
        if client is not None:
            await client.disconnect()
        await self._pool.purge(provider_id)
        logger.info("provider_disconnected", provider=provider_id)
        return OperationResult.succeeded({"connected": False}, provider_id=provider_id)

    async def test(self, provider_id: str) -> OperationResult:
        """Connection test; the outcome is written back to the config store."""
        cfg = await self._require(provider_id)
        result = await self._probe(cfg, cfg.timeout_s)
        updated = cfg.replace(
            last_tested_at=_utcnow(),
            last_test_status=(
                ConnectionTestStatus.SUCCESS if result.success else ConnectionTestStatus.FAILED
            ),
            last_test_error=None if result.success else result.error,
        )
        await self._store.save_provider(updated)
        self._capability_cache.pop(cfg.capability, None)
        logger.info("provider_tested", provider=provider_id, success=result.success)
        return result

    async def health_check(self, provider_id: str) -> OperationResult:
        """Short-timeout probe for diagnostics; no stats, no persistence."""
        cfg = await self._require(provider_id)
        return await self._probe(cfg, self._config.health_check_timeout_s)

    async def _probe(self, cfg: ServiceConfig, timeout_s: float) -> OperationResult:
        pid = cfg.provider_id
        client = self._client_factory(cfg)
        start = time.monotonic()

        async def run_test() -> OperationResult:
            await client.connect(cfg)
            return await client.test()

        try:
            result = await asyncio.wait_for(run_test(), timeout=timeout_s)
        except asyncio.TimeoutError:
            result = OperationResult.failed(
                f"Timeout after {timeout_s}s",
                status=OperationStatus.TIMEOUT,
                error_code="PROVIDER_TIMEOUT",
                retryable=True,
            )
        except ConfigurationError as exc:
            result = OperationResult.failed(str(exc), error_code=exc.code, retryable=False)
        except Exception as exc:
            result = OperationResult.failed(str(exc), error_code="TEST_FAILED")
        finally:
            if client.is_connected:
                try:
                    await client.disconnect()
                except Exception as exc:
                    logger.warning("probe_disconnect_failed", provider=pid, error=str(exc))

        result.provider_id = pid
        if not result.execution_time_ms:
            result.execution_time_ms = (time.monotonic() - start) * 1000
        return result

    # ── Configuration (admin updates) ────────────────────────
    async def list_providers(self, capability: Capability | str | None = None) -> list[ServiceConfig]:
        cap = Capability(capability) if capability is not None else None
        configs = await self._store.list_providers(cap)
        return sorted(configs, key=lambda c: (c.capability.value, c.priority, c.provider_id))

    async def get_provider(self, provider_id: str) -> ServiceConfig:
        return await self._require(provider_id)

    async def get_default_provider(self, capability: Capability | str) -> ServiceConfig | None:
        enabled = await self._enabled_providers(Capability(capability))
        return next((c for c in enabled if c.is_default), enabled[0] if enabled else None)

    async def update_provider(self, provider_id: str, **changes: Any) -> ServiceConfig:
        """Enable/disable, reprioritise, rotate credentials, change endpoint...

        Raises:
            ConfigurationError: unknown field or unknown retry policy name.
        """
        unknown = set(changes) - _UPDATABLE_FIELDS
        if unknown:
            raise ConfigurationError(f"Fields not updatable: {', '.join(sorted(unknown))}")
        cfg = await self._require(provider_id)
        updated = cfg.replace(**changes)
        if updated.retry_policy:
            self._retry_selector.policy(updated.retry_policy)

        await self._store.save_provider(updated)
        if changes.get("is_default"):
            for other in await self._store.list_providers(updated.capability):
                if other.provider_id != provider_id and other.is_default:
                    await self._store.save_provider(other.replace(is_default=False))

        self._capability_cache.pop(cfg.capability, None)
        self._capability_cache.pop(updated.capability, None)
        self._cache.invalidate()

        if _CONNECTION_FIELDS & set(changes) or not updated.enabled:
            await self._pool.purge(provider_id)
            client = self._direct_clients.pop(provider_id, None)
            if client is not None:
                await client.disconnect()

        logger.info("provider_updated", provider=provider_id, fields=sorted(changes))
        return updated

    async def _require(self, provider_id: str) -> ServiceConfig:
        cfg = await self._store.get_provider(provider_id)
        if cfg is None:
            raise ProviderNotFoundError(provider_id)
        return cfg

    # ── Observation ──────────────────────────────────────────
    def get_pool_status(self) -> dict[str, dict[str, int]]:
        status = self._pool.get_status()
        for key, counts in status.items():
            POOL_CONNECTIONS.labels(key, "active").set(counts["active"])
            POOL_CONNECTIONS.labels(key, "idle").set(counts["idle"])
        return status

    def get_session_stats(self) -> dict[str, int]:
        stats = self._sessions.get_stats()
        for service_type, count in stats.items():
            ACTIVE_SESSIONS.labels(service_type).set(count)
        return stats

    def get_stats(self, provider_id: str) -> ProviderStats:
        return self._stats.get(provider_id)

    def get_all_stats(self) -> list[ProviderStats]:
        return self._stats.get_all()

    async def reset_stats(self, provider_id: str) -> ProviderStats:
        await self._require(provider_id)
        snapshot = self._stats.reset(provider_id)
        await self._push(snapshot)
        logger.info("provider_stats_reset", provider=provider_id)
        return snapshot

    async def get_analytics(self) -> dict[str, Any]:
        providers = await self._store.list_providers()
        return self._stats.analytics(c.provider_id for c in providers)
