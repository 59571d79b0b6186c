"""Broker exception hierarchy.

All exceptions inherit from ``BrokerError`` so callers can catch the entire
family in one clause while still discriminating on subclass.  The taxonomy
mirrors how failures travel through the orchestration layer:

* ``ProviderError``: one provider failed (transient or not).
* ``AllProvidersExhaustedError``: every candidate provider failed.
* ``ConfigurationError``: fails fast, no network call is made.
* ``ResourceExhaustedError``: local backpressure (rate limit, pool).
* ``OperationTimeoutError``: the caller's overall deadline elapsed.
"""

from __future__ import annotations


class BrokerError(Exception):
    """Base class for all broker errors."""

    def __init__(self, message: str, *, code: str = "BROKER_ERROR") -> None:
        self.message = message
        self.code = code
        super().__init__(message)


# ── Configuration ────────────────────────────────────────────
class ConfigurationError(BrokerError):
    """Missing/invalid credentials or an unusable provider setup."""

    def __init__(self, message: str, *, code: str = "CONFIGURATION_ERROR") -> None:
        super().__init__(message, code=code)


class ProviderNotFoundError(ConfigurationError):
    def __init__(self, provider_id: str) -> None:
        self.provider_id = provider_id
        super().__init__(f"Provider {provider_id!r} not found", code="PROVIDER_NOT_FOUND")


class NoEnabledProvidersError(ConfigurationError):
    def __init__(self, capability: str) -> None:
        self.capability = capability
        super().__init__(
            f"No enabled providers configured for capability {capability!r}",
            code="NO_ENABLED_PROVIDERS",
        )


# ── Provider failures ────────────────────────────────────────
class ProviderError(BrokerError):
    """A single provider reported a failure.

    ``message`` carries a ``[provider_id]`` prefix; ``detail`` is the bare text.
    ``retryable`` is ``None`` when the provider had no opinion; the retry
    classifier then falls back to ``status_code`` and the exception cause.
    """

    def __init__(
        self,
        provider_id: str,
        message: str,
        *,
        status_code: int | None = None,
        retryable: bool | None = None,
        code: str = "PROVIDER_ERROR",
    ) -> None:
        self.provider_id = provider_id
        self.detail = message
        self.status_code = status_code
        self.retryable = retryable
        super().__init__(f"[{provider_id}] {message}", code=code)


class ProviderTimeoutError(ProviderError):
    def __init__(self, provider_id: str, timeout_s: float) -> None:
        self.timeout_s = timeout_s
        super().__init__(
            provider_id,
            f"Timeout after {timeout_s}s",
            retryable=True,
            code="PROVIDER_TIMEOUT",
        )


class RetryExhaustedError(BrokerError):
    """Raised by the retry executor once every attempt has failed."""

    def __init__(self, attempts: int, last_error: BaseException | None) -> None:
        self.attempts = attempts
        self.last_error = last_error
        detail = str(last_error) if last_error is not None else "unknown error"
        super().__init__(
            f"Operation failed after {attempts} attempts: {detail}",
            code="RETRY_EXHAUSTED",
        )


class AllProvidersExhaustedError(BrokerError):
    """Every candidate provider for a capability failed.

    The message embeds the last underlying error so callers never need to
    walk ``errors`` to understand the failure.
    """

    def __init__(self, capability: str, errors: dict[str, str], last_error: str) -> None:
        self.capability = capability
        self.errors = errors
        self.last_error = last_error
        providers = ", ".join(errors.keys()) or "none"
        super().__init__(
            f"All providers exhausted for {capability!r} ({providers}). "
            f"Last error: {last_error}",
            code="ALL_PROVIDERS_EXHAUSTED",
        )


# ── Resource exhaustion (local backpressure) ─────────────────
class ResourceExhaustedError(BrokerError):
    def __init__(self, message: str, *, key: str, code: str = "RESOURCE_EXHAUSTED") -> None:
        self.key = key
        super().__init__(message, code=code)


class RateLimitExceededError(ResourceExhaustedError):
    def __init__(self, key: str, retry_after_s: float | None = None) -> None:
        self.retry_after_s = retry_after_s
        msg = f"Rate limit exceeded for {key!r}"
        if retry_after_s:
            msg += f", retry after {retry_after_s:.1f}s"
        super().__init__(msg, key=key, code="RATE_LIMITED")


class PoolAcquireTimeoutError(ResourceExhaustedError):
    def __init__(self, key: str, timeout_s: float) -> None:
        self.timeout_s = timeout_s
        super().__init__(
            f"Connection pool timeout for {key!r} after {timeout_s}s",
            key=key,
            code="POOL_TIMEOUT",
        )


# ── Deadline ─────────────────────────────────────────────────
class OperationTimeoutError(BrokerError):
    """The caller's overall deadline elapsed before any provider succeeded."""

    def __init__(self, capability: str, timeout_s: float) -> None:
        self.capability = capability
        self.timeout_s = timeout_s
        super().__init__(
            f"Operation on {capability!r} exceeded its {timeout_s}s deadline",
            code="OPERATION_TIMEOUT",
        )
