"""Retry executor: backoff policies on top of tenacity.

The delay for attempt *n* (1-indexed, the attempt that just failed) is:

* exponential: ``initial * multiplier ** (n - 1)``
* linear:      ``initial * n``
* fibonacci:   ``initial * fib(n)`` with ``fib(1) == fib(2) == 1``

and is always clamped to ``[initial_delay_ms, max_delay_ms]``.

On a failure the exhaustion check comes first: once ``max_retries`` retries
have been spent the executor raises ``RetryExhaustedError`` wrapping the last
error.  Otherwise a non-retryable error is re-raised untouched.
"""

from __future__ import annotations

import asyncio
import errno
import socket
from typing import Any, Awaitable, Callable, Mapping, TypeVar

import httpx
import structlog
from tenacity import AsyncRetrying, RetryCallState, RetryError, stop_after_attempt

from provider_broker.domain.enums import BackoffType
from provider_broker.domain.exceptions import BrokerError, ConfigurationError, RetryExhaustedError
from provider_broker.domain.value_objects import RetryPolicy

logger = structlog.get_logger(__name__)

T = TypeVar("T")

RetryPredicate = Callable[[BaseException], bool]
SleepFn = Callable[[float], Awaitable[Any]]


# ── Presets ──────────────────────────────────────────────────
RETRY_POLICIES: dict[str, RetryPolicy] = {
    "aggressive": RetryPolicy(
        backoff=BackoffType.EXPONENTIAL,
        max_retries=3,
        initial_delay_ms=100,
        max_delay_ms=1000,
        backoff_multiplier=2,
    ),
    "moderate": RetryPolicy(
        backoff=BackoffType.EXPONENTIAL,
        max_retries=5,
        initial_delay_ms=500,
        max_delay_ms=5000,
        backoff_multiplier=2,
    ),
    "gentle": RetryPolicy(
        backoff=BackoffType.LINEAR,
        max_retries=3,
        initial_delay_ms=1000,
        max_delay_ms=5000,
        backoff_multiplier=1,
    ),
    "slow": RetryPolicy(
        backoff=BackoffType.EXPONENTIAL,
        max_retries=7,
        initial_delay_ms=1000,
        max_delay_ms=30000,
        backoff_multiplier=1.5,
    ),
}

# Checked in order; first keyword contained in the operation type wins.
DEFAULT_RETRY_KEYWORDS: dict[str, str] = {
    "search": "moderate",
    "query": "moderate",
    "sync": "slow",
    "process": "slow",
    "notify": "gentle",
    "delete": "gentle",
}


# ── Delay calculation ────────────────────────────────────────
def _fibonacci(n: int) -> int:
    a, b = 1, 1
    for _ in range(3, n + 1):
        a, b = b, a + b
    return b


def calculate_delay(policy: RetryPolicy, attempt: int) -> float:
    """Delay in milliseconds before the retry that follows ``attempt``."""
    if policy.backoff is BackoffType.EXPONENTIAL:
        delay = policy.initial_delay_ms * policy.backoff_multiplier ** (attempt - 1)
    elif policy.backoff is BackoffType.LINEAR:
        delay = policy.initial_delay_ms * attempt
    elif policy.backoff is BackoffType.FIBONACCI:
        delay = policy.initial_delay_ms * _fibonacci(attempt)
    else:
        delay = policy.initial_delay_ms
    return min(max(delay, policy.initial_delay_ms), policy.max_delay_ms)


# ── Error classification ─────────────────────────────────────
_RETRYABLE_ERRNOS = frozenset({errno.ECONNREFUSED, errno.ECONNRESET, errno.ETIMEDOUT})


def is_retryable_error(exc: BaseException) -> bool:
    """Default classifier: network, timeout, DNS, HTTP 5xx and 429 are transient."""
    retryable = getattr(exc, "retryable", None)
    if isinstance(exc, BrokerError) and retryable is not None:
        return bool(retryable)

    if isinstance(exc, (ConnectionRefusedError, ConnectionResetError, TimeoutError, socket.gaierror)):
        return True
    if isinstance(exc, (httpx.NetworkError, httpx.TimeoutException)):
        return True
    if isinstance(exc, OSError) and exc.errno in _RETRYABLE_ERRNOS:
        return True

    if isinstance(exc, httpx.HTTPStatusError):
        status = exc.response.status_code
    else:
        status = getattr(exc, "status_code", None)
    if isinstance(status, int) and (status >= 500 or status == 429):
        return True

    return "timeout" in str(exc).lower()


# ── Policy selection ─────────────────────────────────────────
class RetryPolicySelector:
    """Keyword → preset lookup used to pick a policy per operation category."""

    def __init__(
        self,
        keywords: Mapping[str, str] | None = None,
        *,
        default: str = "moderate",
        policies: Mapping[str, RetryPolicy] | None = None,
    ) -> None:
        self._policies = dict(policies or RETRY_POLICIES)
        self._keywords = dict(DEFAULT_RETRY_KEYWORDS if keywords is None else keywords)
        self._default = default
        for name in (*self._keywords.values(), default):
            if name not in self._policies:
                raise ConfigurationError(f"Unknown retry policy {name!r}")

    def policy(self, name: str) -> RetryPolicy:
        try:
            return self._policies[name]
        except KeyError:
            raise ConfigurationError(f"Unknown retry policy {name!r}") from None

    def select(self, operation_type: str) -> RetryPolicy:
        op = operation_type.lower()
        for keyword, name in self._keywords.items():
            if keyword in op:
                return self._policies[name]
        return self._policies[self._default]


_default_selector = RetryPolicySelector()


def get_optimal_retry_policy(
    operation_type: str, selector: RetryPolicySelector | None = None
) -> RetryPolicy:
    return (selector or _default_selector).select(operation_type)


# ── Executor ─────────────────────────────────────────────────
class RetryExecutor:
    """Runs an async operation under a ``RetryPolicy``.

    Usage::

        executor = RetryExecutor(RETRY_POLICIES["moderate"])
        result = await executor.execute(lambda: client.get("/search"))
    """

    def __init__(
        self,
        policy: RetryPolicy,
        *,
        sleep: SleepFn = asyncio.sleep,
        name: str = "operation",
    ) -> None:
        self.policy = policy
        self._sleep = sleep
        self._name = name

    async def execute(
        self,
        fn: Callable[[], Awaitable[T]],
        is_retryable: RetryPredicate | None = None,
    ) -> T:
        """Call ``fn`` until it succeeds, a non-retryable error occurs, or retries run out.

        Raises:
            RetryExhaustedError: every attempt failed; ``last_error`` is the final cause.
        """
        predicate = is_retryable or is_retryable_error
        max_retries = self.policy.max_retries

        def should_retry(state: RetryCallState) -> bool:
            outcome = state.outcome
            if outcome is None or not outcome.failed:
                return False
            exc = outcome.exception()
            if not isinstance(exc, Exception):
                # Cancellation and interpreter exits pass straight through.
                return False
            if state.attempt_number > max_retries:
                return True
            return predicate(exc)

        def wait(state: RetryCallState) -> float:
            return calculate_delay(self.policy, state.attempt_number) / 1000.0

        def before_sleep(state: RetryCallState) -> None:
            exc = state.outcome.exception() if state.outcome else None
            logger.debug(
                "retry_scheduled",
                operation=self._name,
                attempt=state.attempt_number,
                delay_ms=state.next_action.sleep * 1000.0 if state.next_action else None,
                error=str(exc),
            )

        retrying = AsyncRetrying(
            stop=stop_after_attempt(self.policy.max_attempts),
            wait=wait,
            retry=should_retry,
            sleep=self._sleep,
            before_sleep=before_sleep,
            reraise=False,
        )
        try:
            return await retrying(fn)
        except RetryError as err:
            last = err.last_attempt.exception()
            attempts = err.last_attempt.attempt_number
            logger.info(
                "retry_exhausted",
                operation=self._name,
                attempts=attempts,
                error=str(last),
            )
            raise RetryExhaustedError(attempts, last) from last

    def get_estimated_retry_time(self) -> float:
        """Total milliseconds spent sleeping if every retry is used."""
        return sum(calculate_delay(self.policy, n) for n in range(1, self.policy.max_retries + 1))
