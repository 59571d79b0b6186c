"""Per-key admission control: token bucket and sliding window.

Both algorithms keep state purely in memory.  Each key owns its own lock so
independent keys never contend; the registry lock is only held long enough
to look up or create a key's state.

Token bucket refills lazily at read time from elapsed clock time (no timer),
so ``tokens`` always stays within ``[0, capacity]``.  Sliding window keeps the
timestamps of the trailing window and is trimmed on every check.
"""

from __future__ import annotations

import asyncio
import threading
import time
from abc import ABC, abstractmethod
from collections import deque
from dataclasses import dataclass, field
from typing import Any, Callable

import structlog

from provider_broker.domain.enums import RateLimitAlgorithm
from provider_broker.domain.value_objects import RateLimitConfig

logger = structlog.get_logger(__name__)

Clock = Callable[[], float]

_POLL_INTERVAL_S = 0.1


@dataclass(slots=True)
class _Bucket:
    tokens: float
    last_refill: float
    request_count: int = 0
    lock: threading.Lock = field(default_factory=threading.Lock)


@dataclass(slots=True)
class _Window:
    timestamps: deque[float] = field(default_factory=deque)
    lock: threading.Lock = field(default_factory=threading.Lock)


class _KeyedLimiter(ABC):
    """Shared plumbing: per-key config overrides and the polling ``acquire``."""

    def __init__(self, config: RateLimitConfig | None = None, *, clock: Clock = time.monotonic) -> None:
        self._config = config or RateLimitConfig()
        self._overrides: dict[str, RateLimitConfig] = {}
        self._clock = clock
        self._registry_lock = threading.Lock()

    @property
    def config(self) -> RateLimitConfig:
        return self._config

    def configure(self, key: str, config: RateLimitConfig) -> None:
        """Give ``key`` its own budget (e.g. a provider's requests-per-minute)."""
        with self._registry_lock:
            self._overrides[key] = config

    def config_for(self, key: str) -> RateLimitConfig:
        return self._overrides.get(key, self._config)

    @abstractmethod
    def try_acquire(self, key: str, tokens: int = 1) -> bool: ...

    @abstractmethod
    def retry_after(self, key: str, tokens: int = 1) -> float: ...

    async def acquire(self, key: str, tokens: int = 1, timeout: float = 30.0) -> bool:
        """Poll until admitted or ``timeout`` seconds have elapsed.

        Cancellation (e.g. an outer deadline) propagates out of the sleep
        without consuming anything.
        """
        if self.try_acquire(key, tokens):
            return True
        if timeout <= 0:
            return False
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout
        while True:
            remaining = deadline - loop.time()
            if remaining <= 0:
                logger.debug("rate_limit_wait_timeout", key=key, timeout_s=timeout)
                return False
            await asyncio.sleep(min(_POLL_INTERVAL_S, remaining))
            if self.try_acquire(key, tokens):
                return True


# ═══════════════════════════════════════════════════════════════
#  Token bucket
# ═══════════════════════════════════════════════════════════════
class TokenBucket(_KeyedLimiter):
    """Capacity = requests per window; allows bursts up to capacity."""

    def __init__(self, config: RateLimitConfig | None = None, *, clock: Clock = time.monotonic) -> None:
        super().__init__(config, clock=clock)
        self._buckets: dict[str, _Bucket] = {}

    def try_acquire(self, key: str, tokens: int = 1) -> bool:
        cfg = self.config_for(key)
        bucket = self._bucket(key, cfg)
        with bucket.lock:
            if cfg.unlimited:
                bucket.request_count += 1
                return True
            self._refill(bucket, cfg)
            if bucket.tokens >= tokens:
                bucket.tokens -= tokens
                bucket.request_count += 1
                return True
            return False

    def refund(self, key: str, tokens: int = 1) -> None:
        """Return tokens taken by an admission that never reached the provider."""
        cfg = self.config_for(key)
        bucket = self._bucket(key, cfg)
        with bucket.lock:
            if not cfg.unlimited:
                self._refill(bucket, cfg)
                bucket.tokens = min(float(cfg.capacity), bucket.tokens + tokens)
            bucket.request_count = max(0, bucket.request_count - 1)

    def retry_after(self, key: str, tokens: int = 1) -> float:
        cfg = self.config_for(key)
        if cfg.unlimited:
            return 0.0
        bucket = self._bucket(key, cfg)
        with bucket.lock:
            self._refill(bucket, cfg)
            missing = tokens - bucket.tokens
            if missing <= 0:
                return 0.0
            return missing / cfg.refill_per_second

    def get_stats(self, key: str) -> dict[str, Any]:
        cfg = self.config_for(key)
        bucket = self._bucket(key, cfg)
        with bucket.lock:
            if not cfg.unlimited:
                self._refill(bucket, cfg)
            return {
                "algorithm": RateLimitAlgorithm.TOKEN_BUCKET.value,
                "request_count": bucket.request_count,
                "tokens_available": bucket.tokens,
                "capacity": cfg.capacity,
            }

    def reset(self, key: str | None = None) -> None:
        with self._registry_lock:
            if key is None:
                self._buckets.clear()
            else:
                self._buckets.pop(key, None)

    # ── Internals ────────────────────────────────────────────
    def _bucket(self, key: str, cfg: RateLimitConfig) -> _Bucket:
        with self._registry_lock:
            bucket = self._buckets.get(key)
            if bucket is None:
                bucket = _Bucket(tokens=float(max(cfg.capacity, 0)), last_refill=self._clock())
                self._buckets[key] = bucket
            return bucket

    def _refill(self, bucket: _Bucket, cfg: RateLimitConfig) -> None:
        """Lazy refill from elapsed time. Caller holds ``bucket.lock``."""
        now = self._clock()
        elapsed = max(0.0, now - bucket.last_refill)
        bucket.tokens = min(float(cfg.capacity), bucket.tokens + cfg.refill_per_second * elapsed)
        bucket.last_refill = now


# ═══════════════════════════════════════════════════════════════
#  Sliding window
# ═══════════════════════════════════════════════════════════════
class SlidingWindow(_KeyedLimiter):
    """Admits while fewer than ``capacity`` requests fall in the trailing window."""

    def __init__(self, config: RateLimitConfig | None = None, *, clock: Clock = time.monotonic) -> None:
        super().__init__(config, clock=clock)
        self._windows: dict[str, _Window] = {}

    def try_acquire(self, key: str, tokens: int = 1) -> bool:
        cfg = self.config_for(key)
        window = self._window(key)
        with window.lock:
            now = self._clock()
            self._trim(window, now, cfg)
            if not cfg.unlimited and len(window.timestamps) + tokens > cfg.capacity:
                return False
            window.timestamps.extend([now] * tokens)
            return True

    def refund(self, key: str, tokens: int = 1) -> None:
        window = self._window(key)
        with window.lock:
            for _ in range(min(tokens, len(window.timestamps))):
                window.timestamps.pop()

    def retry_after(self, key: str, tokens: int = 1) -> float:
        cfg = self.config_for(key)
        if cfg.unlimited:
            return 0.0
        window = self._window(key)
        with window.lock:
            now = self._clock()
            self._trim(window, now, cfg)
            excess = len(window.timestamps) + tokens - cfg.capacity
            if excess <= 0:
                return 0.0
            # The oldest ``excess`` entries have to age out first.
            release_at = window.timestamps[excess - 1] + cfg.window_seconds
            return max(0.0, release_at - now)

    def get_stats(self, key: str) -> dict[str, Any]:
        cfg = self.config_for(key)
        window = self._window(key)
        with window.lock:
            self._trim(window, self._clock(), cfg)
            return {
                "algorithm": RateLimitAlgorithm.SLIDING_WINDOW.value,
                "request_count": len(window.timestamps),
                "window_size": cfg.capacity,
                "window_seconds": cfg.window_seconds,
            }

    def reset(self, key: str | None = None) -> None:
        with self._registry_lock:
            if key is None:
                self._windows.clear()
            else:
                self._windows.pop(key, None)

    # ── Internals ────────────────────────────────────────────
    def _window(self, key: str) -> _Window:
        with self._registry_lock:
            window = self._windows.get(key)
            if window is None:
                window = self._windows[key] = _Window()
            return window

    @staticmethod
    def _trim(window: _Window, now: float, cfg: RateLimitConfig) -> None:
        cutoff = now - cfg.window_seconds
        while window.timestamps and window.timestamps[0] <= cutoff:
            window.timestamps.popleft()


# ═══════════════════════════════════════════════════════════════
#  Facade + composite
# ═══════════════════════════════════════════════════════════════
class RateLimiter:
    """Deployment-level limiter; the algorithm is picked once at construction."""

    def __init__(
        self,
        config: RateLimitConfig | None = None,
        algorithm: RateLimitAlgorithm | str = RateLimitAlgorithm.TOKEN_BUCKET,
        *,
        clock: Clock = time.monotonic,
    ) -> None:
        self.algorithm = RateLimitAlgorithm(algorithm)
        self._impl: TokenBucket | SlidingWindow
        if self.algorithm is RateLimitAlgorithm.TOKEN_BUCKET:
            self._impl = TokenBucket(config, clock=clock)
        else:
            self._impl = SlidingWindow(config, clock=clock)

    @property
    def config(self) -> RateLimitConfig:
        return self._impl.config

    def configure(self, key: str, config: RateLimitConfig) -> None:
        self._impl.configure(key, config)

    def config_for(self, key: str) -> RateLimitConfig:
        return self._impl.config_for(key)

    def try_acquire(self, key: str, tokens: int = 1) -> bool:
        return self._impl.try_acquire(key, tokens)

    async def acquire(self, key: str, tokens: int = 1, timeout: float = 30.0) -> bool:
        return await self._impl.acquire(key, tokens, timeout)

    def refund(self, key: str, tokens: int = 1) -> None:
        self._impl.refund(key, tokens)

    def retry_after(self, key: str, tokens: int = 1) -> float:
        return self._impl.retry_after(key, tokens)

    def get_stats(self, key: str) -> dict[str, Any]:
        return self._impl.get_stats(key)

    def reset(self, key: str | None = None) -> None:
        self._impl.reset(key)


class CompositeRateLimiter:
    """ANDs several named limiters together (e.g. per-minute and per-hour)."""

    def __init__(self, *, clock: Clock = time.monotonic) -> None:
        self._limiters: dict[str, RateLimiter] = {}
        self._clock = clock

    def add_limiter(
        self,
        name: str,
        config: RateLimitConfig,
        algorithm: RateLimitAlgorithm | str = RateLimitAlgorithm.TOKEN_BUCKET,
    ) -> RateLimiter:
        limiter = RateLimiter(config, algorithm, clock=self._clock)
        self._limiters[name] = limiter
        return limiter

    async def check_all_limits(self, key: str, timeout: float = 0.0) -> bool:
        """Admit only if every limiter admits; stops at the first rejection.

        Limiters that already admitted this request get their token back, so
        a rejection leaves every budget untouched.
        """
        admitted: list[RateLimiter] = []
        for name, limiter in self._limiters.items():
            if timeout > 0:
                allowed = await limiter.acquire(key, timeout=timeout)
            else:
                allowed = limiter.try_acquire(key)
            if not allowed:
                for earlier in admitted:
                    earlier.refund(key)
                logger.debug("composite_rate_limit_rejected", key=key, limiter=name)
                return False
            admitted.append(limiter)
        return True

    async def check_limit(self, name: str, key: str, timeout: float = 0.0) -> bool:
        limiter = self._limiters.get(name)
        if limiter is None:
            raise KeyError(f"Limiter {name!r} not found")
        if timeout > 0:
            return await limiter.acquire(key, timeout=timeout)
        return limiter.try_acquire(key)

    def get_all_stats(self, key: str) -> dict[str, dict[str, Any]]:
        return {name: limiter.get_stats(key) for name, limiter in self._limiters.items()}

    def reset_all(self, key: str | None = None) -> None:
        for limiter in self._limiters.values():
            limiter.reset(key)
