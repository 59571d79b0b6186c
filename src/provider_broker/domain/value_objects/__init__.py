"""Domain value objects: immutable, self-validating types.

Value objects have *no identity*; two instances with equal fields are equal.
They enforce invariants at construction time so the resilience layer can
trust their contents without re-checking.
"""

from __future__ import annotations

from dataclasses import dataclass

from provider_broker.domain.enums import BackoffType


# ═══════════════════════════════════════════════════════════════
#  RetryPolicy
# ═══════════════════════════════════════════════════════════════
@dataclass(frozen=True, slots=True)
class RetryPolicy:
    """Backoff policy selected per operation category.

    Attributes:
        backoff:            Delay progression between attempts.
        max_retries:        Retries after the first attempt (0 = single try).
        initial_delay_ms:   Delay before the first retry; also the lower clamp.
        max_delay_ms:       Upper clamp for any computed delay.
        backoff_multiplier: Growth factor for exponential backoff.
    """

    backoff: BackoffType = BackoffType.EXPONENTIAL
    max_retries: int = 3
    initial_delay_ms: float = 100.0
    max_delay_ms: float = 1000.0
    backoff_multiplier: float = 2.0

    def __post_init__(self) -> None:
        if self.max_retries < 0:
            raise ValueError(f"max_retries must be >= 0, got {self.max_retries}")
        if self.initial_delay_ms < 0:
            raise ValueError("initial_delay_ms must be >= 0")
        if self.max_delay_ms < self.initial_delay_ms:
            raise ValueError("max_delay_ms must be >= initial_delay_ms")
        if not isinstance(self.backoff, BackoffType):
            object.__setattr__(self, "backoff", BackoffType(self.backoff))

    @property
    def max_attempts(self) -> int:
        return self.max_retries + 1


# ═══════════════════════════════════════════════════════════════
#  RateLimitConfig
# ═══════════════════════════════════════════════════════════════
@dataclass(frozen=True, slots=True)
class RateLimitConfig:
    """Admission budget: ``capacity`` requests per ``window_seconds``.

    A non-positive capacity means unlimited.
    """

    capacity: int = 60
    window_seconds: float = 60.0

    def __post_init__(self) -> None:
        if self.window_seconds <= 0:
            raise ValueError("window_seconds must be positive")

    @property
    def unlimited(self) -> bool:
        return self.capacity <= 0

    @property
    def refill_per_second(self) -> float:
        return self.capacity / self.window_seconds

    @classmethod
    def per_minute(cls, requests: int) -> RateLimitConfig:
        return cls(capacity=requests, window_seconds=60.0)

    @classmethod
    def per_hour(cls, requests: int) -> RateLimitConfig:
        return cls(capacity=requests, window_seconds=3600.0)
