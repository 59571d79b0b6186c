"""Multi-provider resilience layer.

Provides rate limiting, connection pooling, retry/backoff, session
lifecycle, statistics and priority-ordered failover for any outbound
service provider.
"""

from provider_broker.shared.resilience.cache import ResultCache
from provider_broker.shared.resilience.connection_pool import ConnectionPool, ConnectionPoolConfig
from provider_broker.shared.resilience.orchestrator import (
    ExecuteOptions,
    FailoverOrchestrator,
    OrchestratorConfig,
)
from provider_broker.shared.resilience.rate_limiter import (
    CompositeRateLimiter,
    RateLimiter,
    SlidingWindow,
    TokenBucket,
)
from provider_broker.shared.resilience.retry import (
    RETRY_POLICIES,
    RetryExecutor,
    RetryPolicySelector,
    calculate_delay,
    get_optimal_retry_policy,
    is_retryable_error,
)
from provider_broker.shared.resilience.scheduling import PeriodicTask
from provider_broker.shared.resilience.sessions import SessionConfig, SessionManager
from provider_broker.shared.resilience.stats import ProviderStatsTracker

__all__ = [
    "RETRY_POLICIES",
    "CompositeRateLimiter",
    "ConnectionPool",
    "ConnectionPoolConfig",
    "ExecuteOptions",
    "FailoverOrchestrator",
    "OrchestratorConfig",
    "PeriodicTask",
    "ProviderStatsTracker",
    "RateLimiter",
    "ResultCache",
    "RetryExecutor",
    "RetryPolicySelector",
    "SessionConfig",
    "SessionManager",
    "SlidingWindow",
    "TokenBucket",
    "calculate_delay",
    "get_optimal_retry_policy",
    "is_retryable_error",
]
