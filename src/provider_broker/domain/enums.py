"""Domain enumerations for the provider broker."""

from __future__ import annotations

import enum


class Capability(str, enum.Enum):
    """Category of work served by interchangeable providers."""

    OCR = "ocr"
    AI = "ai"
    SEARCH = "search"
    STORAGE = "storage"
    CHAT = "chat"
    CODE = "code"


class ActionType(str, enum.Enum):
    """Operation requested from a provider."""

    PROCESS = "process"
    EXTRACT = "extract"
    SYNC = "sync"
    NOTIFY = "notify"
    QUERY = "query"
    CREATE = "create"
    UPDATE = "update"
    DELETE = "delete"

    @property
    def is_read_only(self) -> bool:
        return self in (ActionType.QUERY, ActionType.EXTRACT)


class OperationStatus(str, enum.Enum):
    """Outcome of a single provider operation."""

    PENDING = "pending"
    PROCESSING = "processing"
    SUCCESS = "success"
    FAILED = "failed"
    TIMEOUT = "timeout"
    CANCELLED = "cancelled"


class AuthType(str, enum.Enum):
    API_KEY = "api_key"
    OAUTH = "oauth"
    JWT = "jwt"
    BASIC = "basic"
    TOKEN = "token"


class ProviderStatus(str, enum.Enum):
    """Status derived from the most recent attempt against a provider."""

    UNKNOWN = "unknown"
    ACTIVE = "active"
    ERROR = "error"


class ConnectionTestStatus(str, enum.Enum):
    """Outcome of the last administrative connection test."""

    SUCCESS = "success"
    FAILED = "failed"


class BackoffType(str, enum.Enum):
    EXPONENTIAL = "exponential"
    LINEAR = "linear"
    FIBONACCI = "fibonacci"


class RateLimitAlgorithm(str, enum.Enum):
    TOKEN_BUCKET = "token_bucket"
    SLIDING_WINDOW = "sliding_window"


class OrchestrationState(str, enum.Enum):
    """Per-operation failover state machine.

    SELECT_PROVIDER → RATE_LIMIT_CHECK → ACQUIRE_CONNECTION → EXECUTE
    → RECORD_STATS → (SUCCEEDED | next provider | ALL_PROVIDERS_EXHAUSTED)
    """

    SELECT_PROVIDER = "select_provider"
    RATE_LIMIT_CHECK = "rate_limit_check"
    ACQUIRE_CONNECTION = "acquire_connection"
    EXECUTE = "execute"
    RECORD_STATS = "record_stats"
    SUCCEEDED = "succeeded"
    ALL_PROVIDERS_EXHAUSTED = "all_providers_exhausted"
