"""Outbound ports: interfaces that infrastructure adapters must implement.

These are the *driven* ports in hexagonal architecture.  The resilience
layer depends only on these abstractions, never on concrete implementations
(vendor HTTP clients, database drivers, etc.).
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Any

from provider_broker.domain.entities import OperationResult, ProviderStats, ServiceConfig
from provider_broker.domain.enums import ActionType, Capability


# ═══════════════════════════════════════════════════════════════
#  Service client port
# ═══════════════════════════════════════════════════════════════
class ServiceClient(ABC):
    """One implementation per provider family.

    The orchestration layer only relies on the uniform
    ``execute(action, input) -> OperationResult`` contract; the wire format
    of each vendor stays inside the implementation.  Implementations report
    vendor failures as failed ``OperationResult`` values and reserve
    exceptions for configuration problems and cancellation.
    """

    @abstractmethod
    async def connect(self, config: ServiceConfig) -> None:
        """Validate ``config`` and establish the connection.

        Raises:
            ConfigurationError: credentials or endpoint are missing/invalid.
        """
        ...

    @abstractmethod
    async def disconnect(self) -> None: ...

    @property
    @abstractmethod
    def is_connected(self) -> bool: ...

    @abstractmethod
    async def test(self) -> OperationResult:
        """Cheapest round-trip that proves the credentials work."""
        ...

    @abstractmethod
    async def execute(self, action: ActionType, input: dict[str, Any]) -> OperationResult: ...

    async def close(self) -> None:
        """Pool close hook."""
        await self.disconnect()


# ═══════════════════════════════════════════════════════════════
#  Configuration store port
# ═══════════════════════════════════════════════════════════════
class ServiceConfigStore(ABC):
    """Read-mostly source of ``ServiceConfig`` records."""

    @abstractmethod
    async def list_providers(self, capability: Capability | None = None) -> list[ServiceConfig]: ...

    @abstractmethod
    async def get_provider(self, provider_id: str) -> ServiceConfig | None: ...

    @abstractmethod
    async def save_provider(self, config: ServiceConfig) -> None:
        """Insert or replace the record keyed by ``provider_id``."""
        ...


# ═══════════════════════════════════════════════════════════════
#  Statistics sink port
# ═══════════════════════════════════════════════════════════════
class ProviderStatsSink(ABC):
    """Receives a snapshot of ``ProviderStats`` after every attempt."""

    @abstractmethod
    async def push(self, stats: ProviderStats) -> None: ...

    async def load_all(self) -> list[ProviderStats]:
        """Previously persisted snapshots (empty if the sink is write-only)."""
        return []
