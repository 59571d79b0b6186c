"""In-memory store and sink, plus the JSON seed loader."""

from __future__ import annotations

import dataclasses
from pathlib import Path
from typing import Any, Iterable

import orjson
import structlog

from provider_broker.domain.entities import ProviderStats, ServiceConfig
from provider_broker.domain.enums import Capability
from provider_broker.domain.exceptions import ConfigurationError
from provider_broker.ports.outbound import ProviderStatsSink, ServiceConfigStore

logger = structlog.get_logger(__name__)

_CONFIG_FIELDS = frozenset(f.name for f in dataclasses.fields(ServiceConfig))


def config_from_record(record: dict[str, Any]) -> ServiceConfig:
    """Build a ``ServiceConfig`` from a JSON-ish record.

    Raises:
        ConfigurationError: missing or unknown keys, or bad enum values.
    """
    unknown = set(record) - _CONFIG_FIELDS
    if unknown:
        raise ConfigurationError(f"Unknown provider fields: {', '.join(sorted(unknown))}")
    try:
        return ServiceConfig(**record)
    except (TypeError, ValueError) as exc:
        raise ConfigurationError(f"Invalid provider record: {exc}") from exc


def load_seed_file(path: str | Path) -> list[ServiceConfig]:
    """Read a JSON list of provider records."""
    try:
        raw = orjson.loads(Path(path).read_bytes())
    except (OSError, orjson.JSONDecodeError) as exc:
        raise ConfigurationError(f"Cannot read providers file {str(path)!r}: {exc}") from exc
    if not isinstance(raw, list):
        raise ConfigurationError("Providers file must contain a JSON list")
    return [config_from_record(item) for item in raw]


class InMemoryServiceConfigStore(ServiceConfigStore):
    def __init__(self, configs: Iterable[ServiceConfig] = ()) -> None:
        self._configs: dict[str, ServiceConfig] = {c.provider_id: c for c in configs}

    @classmethod
    def from_json_file(cls, path: str | Path) -> InMemoryServiceConfigStore:
        configs = load_seed_file(path)
        logger.info("providers_loaded", source=str(path), count=len(configs))
        return cls(configs)

    async def list_providers(self, capability: Capability | None = None) -> list[ServiceConfig]:
        return [c for c in self._configs.values() if capability is None or c.capability == capability]

    async def get_provider(self, provider_id: str) -> ServiceConfig | None:
        return self._configs.get(provider_id)

    async def save_provider(self, config: ServiceConfig) -> None:
        self._configs[config.provider_id] = config


class InMemoryStatsSink(ProviderStatsSink):
    """Keeps the latest snapshot per provider (tests, single-process deployments)."""

    def __init__(self) -> None:
        self.snapshots: dict[str, ProviderStats] = {}
        self.pushes = 0

    async def push(self, stats: ProviderStats) -> None:
        self.snapshots[stats.provider_id] = stats.copy()
        self.pushes += 1

    async def load_all(self) -> list[ProviderStats]:
        return [s.copy() for s in self.snapshots.values()]
