"""Vendor service clients and the registry that builds them by provider type."""

from __future__ import annotations

from typing import Callable

import httpx

from provider_broker.adapters.outbound.clients.base import HttpServiceClient
from provider_broker.adapters.outbound.clients.brave_search import BraveSearchClient
from provider_broker.adapters.outbound.clients.gemini import GeminiClient
from provider_broker.adapters.outbound.clients.github import GitHubClient
from provider_broker.adapters.outbound.clients.openai import OpenAIClient
from provider_broker.adapters.outbound.clients.slack import SlackClient
from provider_broker.domain.entities import ServiceConfig
from provider_broker.domain.exceptions import ConfigurationError
from provider_broker.ports.outbound import ServiceClient

ClientBuilder = Callable[[], ServiceClient]

BUILTIN_CLIENTS: tuple[type[HttpServiceClient], ...] = (
    BraveSearchClient,
    GitHubClient,
    SlackClient,
    OpenAIClient,
    GeminiClient,
)


class ClientRegistry:
    """Maps ``ServiceConfig.provider_type`` to a client builder."""

    def __init__(self) -> None:
        self._builders: dict[str, ClientBuilder] = {}

    def register(self, provider_type: str, builder: ClientBuilder) -> None:
        self._builders[provider_type] = builder

    def create(self, config: ServiceConfig) -> ServiceClient:
        """New, unconnected client for ``config``."""
        builder = self._builders.get(config.provider_type)
        if builder is None:
            raise ConfigurationError(
                f"Unknown provider type {config.provider_type!r} for {config.provider_id!r}",
                code="UNKNOWN_PROVIDER_TYPE",
            )
        return builder()

    def types(self) -> list[str]:
        return sorted(self._builders)

    def __contains__(self, provider_type: object) -> bool:
        return provider_type in self._builders


def default_registry(*, transport: httpx.AsyncBaseTransport | None = None) -> ClientRegistry:
    """Registry with every built-in vendor client; ``transport`` is for tests."""
    registry = ClientRegistry()
    for cls in BUILTIN_CLIENTS:
        registry.register(cls.provider_type, lambda cls=cls: cls(transport=transport))
    return registry


__all__ = [
    "BUILTIN_CLIENTS",
    "BraveSearchClient",
    "ClientRegistry",
    "GeminiClient",
    "GitHubClient",
    "HttpServiceClient",
    "OpenAIClient",
    "SlackClient",
    "default_registry",
]
