"""Brave Search web API client (capability: search)."""

from __future__ import annotations

from typing import Any

from pydantic import Field

from provider_broker.adapters.outbound.clients.base import Credentials, HttpServiceClient
from provider_broker.domain.enums import ActionType


class BraveCredentials(Credentials):
    api_key: str = Field(min_length=1, alias="apiKey")


class BraveSearchClient(HttpServiceClient):
    provider_type = "brave_search"
    default_base_url = "https://api.search.brave.com/res/v1"
    credentials_model = BraveCredentials
    supported_actions = frozenset({ActionType.QUERY, ActionType.PROCESS})

    def _auth_headers(self, credentials: BraveCredentials) -> dict[str, str]:
        return {"Accept": "application/json", "X-Subscription-Token": credentials.api_key}

    async def _health_check(self) -> None:
        await self._request("GET", "/web/search", params={"q": "health", "count": 1})

    async def _execute_action(self, action: ActionType, input: dict[str, Any]) -> Any:
        if action is ActionType.QUERY:
            return await self._search(input["query"], input.get("options") or {})
        return self._process_results(input)

    async def _search(self, query: str, options: dict[str, Any]) -> Any:
        params: dict[str, Any] = {"q": query, "count": options.get("count", 10)}
        if options.get("offset"):
            params["offset"] = options["offset"]
        return await self._request("GET", "/web/search", params=params)

    @staticmethod
    def _process_results(results: dict[str, Any]) -> dict[str, Any]:
        """Flatten a raw search response into title/description/url records."""
        web = results.get("web") or {}
        items = web.get("results", []) if isinstance(web, dict) else web
        processed = [
            {
                "title": item.get("title"),
                "description": item.get("description"),
                "url": item.get("url"),
                "language": item.get("language") or "en",
            }
            for item in items
        ]
        return {"processed": processed, "count": len(processed)}
