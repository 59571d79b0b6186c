"""GitHub REST v3 client (capability: code)."""

from __future__ import annotations

from typing import Any

from pydantic import Field

from provider_broker.adapters.outbound.clients.base import Credentials, HttpServiceClient
from provider_broker.domain.enums import ActionType


class GitHubCredentials(Credentials):
    token: str = Field(min_length=1)


class GitHubClient(HttpServiceClient):
    provider_type = "github"
    default_base_url = "https://api.github.com"
    credentials_model = GitHubCredentials
    supported_actions = frozenset({ActionType.QUERY, ActionType.CREATE, ActionType.SYNC})

    def _auth_headers(self, credentials: GitHubCredentials) -> dict[str, str]:
        return {
            "Authorization": f"Bearer {credentials.token}",
            "Accept": "application/vnd.github.v3+json",
        }

    async def _health_check(self) -> None:
        await self._request("GET", "/user")

    async def _execute_action(self, action: ActionType, input: dict[str, Any]) -> Any:
        options = input.get("options") or {}
        if action is ActionType.QUERY:
            return await self._request(
                "GET",
                "/search/repositories",
                params={
                    "q": input["query"],
                    "per_page": options.get("per_page", 10),
                    "page": options.get("page", 1),
                },
            )
        if action is ActionType.CREATE:
            return await self._request(
                "POST",
                "/gists",
                json={
                    "description": options.get("description", "Created by provider-broker"),
                    "public": options.get("public", False),
                    "files": input["content"],
                },
            )
        path = input.get("path", "")
        return await self._request("GET", f"/repos/{input['owner']}/{input['repo']}/contents/{path}")
