"""Slack Web API client (capability: chat).

Slack answers HTTP 200 with ``{"ok": false, "error": ...}`` for API-level
failures; those are surfaced as provider errors, retryable only for
``ratelimited``.
"""

from __future__ import annotations

from typing import Any

from pydantic import Field

from provider_broker.adapters.outbound.clients.base import Credentials, HttpServiceClient
from provider_broker.domain.enums import ActionType
from provider_broker.domain.exceptions import ProviderError

_RETRYABLE_SLACK_ERRORS = frozenset({"ratelimited", "internal_error", "service_unavailable"})


class SlackCredentials(Credentials):
    bot_token: str = Field(min_length=1, alias="botToken")


class SlackClient(HttpServiceClient):
    provider_type = "slack"
    default_base_url = "https://slack.com/api"
    credentials_model = SlackCredentials
    supported_actions = frozenset({ActionType.NOTIFY, ActionType.QUERY, ActionType.CREATE})

    def _auth_headers(self, credentials: SlackCredentials) -> dict[str, str]:
        return {"Authorization": f"Bearer {credentials.bot_token}"}

    async def _health_check(self) -> None:
        await self._call("POST", "/auth.test")

    async def _execute_action(self, action: ActionType, input: dict[str, Any]) -> Any:
        options = input.get("options") or {}
        if action is ActionType.NOTIFY:
            body: dict[str, Any] = {"channel": input["channel"], "text": input["text"]}
            if options.get("blocks"):
                body["blocks"] = options["blocks"]
            if options.get("thread_ts"):
                body["thread_ts"] = options["thread_ts"]
            return await self._call("POST", "/chat.postMessage", json=body)
        if action is ActionType.QUERY:
            return await self._call(
                "GET",
                "/search.messages",
                params={
                    "query": input["query"],
                    "count": options.get("count", 20),
                    "sort": options.get("sort", "timestamp"),
                },
            )
        return await self._call(
            "POST",
            "/conversations.create",
            json={"name": input["name"], "is_private": options.get("is_private", False)},
        )

    async def _call(self, method: str, url: str, **kwargs: Any) -> dict[str, Any]:
        data = await self._request(method, url, **kwargs) or {}
        if not data.get("ok"):
            error = data.get("error", "unknown_error")
            raise ProviderError(
                self.provider_id,
                f"Slack API error: {error}",
                retryable=error in _RETRYABLE_SLACK_ERRORS,
                code="SLACK_API_ERROR",
            )
        return data
