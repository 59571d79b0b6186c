"""Google Gemini ``generateContent`` client (capabilities: ai, ocr)."""

from __future__ import annotations

from typing import Any

from pydantic import Field

from provider_broker.adapters.outbound.clients.base import Credentials, HttpServiceClient
from provider_broker.adapters.outbound.clients.openai import DEFAULT_EXTRACT_PROMPT
from provider_broker.domain.enums import ActionType


class GeminiCredentials(Credentials):
    api_key: str = Field(min_length=1, alias="apiKey")


class GeminiClient(HttpServiceClient):
    provider_type = "gemini"
    default_base_url = "https://generativelanguage.googleapis.com/v1beta"
    credentials_model = GeminiCredentials
    supported_actions = frozenset({ActionType.PROCESS, ActionType.EXTRACT})

    def _auth_headers(self, credentials: GeminiCredentials) -> dict[str, str]:
        return {"x-goog-api-key": credentials.api_key}

    async def _health_check(self) -> None:
        await self._request("GET", "/models", params={"pageSize": 1})

    async def _execute_action(self, action: ActionType, input: dict[str, Any]) -> Any:
        if action is ActionType.EXTRACT:
            parts: list[dict[str, Any]] = [
                {"text": input.get("prompt") or DEFAULT_EXTRACT_PROMPT},
                {
                    "inline_data": {
                        "mime_type": input.get("mime_type", "image/png"),
                        "data": input["image_base64"],
                    }
                },
            ]
        else:
            parts = [{"text": input["prompt"]}]

        body: dict[str, Any] = {
            "contents": [{"parts": parts}],
            "generationConfig": {
                "temperature": input.get("temperature", 0.0),
                "maxOutputTokens": input.get("max_tokens", 4096),
            },
        }
        if input.get("system"):
            body["system_instruction"] = {"parts": [{"text": input["system"]}]}

        model = self._extra("model", "gemini-2.0-flash")
        data = await self._request("POST", f"/models/{model}:generateContent", json=body)
        text = (
            data.get("candidates", [{}])[0]
            .get("content", {})
            .get("parts", [{}])[0]
            .get("text", "")
        )
        return {"text": text, "model": model, "usage": data.get("usageMetadata", {})}
