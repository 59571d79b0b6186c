"""OpenAI-compatible chat completions client (capabilities: ai, ocr).

``process`` sends a prompt; ``extract`` sends an image and returns the text
the model reads from it.  Any OpenAI-compatible gateway works by pointing
``endpoint`` at it; the model comes from ``extra["model"]``.
"""

from __future__ import annotations

from typing import Any

from pydantic import Field

from provider_broker.adapters.outbound.clients.base import Credentials, HttpServiceClient
from provider_broker.domain.enums import ActionType

DEFAULT_EXTRACT_PROMPT = "Extract all text from this image. Return only the text."


class OpenAICredentials(Credentials):
    api_key: str = Field(min_length=1, alias="apiKey")


class OpenAIClient(HttpServiceClient):
    provider_type = "openai"
    default_base_url = "https://api.openai.com/v1"
    credentials_model = OpenAICredentials
    supported_actions = frozenset({ActionType.PROCESS, ActionType.EXTRACT})

    def _auth_headers(self, credentials: OpenAICredentials) -> dict[str, str]:
        return {"Authorization": f"Bearer {credentials.api_key}"}

    async def _health_check(self) -> None:
        await self._request("GET", "/models")

    async def _execute_action(self, action: ActionType, input: dict[str, Any]) -> Any:
        messages: list[dict[str, Any]] = []
        if input.get("system"):
            messages.append({"role": "system", "content": input["system"]})

        if action is ActionType.EXTRACT:
            if input.get("image_url"):
                url = input["image_url"]
            else:
                mime = input.get("mime_type", "image/png")
                url = f"data:{mime};base64,{input['image_base64']}"
            messages.append(
                {
                    "role": "user",
                    "content": [
                        {"type": "text", "text": input.get("prompt") or DEFAULT_EXTRACT_PROMPT},
                        {"type": "image_url", "image_url": {"url": url}},
                    ],
                }
            )
        else:
            messages.append({"role": "user", "content": input["prompt"]})

        data = await self._request(
            "POST",
            "/chat/completions",
            json={
                "model": self._extra("model", "gpt-4o-mini"),
                "messages": messages,
                "temperature": input.get("temperature", 0.0),
                "max_tokens": input.get("max_tokens", 4096),
            },
        )
        return {
            "text": data["choices"][0]["message"]["content"],
            "model": data.get("model"),
            "usage": data.get("usage", {}),
        }
