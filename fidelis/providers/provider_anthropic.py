from __future__ import annotations

from dataclasses import dataclass

from fidelis.harness.errors import ProviderError
from fidelis.providers import http

ANTHROPIC_MESSAGES_URL = "https://api.anthropic.com/v1/messages"


@dataclass(slots=True)
class AnthropicProvider:
    api_key: str | None
    timeout_sec: float = 30.0

    @property
    def name(self) -> str:
        return "anthropic"

    def is_configured(self) -> bool:
        return bool(self.api_key)

    async def request(
        self,
        model: str,
        prompt: str,
        system_prompt: str | None = None,
        temperature: float = 0.7,
        max_tokens: int = 512,
    ) -> str:
        if not self.api_key:
            raise ProviderError("anthropic: missing api key")
        headers = {
            "x-api-key": self.api_key,
            "anthropic-version": "2023-06-01",
            "content-type": "application/json",
        }
        payload: dict[str, object] = {
            "model": model,
            "max_tokens": max_tokens,
            "temperature": temperature,
            "messages": [{"role": "user", "content": http.require_prompt(prompt)}],
        }
        if system_prompt:
            payload["system"] = system_prompt
        data = await http.post_json(ANTHROPIC_MESSAGES_URL, payload=payload, headers=headers, timeout_sec=self.timeout_sec)
        text = ""
        for block in data.get("content", []):
            if block.get("type", "text") == "text":
                text += block.get("text", "")
        return text
