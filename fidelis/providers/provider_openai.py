from __future__ import annotations

from dataclasses import dataclass

from fidelis.harness.errors import ProviderError
from fidelis.providers import http

OPENAI_BASE_URL = "https://api.openai.com/v1"
TOGETHER_BASE_URL = "https://api.together.xyz/v1"
MISTRAL_BASE_URL = "https://api.mistral.ai/v1"

DEFAULT_SYSTEM_PROMPT = "You are a helpful assistant."


@dataclass(slots=True)
class OpenAIProvider:
    """Chat-completions provider; Together and Mistral speak the same wire format."""

    api_key: str | None
    base_url: str = OPENAI_BASE_URL
    provider_name: str = "openai"
    organization: str | None = None
    project: str | None = None
    timeout_sec: float = 30.0

    @property
    def name(self) -> str:
        return self.provider_name

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
            raise ProviderError(f"{self.name}: missing api key")
        headers = {"Authorization": f"Bearer {self.api_key}", "Content-Type": "application/json"}
        if self.organization:
            headers["OpenAI-Organization"] = self.organization
        if self.project:
            headers["OpenAI-Project"] = self.project
        payload: dict[str, object] = {
            "model": model,
            "messages": [
                {"role": "system", "content": system_prompt or DEFAULT_SYSTEM_PROMPT},
                {"role": "user", "content": http.require_prompt(prompt)},
            ],
            "temperature": temperature,
            "max_tokens": max_tokens,
        }
        if self.provider_name == "together":
            payload["stream"] = False
        data = await http.post_json(
            f"{self.base_url.rstrip('/')}/chat/completions",
            payload=payload,
            headers=headers,
            timeout_sec=self.timeout_sec,
        )
        choices = data.get("choices") or []
        if not choices:
            return ""
        message = choices[0].get("message") or {}
        return str(message.get("content") or "")
