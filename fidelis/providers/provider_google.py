from __future__ import annotations

from dataclasses import dataclass
from urllib.parse import quote

from fidelis.harness.errors import ProviderError
from fidelis.providers import http

GOOGLE_BASE_URL = "https://generativelanguage.googleapis.com/v1beta/models"


@dataclass(slots=True)
class GoogleProvider:
    api_key: str | None
    timeout_sec: float = 30.0

    @property
    def name(self) -> str:
        return "google"

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
            raise ProviderError("google: missing api key")
        url = f"{GOOGLE_BASE_URL}/{quote(model, safe='')}:generateContent?key={self.api_key}"
        text = http.require_prompt(prompt)
        if system_prompt:
            text = f"System: {system_prompt}\n\nUser: {text}"
        payload = {
            "contents": [{"parts": [{"text": text}]}],
            "generationConfig": {"temperature": temperature, "maxOutputTokens": max_tokens},
        }
        data = await http.post_json(url, payload=payload, headers={"Content-Type": "application/json"}, timeout_sec=self.timeout_sec)
        parts: list[str] = []
        for candidate in data.get("candidates", []):
            for part in (candidate.get("content") or {}).get("parts", []):
                parts.append(part.get("text", ""))
        return "".join(parts)
