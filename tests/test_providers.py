from __future__ import annotations

from typing import Any

import httpx
import pytest

import fidelis.providers.http as http_mod
from fidelis.config import FidelisSettings
from fidelis.harness.errors import ProviderError
from fidelis.providers.provider_anthropic import AnthropicProvider
from fidelis.providers.provider_google import GoogleProvider
from fidelis.providers.provider_openai import MISTRAL_BASE_URL, TOGETHER_BASE_URL, OpenAIProvider
from fidelis.providers.registry import provider_from_settings


class _Recorder:
    def __init__(self, response: dict[str, Any]) -> None:
        self.response = response
        self.calls: list[dict[str, Any]] = []

    async def __call__(self, url: str, **kwargs: Any) -> dict[str, Any]:
        self.calls.append({"url": url, **kwargs})
        return self.response


@pytest.mark.asyncio
async def test_openai_provider_builds_chat_request(monkeypatch: pytest.MonkeyPatch) -> None:
    recorder = _Recorder({"choices": [{"message": {"content": "42"}}]})
    monkeypatch.setattr(http_mod, "post_json", recorder)
    provider = OpenAIProvider("sk-test", organization="org-1", project="proj-1", timeout_sec=5.0)

    text = await provider.request("gpt-4o-mini", "What is 6*7?", system_prompt="Be terse.", temperature=0.1, max_tokens=8)

    assert text == "42"
    call = recorder.calls[0]
    assert call["url"] == "https://api.openai.com/v1/chat/completions"
    assert call["headers"]["Authorization"] == "Bearer sk-test"
    assert call["headers"]["OpenAI-Organization"] == "org-1"
    assert call["headers"]["OpenAI-Project"] == "proj-1"
    assert call["payload"]["messages"] == [
        {"role": "system", "content": "Be terse."},
        {"role": "user", "content": "What is 6*7?"},
    ]
    assert call["payload"]["max_tokens"] == 8
    assert call["timeout_sec"] == 5.0
    assert "stream" not in call["payload"]


@pytest.mark.asyncio
async def test_together_provider_disables_streaming(monkeypatch: pytest.MonkeyPatch) -> None:
    recorder = _Recorder({"choices": []})
    monkeypatch.setattr(http_mod, "post_json", recorder)
    provider = OpenAIProvider("tg", base_url=TOGETHER_BASE_URL, provider_name="together")

    text = await provider.request("google/gemma-3n-e4b-it", "hi")

    assert text == ""
    assert recorder.calls[0]["url"] == "https://api.together.xyz/v1/chat/completions"
    assert recorder.calls[0]["payload"]["stream"] is False
    assert recorder.calls[0]["payload"]["messages"][0]["content"] == "You are a helpful assistant."


@pytest.mark.asyncio
async def test_anthropic_provider_joins_text_blocks(monkeypatch: pytest.MonkeyPatch) -> None:
    recorder = _Recorder(
        {"content": [{"type": "text", "text": "4"}, {"type": "tool_use", "id": "x"}, {"type": "text", "text": "2"}]}
    )
    monkeypatch.setattr(http_mod, "post_json", recorder)
    provider = AnthropicProvider("sk-ant")

    text = await provider.request("claude-3-5-haiku-latest", "q", system_prompt="sys", max_tokens=16)

    assert text == "42"
    call = recorder.calls[0]
    assert call["url"] == "https://api.anthropic.com/v1/messages"
    assert call["headers"]["x-api-key"] == "sk-ant"
    assert call["headers"]["anthropic-version"] == "2023-06-01"
    assert call["payload"]["system"] == "sys"
    assert call["payload"]["messages"] == [{"role": "user", "content": "q"}]


@pytest.mark.asyncio
async def test_google_provider_inlines_system_prompt(monkeypatch: pytest.MonkeyPatch) -> None:
    recorder = _Recorder({"candidates": [{"content": {"parts": [{"text": "4"}, {"text": "2"}]}}]})
    monkeypatch.setattr(http_mod, "post_json", recorder)
    provider = GoogleProvider("g-key")

    text = await provider.request("gemini-1.5-flash", "q", system_prompt="sys", temperature=0.3, max_tokens=32)

    assert text == "42"
    call = recorder.calls[0]
    assert call["url"] == (
        "https://generativelanguage.googleapis.com/v1beta/models/gemini-1.5-flash:generateContent?key=g-key"
    )
    assert call["payload"]["contents"][0]["parts"][0]["text"] == "System: sys\n\nUser: q"
    assert call["payload"]["generationConfig"] == {"temperature": 0.3, "maxOutputTokens": 32}


@pytest.mark.asyncio
async def test_providers_reject_missing_key_and_empty_prompt(monkeypatch: pytest.MonkeyPatch) -> None:
    recorder = _Recorder({})
    monkeypatch.setattr(http_mod, "post_json", recorder)

    with pytest.raises(ProviderError, match="missing api key"):
        await OpenAIProvider(None).request("m", "q")
    with pytest.raises(ProviderError, match="missing api key"):
        await AnthropicProvider("").request("m", "q")
    with pytest.raises(ProviderError, match="prompt is required"):
        await GoogleProvider("k").request("m", "   ")
    assert not recorder.calls


@pytest.mark.asyncio
async def test_post_json_wraps_http_failures(monkeypatch: pytest.MonkeyPatch) -> None:
    real_client = httpx.AsyncClient

    def handler(request: httpx.Request) -> httpx.Response:
        if request.url.path == "/fail":
            return httpx.Response(429, text="rate limited")
        if request.url.path == "/garbage":
            return httpx.Response(200, text="not json")
        return httpx.Response(200, json={"ok": True})

    monkeypatch.setattr(
        http_mod.httpx,
        "AsyncClient",
        lambda timeout: real_client(timeout=timeout, transport=httpx.MockTransport(handler)),
    )

    assert await http_mod.post_json("http://provider.test/ok", payload={}) == {"ok": True}
    with pytest.raises(ProviderError, match="HTTP 429: rate limited"):
        await http_mod.post_json("http://provider.test/fail", payload={})
    with pytest.raises(ProviderError, match="invalid JSON"):
        await http_mod.post_json("http://provider.test/garbage", payload={})


@pytest.mark.usefixtures("clean_provider_env")
def test_provider_from_settings(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("MISTRAL_API_KEY", "mk")
    monkeypatch.setenv("FIDELIS_REQUEST_TIMEOUT_SEC", "12")
    settings = FidelisSettings(_env_file=None)

    provider = provider_from_settings(settings, "auto")

    assert isinstance(provider, OpenAIProvider)
    assert provider.name == "mistral"
    assert provider.base_url == MISTRAL_BASE_URL
    assert provider.timeout_sec == 12.0

    with pytest.raises(ProviderError, match="openai: missing api key"):
        provider_from_settings(settings, "openai")
