from __future__ import annotations

from typing import TYPE_CHECKING

from fidelis.harness.errors import ProviderError

if TYPE_CHECKING:
    from fidelis.config import FidelisSettings
    from fidelis.harness.interfaces import CompletionProvider

PROVIDER_ORDER = ("together", "openai", "anthropic", "google", "mistral")
DEFAULT_PROVIDER = "together"

DEFAULT_MODELS = {
    "together": "google/gemma-3n-e4b-it",
    "openai": "gpt-4o-mini",
    "anthropic": "claude-3-5-haiku-latest",
    "google": "gemini-1.5-flash",
    "mistral": "mistral-small-latest",
}


def resolve_provider(preference: str | None, settings: "FidelisSettings") -> str:
    """Map a provider preference to a concrete provider name.

    "auto" picks the first provider in PROVIDER_ORDER that has a key configured,
    falling back to together when none has.
    """
    value = (preference or "auto").strip().lower()
    if value == "auto":
        for name in PROVIDER_ORDER:
            if settings.api_key_for(name):
                return name
        return DEFAULT_PROVIDER
    if value not in DEFAULT_MODELS:
        raise ValueError(f"unsupported provider: {preference}")
    return value


def default_model_for_provider(provider: str) -> str:
    return DEFAULT_MODELS.get(provider.strip().lower(), DEFAULT_MODELS[DEFAULT_PROVIDER])


def provider_from_settings(settings: "FidelisSettings", name: str) -> "CompletionProvider":
    # provider modules import httpx lazily, only when a run needs one
    from fidelis.providers.provider_anthropic import AnthropicProvider  # noqa: PLC0415
    from fidelis.providers.provider_google import GoogleProvider  # noqa: PLC0415
    from fidelis.providers.provider_openai import (  # noqa: PLC0415
        MISTRAL_BASE_URL,
        OPENAI_BASE_URL,
        TOGETHER_BASE_URL,
        OpenAIProvider,
    )

    resolved = resolve_provider(name, settings)
    api_key = settings.api_key_for(resolved)
    timeout = settings.request_timeout_sec
    providers: dict[str, object] = {
        "together": OpenAIProvider(api_key, base_url=TOGETHER_BASE_URL, provider_name="together", timeout_sec=timeout),
        "mistral": OpenAIProvider(api_key, base_url=MISTRAL_BASE_URL, provider_name="mistral", timeout_sec=timeout),
        "openai": OpenAIProvider(
            api_key,
            base_url=OPENAI_BASE_URL,
            provider_name="openai",
            organization=settings.openai_organization,
            project=settings.openai_project,
            timeout_sec=timeout,
        ),
        "anthropic": AnthropicProvider(api_key, timeout_sec=timeout),
        "google": GoogleProvider(api_key, timeout_sec=timeout),
    }
    provider = providers[resolved]
    if not getattr(provider, "is_configured")():
        raise ProviderError(f"{resolved}: missing api key")
    return provider  # type: ignore[return-value]
