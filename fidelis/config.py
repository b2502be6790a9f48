from __future__ import annotations

import os
from functools import lru_cache
from pathlib import Path

from dotenv import dotenv_values
from pydantic import AliasChoices, BaseModel, Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class GuardianEndpoints(BaseModel):
    core_url: str
    gate_url: str
    endpoint_key: str | None = None


class FidelisSettings(BaseSettings):
    model_config = SettingsConfigDict(
        env_prefix="FIDELIS_",
        case_sensitive=False,
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    log_level: str = Field(default="INFO")
    log_file: str | None = Field(default=None)

    provider: str = Field(default="auto")
    model: str = Field(default="")
    together_api_key: str | None = Field(
        default=None, validation_alias=AliasChoices("FIDELIS_TOGETHER_API_KEY", "TOGETHER_API_KEY")
    )
    openai_api_key: str | None = Field(
        default=None, validation_alias=AliasChoices("FIDELIS_OPENAI_API_KEY", "OPENAI_API_KEY")
    )
    anthropic_api_key: str | None = Field(
        default=None, validation_alias=AliasChoices("FIDELIS_ANTHROPIC_API_KEY", "ANTHROPIC_API_KEY")
    )
    google_api_key: str | None = Field(
        default=None, validation_alias=AliasChoices("FIDELIS_GOOGLE_API_KEY", "GOOGLE_API_KEY")
    )
    mistral_api_key: str | None = Field(
        default=None, validation_alias=AliasChoices("FIDELIS_MISTRAL_API_KEY", "MISTRAL_API_KEY")
    )
    openai_organization: str | None = Field(
        default=None, validation_alias=AliasChoices("FIDELIS_OPENAI_ORGANIZATION", "OPENAI_ORGANIZATION")
    )
    openai_project: str | None = Field(
        default=None, validation_alias=AliasChoices("FIDELIS_OPENAI_PROJECT", "OPENAI_PROJECT")
    )

    temperature: float = Field(default=0.7)
    max_tokens: int = Field(default=512)
    proposer_temperature: float = Field(default=0.2)
    system_prompt: str = Field(default="You are a helpful assistant.")
    request_timeout_sec: float = Field(default=30.0)

    execution_mode: str = Field(default="passive")
    retry_cap: int = Field(default=2, ge=0, le=9)
    pacing_sec: float = Field(default=2.0, ge=0)
    structured_repetitions: int = Field(default=100)

    guardian_enabled: bool = Field(default=True)
    guardian_core_url: str = Field(default="http://127.0.0.1:18101")
    guardian_gate_url: str = Field(default="http://127.0.0.1:18102")
    guardian_endpoint_key: str | None = Field(default=None)

    export_dir: str = Field(default="outputs")

    @property
    def guardian(self) -> GuardianEndpoints:
        return GuardianEndpoints(
            core_url=self.guardian_core_url,
            gate_url=self.guardian_gate_url,
            endpoint_key=(self.guardian_endpoint_key or "").strip() or None,
        )

    def api_key_for(self, provider: str) -> str | None:
        keys = {
            "together": self.together_api_key,
            "openai": self.openai_api_key,
            "anthropic": self.anthropic_api_key,
            "google": self.google_api_key,
            "mistral": self.mistral_api_key,
        }
        value = (keys.get(provider.strip().lower()) or "").strip()
        return value or None


@lru_cache(maxsize=1)
def load_settings() -> FidelisSettings:
    return FidelisSettings()


def refresh_process_env_from_file(
    path: str | Path = ".env",
    prefix: str = "FIDELIS_",
    preserve_existing: bool = False,
) -> bool:
    env_path = Path(path)
    if not env_path.exists():
        return False
    changed = False
    values = dotenv_values(env_path)
    for key, value in values.items():
        if value is None or not key.startswith(prefix):
            continue
        if preserve_existing and key in os.environ:
            continue
        if os.environ.get(key) != value:
            os.environ[key] = value
            changed = True
    return changed
