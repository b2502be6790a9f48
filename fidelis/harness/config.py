from __future__ import annotations

from dataclasses import dataclass, replace
from typing import Any

from fidelis.config import FidelisSettings
from fidelis.harness.cli import parse_execution_mode
from fidelis.harness.contracts import ContractMode, ExecutionMode

STRUCTURED_MIN_REPETITIONS = 4
STRUCTURED_MAX_REPETITIONS = 10_000
# observer trial ids are trial_index * 10 + retry
MAX_RETRY_CAP = 9


@dataclass(frozen=True)
class RunConfig:
    execution_mode: ExecutionMode = ExecutionMode.PASSIVE
    retry_cap: int = 2
    contract_mode: ContractMode = ContractMode.LITERAL
    provider: str = "together"
    model: str = ""
    temperature: float = 0.7
    max_tokens: int = 512
    proposer_temperature: float = 0.2
    system_prompt: str = "You are a helpful assistant."
    guardian_enabled: bool = True
    pacing_sec: float = 2.0
    script_id: str = ""
    prompt_limit: int = 0
    structured_repetitions: int = 100

    def __post_init__(self) -> None:
        if not 0 <= self.retry_cap <= MAX_RETRY_CAP:
            raise ValueError(f"retry_cap must be between 0 and {MAX_RETRY_CAP}")
        if self.max_tokens <= 0:
            raise ValueError("max_tokens must be > 0")
        if self.pacing_sec < 0:
            raise ValueError("pacing_sec must be >= 0")

    @property
    def assisted_enabled(self) -> bool:
        return self.execution_mode == ExecutionMode.ASSISTED

    @property
    def structured(self) -> bool:
        return self.contract_mode == ContractMode.STRUCTURED

    @property
    def effective_repetitions(self) -> int:
        return clamp_repetitions(self.structured_repetitions)

    def with_overrides(self, **overrides: Any) -> "RunConfig":
        cleaned = {key: value for key, value in overrides.items() if value is not None}
        return replace(self, **cleaned)


def clamp_repetitions(value: int) -> int:
    return max(STRUCTURED_MIN_REPETITIONS, min(STRUCTURED_MAX_REPETITIONS, int(value)))


def run_config_from_settings(settings: FidelisSettings, **overrides: Any) -> RunConfig:
    from fidelis.providers.registry import default_model_for_provider, resolve_provider  # noqa: PLC0415

    provider = resolve_provider(overrides.pop("provider", None) or settings.provider, settings)
    model = (overrides.pop("model", None) or settings.model or "").strip() or default_model_for_provider(provider)
    base = RunConfig(
        execution_mode=parse_execution_mode(settings.execution_mode),
        retry_cap=settings.retry_cap,
        provider=provider,
        model=model,
        temperature=settings.temperature,
        max_tokens=settings.max_tokens,
        proposer_temperature=settings.proposer_temperature,
        system_prompt=settings.system_prompt,
        guardian_enabled=settings.guardian_enabled,
        pacing_sec=settings.pacing_sec,
        structured_repetitions=settings.structured_repetitions,
    )
    return base.with_overrides(**overrides)
