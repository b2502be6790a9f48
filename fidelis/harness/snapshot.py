from __future__ import annotations

from dataclasses import asdict
from datetime import UTC, datetime
from typing import Any

from fidelis.harness.config import RunConfig
from fidelis.harness.contracts import RunMetrics, RunResult, ScriptProvenance, Trial
from fidelis.harness.metrics import compute_run_metrics

CONTRACT_COMPARATOR = "byte_exact"

SNAPSHOT_FIELDS: tuple[str, ...] = (
    "exported_at",
    "provider",
    "model",
    "temperature",
    "proposer_temperature",
    "max_tokens",
    "script_id",
    "prompt_count",
    "structured_repetitions",
    "execution_mode",
    "contract_mode",
    "contract_comparator",
    "pause_policy",
    "guardian_enabled",
    "script_provenance",
    "run_status",
    "abort",
    "metrics",
    "trials",
)


def pause_policy(config: RunConfig) -> str:
    if not config.assisted_enabled:
        return "record_only"
    if config.structured:
        return f"local_gate_retry_up_to_{config.retry_cap}"
    return f"constraint_then_retry_up_to_{config.retry_cap}"


def trial_record(trial: Trial) -> dict[str, Any]:
    record = asdict(trial)
    for key in ("initial_gate_state", "final_gate_state", "initial_taxonomy", "taxonomy"):
        value = record.get(key)
        record[key] = value.value if value is not None else None
    if record["telemetry"] is not None:
        record["telemetry"]["grounding_markers"] = list(record["telemetry"]["grounding_markers"])
    return record


def metrics_record(metrics: RunMetrics) -> dict[str, Any]:
    return asdict(metrics)


def build_snapshot(
    config: RunConfig,
    result: RunResult,
    *,
    provenance: ScriptProvenance | None = None,
    exported_at: datetime | None = None,
) -> dict[str, Any]:
    metrics = compute_run_metrics(result.trials, config)
    if config.structured:
        prompt_count = str(config.effective_repetitions)
    else:
        prompt_count = str(config.prompt_limit) if config.prompt_limit > 0 else "all"
    return {
        "exported_at": (exported_at or datetime.now(tz=UTC)).isoformat(),
        "provider": config.provider,
        "model": config.model,
        "temperature": config.temperature,
        "proposer_temperature": config.proposer_temperature,
        "max_tokens": config.max_tokens,
        "script_id": config.script_id,
        "prompt_count": prompt_count,
        "structured_repetitions": config.effective_repetitions if config.structured else None,
        "execution_mode": config.execution_mode.value,
        "contract_mode": config.contract_mode.value,
        "contract_comparator": CONTRACT_COMPARATOR,
        "pause_policy": pause_policy(config),
        "guardian_enabled": config.guardian_enabled,
        "script_provenance": asdict(provenance) if provenance is not None else None,
        "run_status": result.status.value,
        "abort": asdict(result.abort) if result.abort is not None else None,
        "metrics": metrics_record(metrics),
        "trials": [trial_record(trial) for trial in result.trials],
    }
