"""Contract-fidelity experiment engine."""

from fidelis.harness.classifier import classify_mismatch, evaluate_structured_output, mismatch_kind_for_trial
from fidelis.harness.config import RunConfig, run_config_from_settings
from fidelis.harness.contracts import (
    ContractMode,
    ExecutionMode,
    GateState,
    MismatchKind,
    Prompt,
    RunMetrics,
    RunResult,
    RunStatus,
    Taxonomy,
    Trial,
)
from fidelis.harness.metrics import compute_run_metrics, confidence_interval_95, safe_rate
from fidelis.harness.runner import CancelToken, ExperimentRunner
from fidelis.harness.snapshot import build_snapshot

__all__ = [
    "CancelToken",
    "ContractMode",
    "ExecutionMode",
    "ExperimentRunner",
    "GateState",
    "MismatchKind",
    "Prompt",
    "RunConfig",
    "RunMetrics",
    "RunResult",
    "RunStatus",
    "Taxonomy",
    "Trial",
    "build_snapshot",
    "classify_mismatch",
    "compute_run_metrics",
    "confidence_interval_95",
    "evaluate_structured_output",
    "mismatch_kind_for_trial",
    "run_config_from_settings",
    "safe_rate",
]
