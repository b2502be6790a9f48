from __future__ import annotations

from dataclasses import dataclass, field
from enum import StrEnum
from typing import Any


class GateState(StrEnum):
    CONTINUE = "CONTINUE"
    PAUSE = "PAUSE"
    YIELD = "YIELD"


class MismatchKind(StrEnum):
    EXACT = "exact"
    FORMATTING_ONLY = "formattingOnly"
    SEMANTIC_HARD_FAILURE = "semanticHardFailure"


class Taxonomy(StrEnum):
    EXACT_MATCH = "EXACT_MATCH"
    FORMAT_ONLY_DRIFT = "FORMAT_ONLY_DRIFT"
    SCHEMA_VIOLATION = "SCHEMA_VIOLATION"
    SEMANTIC_HARD_FAILURE = "SEMANTIC_HARD_FAILURE"
    NON_JSON_OUTPUT = "NON_JSON_OUTPUT"


class ExecutionMode(StrEnum):
    PASSIVE = "passive"
    ASSISTED = "assisted"


class ContractMode(StrEnum):
    LITERAL = "literal"
    STRUCTURED = "structured"


class RunStatus(StrEnum):
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    ABORTED = "aborted"


CONSTRAINT_SOURCE_ASSISTED = "assisted_constraint_proposal"

_PROMPT_KEYS = {"id", "prompt", "expected_literal", "expected_label", "category", "expected_behavior"}


@dataclass(slots=True, frozen=True)
class Prompt:
    text: str
    id: int | str | None = None
    expected_literal: Any = None
    expected_label: Any = None
    category: str | None = None
    expected_behavior: str | None = None
    extra: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_record(cls, record: dict[str, Any]) -> "Prompt":
        text = record.get("prompt")
        if not isinstance(text, str):
            raise ValueError("record has no string 'prompt' field")
        category = record.get("category")
        behavior = record.get("expected_behavior")
        return cls(
            text=text,
            id=record.get("id"),
            expected_literal=record.get("expected_literal"),
            expected_label=record.get("expected_label"),
            category=category if isinstance(category, str) else None,
            expected_behavior=behavior if isinstance(behavior, str) else None,
            extra={k: v for k, v in record.items() if k not in _PROMPT_KEYS},
        )


@dataclass(slots=True, frozen=True)
class Contract:
    expected_literal: str | None = None
    expected_label: str | None = None
    structured: bool = False

    @property
    def defined(self) -> bool:
        return self.expected_literal is not None


@dataclass(slots=True, frozen=True)
class Telemetry:
    authority_trend: str
    revision_mode: str
    grounding_markers: tuple[Any, ...] = ()
    temporal_resistance_detected: bool = False
    trajectory_state: str = ""


@dataclass(slots=True, frozen=True)
class Observation:
    recommendation: str
    telemetry: Telemetry | None
    reason_codes: tuple[str, ...] = ()


@dataclass(slots=True, frozen=True)
class GateDecision:
    final_gate_state: GateState
    reason_codes: tuple[str, ...] = ()
    raw_decision: str = ""


@dataclass(slots=True, frozen=True)
class StructuredEvaluation:
    taxonomy: Taxonomy
    raw_match: bool
    parse_valid: bool
    schema_valid: bool
    key_order_valid: bool
    semantic_hard_failure: bool
    parsed_label: str | None = None


@dataclass(slots=True, frozen=True)
class TrialContext:
    trial_index: int
    prompt: str
    output: str
    expected_literal: str | None
    exact_match: bool | None


@dataclass(slots=True, frozen=True)
class Trial:
    trial_index: int
    trial_id: str
    prompt: str
    initial_output: str
    final_output: str
    initial_gate_state: GateState
    final_gate_state: GateState
    retry_count_used: int = 0
    correction_succeeded: bool = False
    constraint_applied: bool = False
    constraint_count: int = 0
    constraint_source: str | None = None
    telemetry: Telemetry | None = None
    expected_literal: str | None = None
    expected_label: str | None = None
    initial_exact_match: bool | None = None
    final_exact_match: bool | None = None
    initial_taxonomy: Taxonomy | None = None
    taxonomy: Taxonomy | None = None
    raw_match: bool | None = None
    parse_valid: bool | None = None
    schema_valid: bool | None = None
    key_order_valid: bool | None = None
    semantic_hard_failure: bool | None = None

    def __post_init__(self) -> None:
        if self.retry_count_used < 0:
            raise ValueError("retry_count_used must be >= 0")
        if self.correction_succeeded and (self.retry_count_used <= 0 or self.final_exact_match is not True):
            raise ValueError("correction_succeeded requires a retry and a final exact match")

    @property
    def has_contract(self) -> bool:
        return self.final_exact_match is not None


@dataclass(slots=True, frozen=True)
class RunMetrics:
    trials: int
    pauses: int
    initial_pauses: int
    retries_used_total: int
    retries_used_average: float | None
    initial_failure_count: int
    initial_failure_rate: float | None
    correction_success_count: int
    correction_success_rate: float | None
    final_residual_failure_count: int
    final_residual_failure_rate: float | None
    baseline_hard_semantic_failure_count: int
    baseline_hard_semantic_failure_rate: float | None
    assisted_retry_cap: int
    assisted_enabled: bool
    constraints: int
    observations: int
    raw_byte_mismatch_count: int
    raw_byte_mismatch_rate: float | None
    trimmed_semantic_mismatch_count: int
    trimmed_semantic_mismatch_rate: float | None
    format_only_mismatch_count: int
    format_only_mismatch_rate: float | None
    taxonomy_counts: dict[str, int]
    exact_match_rate: float | None
    schema_violation_rate: float | None
    semantic_hard_failure_rate: float | None
    non_json_output_rate: float | None
    semantic_failure_ci95: str
    primary_safety_metric: str


@dataclass(slots=True, frozen=True)
class RunAbort:
    trial_index: int
    error_kind: str
    message: str


@dataclass(slots=True, frozen=True)
class RunResult:
    status: RunStatus
    trials: tuple[Trial, ...]
    pause_count: int
    constraint_count: int
    abort: RunAbort | None = None


@dataclass(slots=True, frozen=True)
class ScriptProvenance:
    script_id: str
    script_label: str
    script_path: str
    script_sha256: str | None = None
    script_line_count: int | None = None
