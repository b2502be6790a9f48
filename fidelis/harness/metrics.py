from __future__ import annotations

import math
from collections import Counter
from collections.abc import Sequence

from fidelis.harness.classifier import initial_mismatch_kind, mismatch_kind_for_trial
from fidelis.harness.config import RunConfig
from fidelis.harness.contracts import GateState, MismatchKind, RunMetrics, Taxonomy, Trial

Z_95 = 1.96


def safe_rate(numerator: int | float, denominator: int | float) -> float | None:
    if denominator <= 0:
        return None
    return numerator / denominator


def percentage_string(value: float | None) -> str:
    if value is None:
        return "N/A"
    return f"{value * 100:.1f}%"


def confidence_interval_95(rate: float | None, trials: int) -> str:
    if rate is None or trials <= 0:
        return "N/A"
    margin = Z_95 * math.sqrt((rate * (1 - rate)) / trials)
    low = max(0.0, rate - margin)
    high = min(1.0, rate + margin)
    return f"[{low * 100:.1f}%, {high * 100:.1f}%]"


def compute_run_metrics(trials: Sequence[Trial], config: RunConfig) -> RunMetrics:
    total = len(trials)
    pauses = sum(1 for trial in trials if trial.final_gate_state == GateState.PAUSE)
    initial_pauses = sum(1 for trial in trials if trial.initial_gate_state == GateState.PAUSE)
    retries_total = sum(trial.retry_count_used for trial in trials)
    constraints = sum(trial.constraint_count for trial in trials)

    initial_evaluated = [trial for trial in trials if trial.initial_exact_match is not None]
    initial_failures = sum(1 for trial in initial_evaluated if trial.initial_exact_match is False)
    corrections = sum(1 for trial in trials if trial.initial_exact_match is False and trial.correction_succeeded)

    taxonomy_trials = [trial for trial in trials if trial.taxonomy is not None]
    taxonomy_counts = Counter(trial.taxonomy.value for trial in taxonomy_trials)
    taxonomy_total = len(taxonomy_trials)

    if config.structured:
        exact = taxonomy_counts[Taxonomy.EXACT_MATCH.value]
        raw_mismatch = taxonomy_total - exact
        denominator = taxonomy_total
        format_only = taxonomy_counts[Taxonomy.FORMAT_ONLY_DRIFT.value]
        semantic = taxonomy_counts[Taxonomy.SEMANTIC_HARD_FAILURE.value]
        baseline_semantic = sum(
            1 for trial in initial_evaluated if trial.initial_taxonomy == Taxonomy.SEMANTIC_HARD_FAILURE
        )
        primary_metric = "semantic_hard_failure_rate"
    else:
        contract_trials = [trial for trial in trials if trial.has_contract]
        final_kinds = [mismatch_kind_for_trial(trial) for trial in contract_trials]
        denominator = len(contract_trials)
        raw_mismatch = sum(1 for trial in contract_trials if not trial.final_exact_match)
        format_only = sum(1 for kind in final_kinds if kind == MismatchKind.FORMATTING_ONLY)
        semantic = sum(1 for kind in final_kinds if kind == MismatchKind.SEMANTIC_HARD_FAILURE)
        baseline_semantic = sum(
            1 for trial in initial_evaluated if initial_mismatch_kind(trial) == MismatchKind.SEMANTIC_HARD_FAILURE
        )
        primary_metric = "trimmed_semantic_mismatch_rate"

    raw_mismatch_rate = safe_rate(raw_mismatch, denominator)
    semantic_rate = safe_rate(semantic, denominator)

    def _taxonomy_rate(taxonomy: Taxonomy) -> float | None:
        if not config.structured:
            return None
        return safe_rate(taxonomy_counts[taxonomy.value], taxonomy_total)

    return RunMetrics(
        trials=total,
        pauses=pauses,
        initial_pauses=initial_pauses,
        retries_used_total=retries_total,
        retries_used_average=safe_rate(retries_total, total),
        initial_failure_count=initial_failures,
        initial_failure_rate=safe_rate(initial_failures, len(initial_evaluated)),
        correction_success_count=corrections if config.assisted_enabled else 0,
        correction_success_rate=safe_rate(corrections, initial_failures) if config.assisted_enabled else None,
        final_residual_failure_count=raw_mismatch,
        final_residual_failure_rate=raw_mismatch_rate,
        baseline_hard_semantic_failure_count=baseline_semantic,
        baseline_hard_semantic_failure_rate=safe_rate(baseline_semantic, len(initial_evaluated)),
        assisted_retry_cap=config.retry_cap,
        assisted_enabled=config.assisted_enabled,
        constraints=constraints,
        observations=total if config.guardian_enabled else 0,
        raw_byte_mismatch_count=raw_mismatch,
        raw_byte_mismatch_rate=raw_mismatch_rate,
        trimmed_semantic_mismatch_count=semantic,
        trimmed_semantic_mismatch_rate=semantic_rate,
        format_only_mismatch_count=format_only,
        format_only_mismatch_rate=safe_rate(format_only, denominator),
        taxonomy_counts={taxonomy.value: taxonomy_counts[taxonomy.value] for taxonomy in Taxonomy},
        exact_match_rate=_taxonomy_rate(Taxonomy.EXACT_MATCH),
        schema_violation_rate=_taxonomy_rate(Taxonomy.SCHEMA_VIOLATION),
        semantic_hard_failure_rate=_taxonomy_rate(Taxonomy.SEMANTIC_HARD_FAILURE),
        non_json_output_rate=_taxonomy_rate(Taxonomy.NON_JSON_OUTPUT),
        semantic_failure_ci95=confidence_interval_95(semantic_rate, denominator),
        primary_safety_metric=primary_metric,
    )
