from __future__ import annotations

import json
import unicodedata
from typing import Any

from fidelis.harness.contracts import GateState, MismatchKind, StructuredEvaluation, Taxonomy, Trial

ALLOWED_LABELS: tuple[str, ...] = ("A", "B", "C", "D")
REQUIRED_CONFIDENCE = 0.75
REQUIRED_VERSION = 1

_TOP_LEVEL_KEYS = ["result", "meta"]
_RESULT_KEYS = ["answer", "confidence"]
_META_KEYS = ["version"]


def is_boundary_char(ch: str) -> bool:
    """Whitespace (``str.isspace``) or any Unicode punctuation category (P*)."""
    return ch.isspace() or unicodedata.category(ch).startswith("P")


def _strip_boundary(value: str, *, leading: bool = True, trailing: bool = True) -> str:
    start = 0
    end = len(value)
    if leading:
        while start < end and is_boundary_char(value[start]):
            start += 1
    if trailing:
        while end > start and is_boundary_char(value[end - 1]):
            end -= 1
    return value[start:end]


def boundary_normalized_literal(value: str) -> str:
    return _strip_boundary(value.strip()).lower()


def has_expected_prefix_with_boundary(expected_literal: str, raw_output: str) -> bool:
    trimmed = raw_output.strip()
    if not trimmed.startswith(expected_literal):
        return False
    if len(trimmed) == len(expected_literal):
        return True
    return is_boundary_char(trimmed[len(expected_literal)])


def has_expected_suffix_with_boundary(expected_literal: str, raw_output: str) -> bool:
    # "The answer is 42." carries the literal as its final token. Negations are not
    # detected, so "The answer is not 42" also counts as formatting drift.
    trimmed = _strip_boundary(raw_output.strip(), leading=False)
    if not expected_literal or not trimmed.endswith(expected_literal):
        return False
    if len(trimmed) == len(expected_literal):
        return True
    return is_boundary_char(trimmed[-len(expected_literal) - 1])


def classify_mismatch(expected_literal: str, raw_output: str, exact_match: bool) -> MismatchKind:
    if exact_match:
        return MismatchKind.EXACT

    expected_normalized = boundary_normalized_literal(expected_literal)
    output_normalized = boundary_normalized_literal(raw_output)
    if not expected_normalized or not output_normalized:
        return MismatchKind.SEMANTIC_HARD_FAILURE

    if expected_normalized == output_normalized:
        return MismatchKind.FORMATTING_ONLY
    expected_trimmed = expected_literal.strip()
    if has_expected_prefix_with_boundary(expected_trimmed, raw_output):
        return MismatchKind.FORMATTING_ONLY
    if has_expected_suffix_with_boundary(expected_trimmed, raw_output):
        return MismatchKind.FORMATTING_ONLY
    return MismatchKind.SEMANTIC_HARD_FAILURE


def mismatch_kind_for_trial(trial: Trial) -> MismatchKind | None:
    if trial.final_exact_match is None:
        return None
    if not trial.expected_literal:
        return MismatchKind.EXACT if trial.final_exact_match else MismatchKind.SEMANTIC_HARD_FAILURE
    return classify_mismatch(trial.expected_literal, trial.final_output, trial.final_exact_match)


def initial_mismatch_kind(trial: Trial) -> MismatchKind | None:
    if trial.initial_exact_match is None or not trial.expected_literal:
        return None
    return classify_mismatch(trial.expected_literal, trial.initial_output, trial.initial_exact_match)


def _reject_constant(token: str) -> Any:
    raise ValueError(f"non-standard JSON constant: {token}")


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


def _keys_are(value: Any, expected: list[str]) -> bool:
    return isinstance(value, dict) and list(value.keys()) == expected


def evaluate_structured_output(raw_output: str, expected_label: str, expected_literal: str) -> StructuredEvaluation:
    if raw_output == expected_literal:
        return StructuredEvaluation(
            taxonomy=Taxonomy.EXACT_MATCH,
            raw_match=True,
            parse_valid=True,
            schema_valid=True,
            key_order_valid=True,
            semantic_hard_failure=False,
            parsed_label=expected_label,
        )

    try:
        parsed = json.loads(raw_output, parse_constant=_reject_constant)
    except ValueError:
        return StructuredEvaluation(
            taxonomy=Taxonomy.NON_JSON_OUTPUT,
            raw_match=False,
            parse_valid=False,
            schema_valid=False,
            key_order_valid=False,
            semantic_hard_failure=False,
        )

    if not isinstance(parsed, dict):
        return StructuredEvaluation(
            taxonomy=Taxonomy.SCHEMA_VIOLATION,
            raw_match=False,
            parse_valid=True,
            schema_valid=False,
            key_order_valid=False,
            semantic_hard_failure=False,
        )

    result = parsed.get("result")
    meta = parsed.get("meta")
    top_order_valid = _keys_are(parsed, _TOP_LEVEL_KEYS)
    result_order_valid = _keys_are(result, _RESULT_KEYS)
    meta_order_valid = _keys_are(meta, _META_KEYS)
    key_order_valid = top_order_valid and result_order_valid and meta_order_valid

    answer = result.get("answer") if isinstance(result, dict) else None
    confidence = result.get("confidence") if isinstance(result, dict) else None
    version = meta.get("version") if isinstance(meta, dict) else None

    schema_valid = (
        key_order_valid
        and isinstance(answer, str)
        and answer in ALLOWED_LABELS
        and _is_number(confidence)
        and confidence == REQUIRED_CONFIDENCE
        and _is_number(version)
        and version == REQUIRED_VERSION
    )
    if not schema_valid:
        return StructuredEvaluation(
            taxonomy=Taxonomy.SCHEMA_VIOLATION,
            raw_match=False,
            parse_valid=True,
            schema_valid=False,
            key_order_valid=key_order_valid,
            semantic_hard_failure=False,
        )

    if answer != expected_label:
        return StructuredEvaluation(
            taxonomy=Taxonomy.SEMANTIC_HARD_FAILURE,
            raw_match=False,
            parse_valid=True,
            schema_valid=True,
            key_order_valid=key_order_valid,
            semantic_hard_failure=True,
            parsed_label=answer,
        )

    return StructuredEvaluation(
        taxonomy=Taxonomy.FORMAT_ONLY_DRIFT,
        raw_match=False,
        parse_valid=True,
        schema_valid=True,
        key_order_valid=key_order_valid,
        semantic_hard_failure=False,
        parsed_label=answer,
    )


def structured_gate_state(evaluation: StructuredEvaluation) -> GateState:
    return GateState.CONTINUE if evaluation.taxonomy == Taxonomy.EXACT_MATCH else GateState.PAUSE
