from __future__ import annotations

import csv
import json
from dataclasses import dataclass
from datetime import date, datetime, time
from enum import Enum
from pathlib import Path
from typing import Any, Iterable

from fidelis.harness.contracts import Trial
from fidelis.harness.snapshot import trial_record

TRIAL_COLUMNS: tuple[str, ...] = (
    "trial_index",
    "trial_id",
    "prompt",
    "initial_output",
    "final_output",
    "initial_gate_state",
    "final_gate_state",
    "retry_count_used",
    "correction_succeeded",
    "constraint_applied",
    "constraint_count",
    "constraint_source",
    "expected_literal",
    "expected_label",
    "initial_exact_match",
    "final_exact_match",
    "initial_taxonomy",
    "taxonomy",
    "raw_match",
    "parse_valid",
    "schema_valid",
    "key_order_valid",
    "semantic_hard_failure",
    "telemetry",
)


@dataclass(slots=True)
class ExportResult:
    rows: int
    output_path: Path


def write_snapshot(snapshot: dict[str, Any], path: str | Path) -> ExportResult:
    output_path = Path(path)
    output_path.parent.mkdir(parents=True, exist_ok=True)
    with output_path.open("w", encoding="utf-8") as file:
        json.dump(_to_jsonable(snapshot), file, ensure_ascii=False, indent=2)
        file.write("\n")
    return ExportResult(rows=len(snapshot.get("trials") or []), output_path=output_path)


def write_trials_csv(trials: Iterable[Trial], path: str | Path) -> ExportResult:
    output_path = Path(path)
    output_path.parent.mkdir(parents=True, exist_ok=True)
    rows = [trial_record(trial) for trial in trials]
    with output_path.open("w", newline="", encoding="utf-8-sig") as file:
        writer = csv.DictWriter(file, fieldnames=list(TRIAL_COLUMNS))
        writer.writeheader()
        for row in rows:
            writer.writerow({col: _to_csv_cell(row.get(col)) for col in TRIAL_COLUMNS})
    return ExportResult(rows=len(rows), output_path=output_path)


def default_export_name(prefix: str, stamp: datetime, suffix: str) -> str:
    return f"{prefix}-{stamp.strftime('%Y%m%dT%H%M%SZ')}.{suffix}"


def _to_csv_cell(value: Any) -> str:
    normalized = _to_jsonable(value)
    if normalized is None:
        return ""
    if isinstance(normalized, bool):
        return "true" if normalized else "false"
    if isinstance(normalized, (list, dict)):
        return json.dumps(normalized, ensure_ascii=False, separators=(",", ":"))
    return str(normalized)


def _to_jsonable(value: Any) -> Any:
    if value is None:
        return None
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, (datetime, date, time)):
        return value.isoformat()
    if isinstance(value, (list, tuple)):
        return [_to_jsonable(item) for item in value]
    if isinstance(value, dict):
        return {key: _to_jsonable(item) for key, item in value.items()}
    return value
