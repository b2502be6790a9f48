from __future__ import annotations

from fidelis.harness.contracts import ContractMode, ExecutionMode


def parse_execution_mode(raw: str) -> ExecutionMode:
    normalized = raw.strip().lower()
    if normalized == ExecutionMode.PASSIVE.value:
        return ExecutionMode.PASSIVE
    if normalized == ExecutionMode.ASSISTED.value:
        return ExecutionMode.ASSISTED
    raise ValueError(f"unsupported execution mode: {raw}")


def parse_contract_mode(raw: str) -> ContractMode:
    normalized = raw.strip().lower()
    if normalized == ContractMode.LITERAL.value:
        return ContractMode.LITERAL
    if normalized in {ContractMode.STRUCTURED.value, "json"}:
        return ContractMode.STRUCTURED
    raise ValueError(f"unsupported contract mode: {raw}")
