from __future__ import annotations

import asyncio
import json
import signal
import sys
from dataclasses import asdict
from datetime import UTC, datetime
from pathlib import Path
from typing import Annotated

import typer

from fidelis.config import FidelisSettings, load_settings, refresh_process_env_from_file
from fidelis.guardian.client import GuardianClient
from fidelis.harness.classifier import classify_mismatch, evaluate_structured_output
from fidelis.harness.cli import parse_contract_mode, parse_execution_mode
from fidelis.harness.config import MAX_RETRY_CAP, RunConfig, run_config_from_settings
from fidelis.harness.contracts import ContractMode, Prompt, RunResult, RunStatus, Trial
from fidelis.harness.errors import HarnessError
from fidelis.harness.interfaces import CompletionProvider
from fidelis.harness.metrics import compute_run_metrics, percentage_string
from fidelis.harness.prompts import (
    SCRIPT_LABELS,
    STRUCTURED_SCRIPT_ID,
    generate_structured_prompts,
    load_script_prompts,
    script_provenance,
    structured_literal,
)
from fidelis.harness.proposer import CompletionConstraintProposer
from fidelis.harness.runner import CancelToken, ExperimentRunner
from fidelis.harness.snapshot import build_snapshot
from fidelis.logging import setup_logging
from fidelis.ops.exporter import default_export_name, write_snapshot, write_trials_csv
from fidelis.providers.registry import provider_from_settings

app = typer.Typer(help="Fidelis contract-fidelity experiment CLI.")


def _ensure_windows_selector_loop() -> None:
    if sys.platform.startswith("win"):
        asyncio.set_event_loop_policy(asyncio.WindowsSelectorEventLoopPolicy())


@app.command("run")
def run(
    script: Annotated[str, typer.Option("--script", help="JSONL prompt script (literal mode)")] = "",
    structured: Annotated[
        bool, typer.Option("--structured/--literal", help="Run the generated structured JSON contract")
    ] = False,
    contract_mode: Annotated[str, typer.Option("--contract-mode", help="literal|structured")] = "",
    limit: Annotated[int, typer.Option("--limit", min=0, help="Max prompts from the script, 0 = all")] = 0,
    repetitions: Annotated[
        int | None, typer.Option("--repetitions", min=1, help="Structured trials, clamped to 4..10000")
    ] = None,
    assisted: Annotated[
        bool | None, typer.Option("--assisted/--passive", help="Enable constraint-assisted retries")
    ] = None,
    retry_cap: Annotated[int | None, typer.Option("--retry-cap", min=0, max=MAX_RETRY_CAP)] = None,
    provider: Annotated[str, typer.Option("--provider", help="auto|together|openai|anthropic|google|mistral")] = "",
    model: Annotated[str, typer.Option("--model")] = "",
    temperature: Annotated[float | None, typer.Option("--temperature", min=0.0, max=2.0)] = None,
    max_tokens: Annotated[int | None, typer.Option("--max-tokens", min=1)] = None,
    guardian: Annotated[bool | None, typer.Option("--guardian/--no-guardian")] = None,
    pacing_sec: Annotated[float | None, typer.Option("--pacing-sec", min=0.0)] = None,
    output: Annotated[str, typer.Option("--output", help="Snapshot JSON path")] = "",
    trials_csv: Annotated[str, typer.Option("--trials-csv", help="Per-trial CSV path")] = "",
) -> None:
    """Run one experiment and write its snapshot."""
    refresh_process_env_from_file()
    load_settings.cache_clear()
    settings = load_settings()
    setup_logging(settings.log_level, log_file=settings.log_file)
    _ensure_windows_selector_loop()

    mode = parse_contract_mode(contract_mode) if contract_mode else None
    if mode is None:
        mode = ContractMode.STRUCTURED if structured else ContractMode.LITERAL
    if mode == ContractMode.LITERAL and not script:
        raise typer.BadParameter("--script is required in literal mode", param_hint="--script")

    config = run_config_from_settings(
        settings,
        provider=provider or None,
        model=model or None,
        execution_mode=None if assisted is None else parse_execution_mode("assisted" if assisted else "passive"),
        retry_cap=retry_cap,
        contract_mode=mode,
        temperature=temperature,
        max_tokens=max_tokens,
        guardian_enabled=guardian,
        pacing_sec=pacing_sec,
        prompt_limit=limit or None,
        structured_repetitions=repetitions,
    )
    try:
        if config.structured:
            config = config.with_overrides(script_id=STRUCTURED_SCRIPT_ID)
            prompts = generate_structured_prompts(config.effective_repetitions)
            provenance = script_provenance(None)
        else:
            config = config.with_overrides(script_id=Path(script).name)
            prompts = load_script_prompts(script, limit=limit)
            provenance = script_provenance(script)
        provider_client = provider_from_settings(settings, config.provider)
    except HarnessError as exc:
        typer.echo(f"error: {exc}", err=True)
        raise typer.Exit(code=2) from exc

    result = asyncio.run(_run_experiment(settings, config, provider_client, prompts))

    stamp = datetime.now(tz=UTC)
    snapshot = build_snapshot(config, result, provenance=provenance, exported_at=stamp)
    export_dir = Path(settings.export_dir)
    snapshot_path = Path(output) if output else export_dir / default_export_name("snapshot", stamp, "json")
    write_snapshot(snapshot, snapshot_path)
    if trials_csv:
        write_trials_csv(result.trials, trials_csv)

    _echo_summary(config, result)
    typer.echo(f"snapshot={snapshot_path}")
    if result.status == RunStatus.ABORTED:
        raise typer.Exit(code=1)


async def _run_experiment(
    settings: FidelisSettings,
    config: RunConfig,
    provider: CompletionProvider,
    prompts: list[Prompt],
) -> RunResult:
    cancel_token = CancelToken()
    _install_signal_handlers(cancel_token)
    gate = None
    if config.guardian_enabled:
        endpoints = settings.guardian
        gate = GuardianClient(
            core_url=endpoints.core_url,
            gate_url=endpoints.gate_url,
            endpoint_key=endpoints.endpoint_key,
            timeout_seconds=settings.request_timeout_sec,
        )
    proposer = None
    if config.assisted_enabled:
        proposer = CompletionConstraintProposer(provider, config.model, temperature=config.proposer_temperature)
    runner = ExperimentRunner(
        config,
        provider,
        gate=gate,
        proposer=proposer,
        cancel_token=cancel_token,
        on_trial=_echo_trial,
    )
    try:
        return await runner.run(prompts)
    finally:
        if gate is not None:
            await gate.close()


@app.command("classify")
def classify(
    expected: Annotated[str, typer.Option("--expected", help="Expected literal")],
    output: Annotated[str, typer.Option("--output", help="Raw model output")],
) -> None:
    """Print the mismatch kind of an output against a literal."""
    expected_literal = expected.strip()
    typer.echo(classify_mismatch(expected_literal, output, output == expected_literal).value)


@app.command("check-structured")
def check_structured(
    label: Annotated[str, typer.Option("--label", help="Expected answer label A-D")],
    output: Annotated[str, typer.Option("--output", help="Raw model output")],
) -> None:
    """Evaluate an output against the structured JSON contract."""
    normalized = label.strip().upper()
    evaluation = evaluate_structured_output(output, normalized, structured_literal(normalized))
    payload = asdict(evaluation)
    payload["taxonomy"] = evaluation.taxonomy.value
    typer.echo(json.dumps(payload, ensure_ascii=False))


@app.command("scripts")
def scripts() -> None:
    """List known contract scripts."""
    for script_id, label in SCRIPT_LABELS.items():
        typer.echo(f"{script_id}\t{label}")


def _echo_trial(trial: Trial) -> None:
    exact = "-" if trial.final_exact_match is None else str(trial.final_exact_match).lower()
    typer.echo(
        f"trial={trial.trial_index} gate={trial.initial_gate_state.value}->{trial.final_gate_state.value} "
        f"exact={exact} retries={trial.retry_count_used}"
    )


def _echo_summary(config: RunConfig, result: RunResult) -> None:
    metrics = compute_run_metrics(result.trials, config)
    typer.echo(f"status={result.status.value} trials={metrics.trials} pauses={metrics.pauses}")
    if config.assisted_enabled:
        typer.echo(
            f"initial_pauses={metrics.initial_pauses} corrected={metrics.correction_success_count} "
            f"correction_rate={percentage_string(metrics.correction_success_rate)} "
            f"constraints={metrics.constraints}"
        )
    if config.structured:
        typer.echo(f"{metrics.primary_safety_metric} ci95={metrics.semantic_failure_ci95}")
    if result.abort is not None:
        typer.echo(
            f"aborted at trial {result.abort.trial_index}: {result.abort.error_kind}: {result.abort.message}",
            err=True,
        )


def _install_signal_handlers(cancel_token: CancelToken) -> None:
    try:
        loop = asyncio.get_running_loop()
        loop.add_signal_handler(signal.SIGINT, cancel_token.cancel)
        loop.add_signal_handler(signal.SIGTERM, cancel_token.cancel)
    except NotImplementedError:
        return


if __name__ == "__main__":
    app()
