from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable, Iterable
from contextlib import suppress
from dataclasses import dataclass
from uuid import uuid4

from fidelis.harness.classifier import evaluate_structured_output, structured_gate_state
from fidelis.harness.config import RunConfig
from fidelis.harness.contracts import (
    CONSTRAINT_SOURCE_ASSISTED,
    Contract,
    GateState,
    Prompt,
    RunAbort,
    RunMetrics,
    RunResult,
    RunStatus,
    StructuredEvaluation,
    Telemetry,
    Trial,
    TrialContext,
)
from fidelis.harness.errors import FATAL_ERRORS, ContractError, ProposalError
from fidelis.harness.interfaces import CompletionProvider, ConstraintProposer, GateObserver
from fidelis.harness.metrics import compute_run_metrics
from fidelis.harness.prompts import STRUCTURED_MAX_TOKENS_CAP, STRUCTURED_SYSTEM_PROMPT, resolve_contract

logger = logging.getLogger(__name__)


class CancelToken:
    def __init__(self) -> None:
        self._event = asyncio.Event()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def cancel(self) -> None:
        self._event.set()

    async def wait(self) -> None:
        await self._event.wait()


@dataclass(slots=True)
class TrialInProgress:
    output: str
    exact_match: bool | None
    gate_state: GateState
    telemetry: Telemetry | None = None
    evaluation: StructuredEvaluation | None = None
    retry_count: int = 0
    constraint_count: int = 0
    constraint_source: str | None = None


class ExperimentRunner:
    def __init__(
        self,
        config: RunConfig,
        provider: CompletionProvider,
        gate: GateObserver | None = None,
        proposer: ConstraintProposer | None = None,
        cancel_token: CancelToken | None = None,
        on_trial: Callable[[Trial], None] | None = None,
    ) -> None:
        self.config = config
        self.provider = provider
        self.gate = gate if config.guardian_enabled else None
        self.proposer = proposer
        self.cancel_token = cancel_token or CancelToken()
        self.on_trial = on_trial
        self._trials: list[Trial] = []
        self._pause_count = 0
        self._constraint_count = 0

    @property
    def trials(self) -> tuple[Trial, ...]:
        return tuple(self._trials)

    @property
    def pause_count(self) -> int:
        return self._pause_count

    @property
    def constraint_count(self) -> int:
        return self._constraint_count

    def metrics(self) -> RunMetrics:
        return compute_run_metrics(self._trials, self.config)

    def cancel(self) -> None:
        self.cancel_token.cancel()

    async def run(self, prompts: Iterable[Prompt]) -> RunResult:
        logger.info(
            "experiment run started",
            extra={
                "execution_mode": self.config.execution_mode.value,
                "contract_mode": self.config.contract_mode.value,
                "retry_cap": self.config.retry_cap,
                "model": self.config.model,
            },
        )
        status = RunStatus.COMPLETED
        abort: RunAbort | None = None
        for trial_index, prompt in enumerate(prompts, start=1):
            if self.cancel_token.cancelled:
                status = RunStatus.CANCELLED
                break
            try:
                trial = await self._run_trial(trial_index, prompt)
            except FATAL_ERRORS as exc:
                abort = RunAbort(trial_index=trial_index, error_kind=type(exc).__name__, message=str(exc))
                logger.error(
                    "experiment run aborted",
                    extra={"trial_index": trial_index, "error_kind": abort.error_kind, "error": abort.message},
                )
                status = RunStatus.ABORTED
                break
            self._emit(trial)
            if self.cancel_token.cancelled:
                status = RunStatus.CANCELLED
                break
            await self._pace()

        result = RunResult(
            status=status,
            trials=self.trials,
            pause_count=self._pause_count,
            constraint_count=self._constraint_count,
            abort=abort,
        )
        logger.info(
            "experiment run finished",
            extra={"status": status.value, "trials": len(self._trials), "pauses": self._pause_count},
        )
        return result

    async def _run_trial(self, trial_index: int, prompt: Prompt) -> Trial:
        contract = self._resolve_contract(trial_index, prompt)
        structured = contract.structured

        initial_output = await self._complete(prompt.text)
        state = await self._evaluate(trial_index, initial_output, contract, retry=0)
        initial_exact = state.exact_match
        initial_gate = state.gate_state
        initial_taxonomy = state.evaluation.taxonomy if state.evaluation else None

        if self.config.assisted_enabled and contract.defined and initial_exact is False:
            while state.retry_count < self.config.retry_cap and state.exact_match is False:
                if self.cancel_token.cancelled:
                    break
                if not structured and state.gate_state == GateState.PAUSE:
                    await self._apply_constraint(trial_index, prompt, contract, state)
                state.retry_count += 1
                retry_output = await self._complete(prompt.text)
                retried = await self._evaluate(trial_index, retry_output, contract, retry=state.retry_count)
                state.output = retried.output
                state.exact_match = retried.exact_match
                state.gate_state = retried.gate_state
                state.evaluation = retried.evaluation
                state.telemetry = retried.telemetry

        evaluation = state.evaluation
        return Trial(
            trial_index=trial_index,
            trial_id=f"{trial_index}-{uuid4().hex[:8]}",
            prompt=prompt.text,
            initial_output=initial_output,
            final_output=state.output,
            initial_gate_state=initial_gate,
            final_gate_state=state.gate_state,
            retry_count_used=state.retry_count,
            correction_succeeded=state.exact_match is True and state.retry_count > 0,
            constraint_applied=state.constraint_count > 0,
            constraint_count=state.constraint_count,
            constraint_source=state.constraint_source,
            telemetry=state.telemetry,
            expected_literal=contract.expected_literal,
            expected_label=contract.expected_label,
            initial_exact_match=initial_exact,
            final_exact_match=state.exact_match,
            initial_taxonomy=initial_taxonomy,
            taxonomy=evaluation.taxonomy if evaluation else None,
            raw_match=evaluation.raw_match if evaluation else None,
            parse_valid=evaluation.parse_valid if evaluation else None,
            schema_valid=evaluation.schema_valid if evaluation else None,
            key_order_valid=evaluation.key_order_valid if evaluation else None,
            semantic_hard_failure=evaluation.semantic_hard_failure if evaluation else None,
        )

    def _resolve_contract(self, trial_index: int, prompt: Prompt) -> Contract:
        try:
            return resolve_contract(prompt, self.config.contract_mode)
        except ContractError as exc:
            logger.warning("prompt contract rejected", extra={"trial_index": trial_index, "error": str(exc)})
            return Contract()

    async def _complete(self, prompt_text: str) -> str:
        if self.config.structured:
            return await self.provider.request(
                self.config.model,
                prompt_text,
                system_prompt=STRUCTURED_SYSTEM_PROMPT,
                temperature=self.config.temperature,
                max_tokens=min(self.config.max_tokens, STRUCTURED_MAX_TOKENS_CAP),
            )
        return await self.provider.request(
            self.config.model,
            prompt_text,
            system_prompt=self.config.system_prompt,
            temperature=self.config.temperature,
            max_tokens=self.config.max_tokens,
        )

    async def _evaluate(self, trial_index: int, output: str, contract: Contract, *, retry: int) -> TrialInProgress:
        exact = output == contract.expected_literal if contract.defined else None
        if contract.structured:
            evaluation = evaluate_structured_output(output, contract.expected_label, contract.expected_literal)
            return TrialInProgress(
                output=output,
                exact_match=exact,
                gate_state=structured_gate_state(evaluation),
                evaluation=evaluation,
            )
        gate_state, telemetry = await self._observe(trial_index * 10 + retry, output, contract.expected_literal)
        return TrialInProgress(output=output, exact_match=exact, gate_state=gate_state, telemetry=telemetry)

    async def _observe(self, trial_id: int, output: str, constraint: str | None) -> tuple[GateState, Telemetry | None]:
        if self.gate is None:
            return GateState.CONTINUE, None
        observation = await self.gate.observe(trial_id, output)
        decision = await self.gate.decide(observation.recommendation, output, constraint)
        return decision.final_gate_state, observation.telemetry

    async def _apply_constraint(
        self,
        trial_index: int,
        prompt: Prompt,
        contract: Contract,
        state: TrialInProgress,
    ) -> None:
        if self.proposer is None or self.gate is None:
            raise ProposalError("gate paused an assisted trial but no constraint proposer is configured")
        context = TrialContext(
            trial_index=trial_index,
            prompt=prompt.text,
            output=state.output,
            expected_literal=contract.expected_literal,
            exact_match=state.exact_match,
        )
        proposal = (await self.proposer.propose(context)).strip()
        if not proposal:
            raise ProposalError("assisted proposal returned empty constraint")
        await self.gate.submit_constraint(proposal)
        state.constraint_count += 1
        state.constraint_source = CONSTRAINT_SOURCE_ASSISTED
        logger.info("assisted constraint applied", extra={"trial_index": trial_index, "retry": state.retry_count})

    def _emit(self, trial: Trial) -> None:
        if trial.retry_count_used > self.config.retry_cap:
            raise RuntimeError(f"trial {trial.trial_index} exceeded retry cap")
        self._trials.append(trial)
        if trial.final_gate_state == GateState.PAUSE:
            self._pause_count += 1
        self._constraint_count += trial.constraint_count
        logger.info(
            "trial finalized",
            extra={
                "trial_index": trial.trial_index,
                "initial_gate_state": trial.initial_gate_state.value,
                "final_gate_state": trial.final_gate_state.value,
                "final_exact_match": trial.final_exact_match,
                "retry_count_used": trial.retry_count_used,
                "correction_succeeded": trial.correction_succeeded,
            },
        )
        if self.on_trial is not None:
            self.on_trial(trial)

    async def _pace(self) -> None:
        if self.config.pacing_sec <= 0:
            return
        with suppress(TimeoutError):
            await asyncio.wait_for(self.cancel_token.wait(), timeout=self.config.pacing_sec)
