from __future__ import annotations

import asyncio
import sys
from collections.abc import Callable, Iterator
from dataclasses import dataclass, field

import pytest

from fidelis.harness.contracts import GateDecision, GateState, Observation, Telemetry, TrialContext
from fidelis.harness.errors import GateError

if sys.platform.startswith("win"):
    asyncio.set_event_loop_policy(asyncio.WindowsSelectorEventLoopPolicy())

_PROVIDER_ENV_KEYS = (
    "TOGETHER_API_KEY",
    "OPENAI_API_KEY",
    "ANTHROPIC_API_KEY",
    "GOOGLE_API_KEY",
    "MISTRAL_API_KEY",
)


@dataclass
class CompletionCall:
    model: str
    prompt: str
    system_prompt: str | None
    temperature: float
    max_tokens: int


@dataclass
class FakeProvider:
    """Replays scripted outputs in order; an Exception entry is raised instead."""

    outputs: list[str | Exception] = field(default_factory=list)
    responder: Callable[[str], str] | None = None
    calls: list[CompletionCall] = field(default_factory=list)

    async def request(
        self,
        model: str,
        prompt: str,
        system_prompt: str | None = None,
        temperature: float = 0.7,
        max_tokens: int = 512,
    ) -> str:
        self.calls.append(CompletionCall(model, prompt, system_prompt, temperature, max_tokens))
        if self.responder is not None:
            return self.responder(prompt)
        item = self.outputs.pop(0)
        if isinstance(item, Exception):
            raise item
        return item


@dataclass
class FakeGate:
    """Pauses whenever a constraint is given and the text differs from it."""

    fail_on_observe: bool = False
    observed: list[tuple[int, str]] = field(default_factory=list)
    decided: list[tuple[str, str, str | None]] = field(default_factory=list)
    constraints: list[str] = field(default_factory=list)

    async def observe(self, trial_id: int, text: str) -> Observation:
        if self.fail_on_observe:
            raise GateError("HTTP 503: observer unavailable")
        self.observed.append((trial_id, text))
        telemetry = Telemetry(authority_trend="0.50", revision_mode="continue", trajectory_state="stable")
        return Observation(recommendation="CONTINUE", telemetry=telemetry)

    async def decide(self, recommendation: str, text: str, constraint: str | None = None) -> GateDecision:
        self.decided.append((recommendation, text, constraint))
        if constraint is not None and text != constraint:
            return GateDecision(final_gate_state=GateState.PAUSE, raw_decision="PAUSE")
        return GateDecision(final_gate_state=GateState.CONTINUE, raw_decision="CONTINUE")

    async def submit_constraint(self, text: str) -> None:
        self.constraints.append(text)


@dataclass
class FakeProposer:
    proposal: str = "Output the expected literal only."
    contexts: list[TrialContext] = field(default_factory=list)

    async def propose(self, context: TrialContext) -> str:
        self.contexts.append(context)
        return self.proposal


@pytest.fixture
def clean_provider_env(monkeypatch: pytest.MonkeyPatch) -> Iterator[None]:
    for key in _PROVIDER_ENV_KEYS:
        monkeypatch.delenv(key, raising=False)
        monkeypatch.delenv(f"FIDELIS_{key}", raising=False)
    monkeypatch.delenv("FIDELIS_PROVIDER", raising=False)
    monkeypatch.delenv("FIDELIS_MODEL", raising=False)
    yield
