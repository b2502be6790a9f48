from __future__ import annotations

from typing import Protocol

from fidelis.harness.contracts import GateDecision, Observation, TrialContext


class CompletionProvider(Protocol):
    async def request(
        self,
        model: str,
        prompt: str,
        system_prompt: str | None = None,
        temperature: float = 0.7,
        max_tokens: int = 512,
    ) -> str: ...


class GateObserver(Protocol):
    async def observe(self, trial_id: int, text: str) -> Observation: ...

    async def decide(self, recommendation: str, text: str, constraint: str | None = None) -> GateDecision: ...

    async def submit_constraint(self, text: str) -> None: ...


class ConstraintProposer(Protocol):
    async def propose(self, context: TrialContext) -> str: ...
