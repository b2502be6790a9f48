from __future__ import annotations

import pytest

from conftest import FakeProvider
from fidelis.harness.contracts import TrialContext
from fidelis.harness.errors import ProposalError, ProviderError
from fidelis.harness.proposer import (
    PROPOSAL_MAX_CHARS,
    PROPOSAL_MAX_TOKENS,
    PROPOSER_SYSTEM_PROMPT,
    CompletionConstraintProposer,
    build_constraint_prompt,
)

CONTEXT = TrialContext(trial_index=3, prompt="What is 6*7?", output="41", expected_literal="42", exact_match=False)


def test_constraint_prompt_carries_failing_trial() -> None:
    prompt = build_constraint_prompt(CONTEXT)
    assert "Turn 3 prompt:\nWhat is 6*7?" in prompt
    assert "Turn 3 baseline output:\n41" in prompt
    assert "Expected literal:\n42" in prompt
    assert "Contract exact match:\nfalse" in prompt


@pytest.mark.asyncio
async def test_propose_strips_and_bounds_output() -> None:
    provider = FakeProvider(outputs=["  - Output 42 only.\n"])
    proposer = CompletionConstraintProposer(provider, "m", temperature=0.2)

    assert await proposer.propose(CONTEXT) == "- Output 42 only."
    call = provider.calls[0]
    assert call.system_prompt == PROPOSER_SYSTEM_PROMPT
    assert call.max_tokens == PROPOSAL_MAX_TOKENS
    assert call.temperature == 0.2

    long_provider = FakeProvider(outputs=["x" * (PROPOSAL_MAX_CHARS + 50)])
    long_text = await CompletionConstraintProposer(long_provider, "m").propose(CONTEXT)
    assert len(long_text) == PROPOSAL_MAX_CHARS


@pytest.mark.asyncio
async def test_propose_failures_become_proposal_errors() -> None:
    with pytest.raises(ProposalError, match="empty"):
        await CompletionConstraintProposer(FakeProvider(outputs=["   "]), "m").propose(CONTEXT)

    failing = FakeProvider(outputs=[ProviderError("HTTP 401: bad key")])
    with pytest.raises(ProposalError, match="HTTP 401"):
        await CompletionConstraintProposer(failing, "m").propose(CONTEXT)
