from __future__ import annotations

from dataclasses import dataclass

from fidelis.harness.contracts import TrialContext
from fidelis.harness.errors import HarnessError, ProposalError
from fidelis.harness.interfaces import CompletionProvider

PROPOSER_SYSTEM_PROMPT = "You produce minimal deterministic contract constraints."
PROPOSAL_MAX_TOKENS = 600
PROPOSAL_MAX_CHARS = 8000


def build_constraint_prompt(context: TrialContext) -> str:
    exact = "n/a" if context.exact_match is None else str(context.exact_match).lower()
    return (
        "You are the assisted constraint proposer.\n"
        "\n"
        "Hard requirements:\n"
        "- Output only deterministic contract-enforcement rules for the next response.\n"
        "- Do not auto-continue on PAUSE without explicit operator override.\n"
        "- Do not override, suppress, or reinterpret the PAUSE gate.\n"
        "- Do not rewrite or alter any past output.\n"
        "- Keep constraints minimal, operational, and testable.\n"
        "- Force byte-exact compliance with the expected literal when present.\n"
        "- Return plain text only, max 8 bullet points.\n"
        "\n"
        f"Turn {context.trial_index} prompt:\n"
        f"{context.prompt}\n"
        "\n"
        f"Turn {context.trial_index} baseline output:\n"
        f"{context.output}\n"
        "\n"
        "Expected literal:\n"
        f"{context.expected_literal or 'n/a'}\n"
        "\n"
        "Contract exact match:\n"
        f"{exact}\n"
        "\n"
        "Provide the minimal externalizable constraint set now."
    )


@dataclass(slots=True)
class CompletionConstraintProposer:
    provider: CompletionProvider
    model: str
    temperature: float = 0.2

    async def propose(self, context: TrialContext) -> str:
        try:
            proposal = await self.provider.request(
                self.model,
                build_constraint_prompt(context),
                system_prompt=PROPOSER_SYSTEM_PROMPT,
                temperature=self.temperature,
                max_tokens=PROPOSAL_MAX_TOKENS,
            )
        except HarnessError as exc:
            raise ProposalError(f"constraint proposal failed: {exc}") from exc
        text = (proposal or "").strip()[:PROPOSAL_MAX_CHARS]
        if not text:
            raise ProposalError("assisted proposal returned empty constraint")
        return text
