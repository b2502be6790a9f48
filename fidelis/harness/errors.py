from __future__ import annotations


class HarnessError(Exception):
    """Base class for every failure the experiment harness reports."""


class ContractError(HarnessError):
    """A prompt's contract is malformed; absorbed per trial."""


class PromptSourceError(HarnessError):
    """A prompt script could not be read."""


class ProviderError(HarnessError):
    """The completion call failed; aborts the run."""


class GateError(HarnessError):
    """The observer or decider was unreachable or answered badly; aborts the run."""


class ProposalError(HarnessError):
    """The correction proposal was empty or failed; aborts the run."""


FATAL_ERRORS: tuple[type[HarnessError], ...] = (ProviderError, GateError, ProposalError)
