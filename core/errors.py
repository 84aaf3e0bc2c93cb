"""Exception types raised by the research pipeline."""

from __future__ import annotations

from typing import TYPE_CHECKING, Optional

if TYPE_CHECKING:
    from core.models import ResearchRun, TokenUsage


class ResearchError(RuntimeError):
    """A research run could not produce an answer.

    ``run`` is attached by the controller so callers can inspect the partial
    evidence and the token usage spent before the failure.
    """

    def __init__(
        self,
        message: str,
        *,
        token_usage: Optional[TokenUsage] = None,
        run: Optional[ResearchRun] = None,
    ) -> None:
        super().__init__(message)
        self.token_usage = token_usage
        self.run = run


class ReflectionError(ResearchError):
    """The sufficiency judgment errored or could not be parsed."""


class SynthesisError(ResearchError):
    """The final answer could not be generated."""


class SearchError(RuntimeError):
    """The search provider failed for an entire query."""


class DispatchError(RuntimeError):
    """The job scheduler rejected or could not accept a job."""


class ModelOutputError(RuntimeError):
    """A model call returned, but its content was empty or unparseable.

    The call still consumed tokens; ``token_usage`` carries them so the
    caller can account for the spend.
    """

    def __init__(self, message: str, *, token_usage: Optional[TokenUsage] = None) -> None:
        super().__init__(message)
        self.token_usage = token_usage
