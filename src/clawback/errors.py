"""Exception hierarchy shared across the engine."""

from __future__ import annotations


class ClawbackError(Exception):
    """Base class for engine errors."""


class NotFoundError(ClawbackError, LookupError):
    pass


class OrchestrationError(ClawbackError):
    """The orchestrator loop cannot continue (no skills, turn cap exceeded)."""


class WorkflowFailedError(OrchestrationError):
    """The orchestrator explicitly called ``fail_workflow``."""

    def __init__(self, message: str, partial_results: dict[str, object] | None = None) -> None:
        super().__init__(message)
        self.partial_results = partial_results or {}


class ResumeError(ClawbackError):
    """A paused workflow run cannot be resumed from its checkpoint."""
