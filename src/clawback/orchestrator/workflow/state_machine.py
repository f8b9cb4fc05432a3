"""Explicit status state machines for runs and workflow runs.

The stores call :func:`transition` on every status update, so a status
change is a compare-and-swap against the persisted state and an illegal
transition fails loudly instead of silently overwriting.
"""

from __future__ import annotations

from typing import TypeVar

from clawback.orchestrator.models import RunStatus, WorkflowRunStatus

WORKFLOW_RUN_TRANSITIONS: dict[WorkflowRunStatus, set[WorkflowRunStatus]] = {
    "pending": {"running", "failed", "cancelled"},
    "running": {"completed", "failed", "waiting_for_input", "cancelled"},
    "waiting_for_input": {"running", "cancelled"},
    "completed": set(),
    "failed": set(),
    "cancelled": set(),
}

RUN_TRANSITIONS: dict[RunStatus, set[RunStatus]] = {
    "pending": {"running", "failed"},
    "running": {"completed", "failed"},
    "completed": set(),
    "failed": set(),
}

TERMINAL_WORKFLOW_RUN_STATUSES: frozenset[WorkflowRunStatus] = frozenset(
    {"completed", "failed", "cancelled"}
)

S = TypeVar("S", bound=str)


class IllegalTransitionError(ValueError):
    pass


def transition(*, current: S, to: S, allowed: dict[S, set[S]]) -> S:
    if to not in allowed.get(current, set()):
        raise IllegalTransitionError(f"Illegal transition: {current} -> {to}")
    return to
