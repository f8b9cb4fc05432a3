"""Event dispatch: fan an event out to every matching workflow and skill.

``EventDispatcher.on_event`` is the single entry point for ingestion. Within
one event, workflow matches run first, then skill matches, one after the
other. A failing match is logged and reported, never raised: it must not stop
its siblings.

``EventQueue`` persists incoming events and hands them to a thread pool so
independent events are processed concurrently.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from concurrent.futures import Future, ThreadPoolExecutor
from dataclasses import dataclass, field
from typing import Any, Literal

from clawback.orchestrator.models import Event, Run, Skill, Workflow, WorkflowRun
from clawback.orchestrator.notifications import NotificationService
from clawback.orchestrator.registry import SkillRegistry, WorkflowRegistry
from clawback.orchestrator.skills.executor import TaskExecutor
from clawback.orchestrator.storage import EventStore
from clawback.orchestrator.workflow.engine import OrchestratorEngine
from clawback.orchestrator.workflow.events import (
    WORKFLOW_ID_KEY,
    is_scheduled_event,
    parse_payload,
)

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class DispatchFailure:
    kind: Literal["workflow", "skill"]
    owner_id: str
    error: str


@dataclass
class DispatchReport:
    event_id: str
    workflow_runs: list[WorkflowRun] = field(default_factory=list)
    runs: list[Run] = field(default_factory=list)
    failures: list[DispatchFailure] = field(default_factory=list)

    @property
    def matched(self) -> int:
        return len(self.workflow_runs) + len(self.runs) + len(self.failures)


class EventDispatcher:
    def __init__(
        self,
        *,
        skills: SkillRegistry,
        workflows: WorkflowRegistry,
        engine: OrchestratorEngine,
        task_executor: TaskExecutor,
        notifications: NotificationService,
    ) -> None:
        self._skills = skills
        self._workflows = workflows
        self._engine = engine
        self._task_executor = task_executor
        self._notifications = notifications

    def on_event(self, event: Event) -> DispatchReport:
        payload = parse_payload(event.payload)
        report = DispatchReport(event_id=event.id)

        # Scheduled workflow fires go straight to their workflow.
        workflow_id = payload.get(WORKFLOW_ID_KEY)
        if is_scheduled_event(event) and isinstance(workflow_id, str):
            workflow = self._workflows.get(workflow_id)
            if workflow is None:
                logger.info(
                    "Scheduled workflow no longer available, skipping",
                    extra={"event_id": event.id, "workflow_id": workflow_id},
                )
                return report
            self._run_workflow(workflow, event, report)
            return report

        workflow_matches = self._workflows.find_matching(
            source=event.source, event_type=event.type, payload=payload
        )
        skill_matches = self._skills.find_matching(
            source=event.source, event_type=event.type, payload=payload
        )
        logger.info(
            "Dispatching event",
            extra={
                "event_id": event.id,
                "source": event.source,
                "type": event.type,
                "workflow_matches": len(workflow_matches),
                "skill_matches": len(skill_matches),
            },
        )

        for workflow_match in workflow_matches:
            self._run_workflow(workflow_match.owner, event, report)
        for skill_match in skill_matches:
            self._run_skill(skill_match.owner, event, report)
        return report

    def _run_workflow(self, workflow: Workflow, event: Event, report: DispatchReport) -> None:
        try:
            workflow_run = self._engine.execute(workflow, event)
        except Exception as e:
            logger.exception(
                "Workflow failed",
                extra={"event_id": event.id, "workflow_id": workflow.id},
            )
            report.failures.append(DispatchFailure(kind="workflow", owner_id=workflow.id, error=str(e)))
            self._notifications.notify(
                type="error",
                title=f'Workflow "{workflow.name}" failed',
                message=str(e),
                owner_id=workflow.id,
            )
            return

        report.workflow_runs.append(workflow_run)
        outcome = "is waiting for input" if workflow_run.status == "waiting_for_input" else "completed"
        self._notifications.notify(
            type="success",
            title=f'Workflow "{workflow.name}" {outcome}',
            message=f"Processed {event.type} event from {event.source}",
            run_id=workflow_run.id,
            owner_id=workflow.id,
        )

    def _run_skill(self, skill: Skill, event: Event, report: DispatchReport) -> None:
        try:
            run = self._task_executor.execute(skill, event)
        except Exception as e:
            logger.exception("Skill failed", extra={"event_id": event.id, "skill_id": skill.id})
            report.failures.append(DispatchFailure(kind="skill", owner_id=skill.id, error=str(e)))
            if skill.notifications.on_error:
                self._notifications.notify(
                    type="error",
                    title=f"{skill.name} failed",
                    message=str(e),
                    owner_id=skill.id,
                )
            return

        report.runs.append(run)
        if skill.notifications.on_complete:
            self._notifications.notify(
                type="success",
                title=f"{skill.name} completed",
                message=f"Successfully processed {event.type} event",
                run_id=run.id,
                owner_id=skill.id,
            )


class EventQueue:
    """Persist events and process them on a worker pool.

    The dispatcher is resolved after the event is stored. If it cannot be
    built (for example without a provider credential) the event is marked
    failed.
    """

    def __init__(
        self,
        events: EventStore,
        dispatcher: Callable[[], EventDispatcher],
        *,
        workers: int = 4,
    ) -> None:
        self._events = events
        self._resolve_dispatcher = dispatcher
        self._pool = ThreadPoolExecutor(max_workers=workers, thread_name_prefix="clawback-dispatch")

    def enqueue(
        self,
        source: str,
        type: str,
        payload: dict[str, Any] | str,
        metadata: dict[str, Any] | None = None,
    ) -> Event:
        event = self._events.create(source=source, type=type, payload=payload, metadata=metadata)
        logger.info(
            "Event enqueued",
            extra={"event_id": event.id, "source": source, "type": type},
        )
        self.submit(event.id)
        return event

    def submit(self, event_id: str) -> Future[DispatchReport | None]:
        return self._pool.submit(self.process, event_id)

    def dispatch_now(
        self,
        source: str,
        type: str,
        payload: dict[str, Any] | str,
        metadata: dict[str, Any] | None = None,
    ) -> tuple[Event, DispatchReport | None]:
        """Persist and process an event on the calling thread."""

        event = self._events.create(source=source, type=type, payload=payload, metadata=metadata)
        return event, self.process(event.id)

    def process(self, event_id: str) -> DispatchReport | None:
        """Claim and dispatch one event. None if it was already claimed or dispatch failed."""

        event = self._events.claim(event_id)
        if event is None:
            return None
        try:
            report = self._resolve_dispatcher().on_event(event)
        except Exception:
            logger.exception("Failed to process event", extra={"event_id": event_id})
            self._events.set_status(event_id, "failed")
            return None
        self._events.set_status(event_id, "completed")
        return report

    def process_pending(self) -> int:
        """Submit every event still pending (e.g. left behind by a restart)."""

        pending = self._events.list_pending()
        for event in pending:
            self.submit(event.id)
        if pending:
            logger.info("Resubmitted pending events", extra={"count": len(pending)})
        return len(pending)

    def shutdown(self, wait: bool = True) -> None:
        self._pool.shutdown(wait=wait)
