"""Human-in-the-loop responses and fire-and-forget resumption.

Responding is a compare-and-swap on the request; resuming runs the rest of
the workflow on a daemon thread. The caller gets control back immediately and
polls the WorkflowRun for the outcome. Failures inside the resumed run are
already persisted on the run by the engine; here they are only logged.
"""

from __future__ import annotations

import logging
import threading
from collections.abc import Callable

from clawback.errors import NotFoundError
from clawback.orchestrator.models import HitlRequest, WorkflowRun
from clawback.orchestrator.storage import HitlRequestStore, WorkflowRunStore

logger = logging.getLogger(__name__)

Resume = Callable[[str], WorkflowRun]


class HitlService:
    def __init__(
        self,
        *,
        hitl_requests: HitlRequestStore,
        workflow_runs: WorkflowRunStore,
        resume: Resume,
    ) -> None:
        self._hitl_requests = hitl_requests
        self._workflow_runs = workflow_runs
        self._resume = resume

    def list_pending(self) -> list[HitlRequest]:
        return self._hitl_requests.list_pending()

    def respond(self, hitl_id: str, response: str) -> HitlRequest | None:
        """Record the human's answer. None if the request is no longer pending.

        Raises:
            NotFoundError: No such request.
        """

        if self._hitl_requests.get(hitl_id) is None:
            raise NotFoundError(f"HITL request {hitl_id} not found")
        responded = self._hitl_requests.respond(hitl_id, response)
        if responded is not None:
            logger.info(
                "HITL request responded",
                extra={"hitl_request_id": hitl_id, "workflow_run_id": responded.workflow_run_id},
            )
        return responded

    def respond_and_resume(self, hitl_id: str, response: str) -> HitlRequest | None:
        responded = self.respond(hitl_id, response)
        if responded is not None:
            self.resume_in_background(hitl_id)
        return responded

    def resume_in_background(self, hitl_id: str) -> threading.Thread:
        thread = threading.Thread(
            target=self._resume_logged,
            args=(hitl_id,),
            name=f"clawback-resume-{hitl_id}",
            daemon=True,
        )
        thread.start()
        return thread

    def _resume_logged(self, hitl_id: str) -> None:
        try:
            run = self._resume(hitl_id)
        except Exception:
            logger.exception("Resume failed", extra={"hitl_request_id": hitl_id})
            return
        logger.info(
            "Resumed workflow run finished",
            extra={"hitl_request_id": hitl_id, "workflow_run_id": run.id, "status": run.status},
        )

    def cancel_request(self, hitl_id: str) -> HitlRequest | None:
        """Cancel a pending request. The run stays ``waiting_for_input``."""

        if self._hitl_requests.get(hitl_id) is None:
            raise NotFoundError(f"HITL request {hitl_id} not found")
        return self._hitl_requests.cancel(hitl_id)

    def cancel_workflow_run(self, workflow_run_id: str) -> WorkflowRun:
        """Mark the run ``cancelled`` and cancel any request it is waiting on.

        Raises:
            NotFoundError: No such run.
            IllegalTransitionError: The run already finished.
        """

        cancelled = self._workflow_runs.set_status(workflow_run_id, "cancelled")
        for request in self._hitl_requests.list_for_workflow_run(workflow_run_id):
            if request.status == "pending":
                self._hitl_requests.cancel(request.id)
        logger.info("Workflow run cancelled", extra={"workflow_run_id": workflow_run_id})
        return cancelled
