"""FastAPI app factory.

Endpoints are thin wrappers over the engine runtime: ingestion enqueues and
returns 202, everything else reads or updates the stores.
"""

from __future__ import annotations

import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from typing import Any

from fastapi import Body, FastAPI, HTTPException, Query, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from clawback import __version__
from clawback.errors import NotFoundError
from clawback.orchestrator.config import EngineSettings
from clawback.orchestrator.models import (
    Checkpoint,
    Event,
    HitlRequest,
    Run,
    Skill,
    Workflow,
    WorkflowRun,
)
from clawback.orchestrator.runtime import Runtime
from clawback.orchestrator.scheduling import get_next_runs, validate_schedule
from clawback.orchestrator.storage import CheckpointOwner
from clawback.orchestrator.workflow.state_machine import IllegalTransitionError
from clawback.server.config import ServerSettings
from clawback.server.models import (
    EmitEventRequest,
    EventAccepted,
    HitlRespondRequest,
    ScheduleValidationResponse,
)

logger = logging.getLogger(__name__)

# Header carrying the event type, per webhook source.
EVENT_TYPE_HEADERS: dict[str, str] = {
    "github": "x-github-event",
    "gitlab": "x-gitlab-event",
    "slack": "x-slack-request-type",
}


def webhook_event_type(source: str, headers: Any, payload: dict[str, Any]) -> str:
    event_type = "unknown"
    header_name = EVENT_TYPE_HEADERS.get(source)
    if header_name is not None:
        event_type = headers.get(header_name) or event_type
    action = payload.get("action")
    if source == "github" and isinstance(action, str):
        event_type = f"{event_type}.{action}"
    return event_type


def create_app(runtime: Runtime | None = None, settings: ServerSettings | None = None) -> FastAPI:
    settings = settings or ServerSettings()
    runtime = runtime or Runtime(EngineSettings())

    @asynccontextmanager
    async def lifespan(_app: FastAPI) -> AsyncIterator[None]:
        if settings.start_scheduler and runtime.settings.scheduler_enabled:
            runtime.scheduler.sync_jobs()
            runtime.scheduler.start()
        try:
            yield
        finally:
            runtime.close()

    app = FastAPI(
        title="Clawback",
        version=__version__,
        description="REST API over the clawback automation engine.",
        openapi_url="/api/openapi.json",
        docs_url="/api/docs",
        redoc_url="/api/redoc",
        lifespan=lifespan,
    )

    app.state.settings = settings
    app.state.runtime = runtime

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.parsed_cors_origins(),
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.exception_handler(NotFoundError)
    async def _not_found(_request: Request, exc: NotFoundError) -> JSONResponse:
        return JSONResponse(status_code=404, content={"detail": str(exc)})

    @app.exception_handler(IllegalTransitionError)
    async def _conflict(_request: Request, exc: IllegalTransitionError) -> JSONResponse:
        return JSONResponse(status_code=409, content={"detail": str(exc)})

    stores = runtime.stores

    @app.get("/api/health")
    def health() -> dict[str, str]:
        return {"status": "ok"}

    @app.get("/api/skills", response_model=list[Skill])
    def list_skills() -> list[Skill]:
        return runtime.skills.list()

    @app.post("/api/skills", status_code=201, response_model=Skill)
    def create_skill(skill: Skill) -> Skill:
        created = runtime.skills.register(skill)
        _resync_schedules(runtime, settings)
        return created

    @app.get("/api/workflows", response_model=list[Workflow])
    def list_workflows() -> list[Workflow]:
        return runtime.workflows.list()

    @app.post("/api/workflows", status_code=201, response_model=Workflow)
    def create_workflow(workflow: Workflow) -> Workflow:
        created = runtime.workflows.register(workflow)
        _resync_schedules(runtime, settings)
        return created

    @app.post("/api/webhooks/{source}", status_code=202, response_model=EventAccepted)
    def receive_webhook(
        source: str, request: Request, payload: dict[str, Any] = Body(...)
    ) -> EventAccepted:
        event_type = webhook_event_type(source, request.headers, payload)
        metadata = {
            "headers": {
                key: value
                for key, value in request.headers.items()
                if not key.startswith("content-") and key != "host"
            }
        }
        event = runtime.queue.enqueue(source, event_type, payload, metadata)
        return EventAccepted(event_id=event.id)

    @app.post("/api/events", status_code=202, response_model=EventAccepted)
    def emit_event(req: EmitEventRequest) -> EventAccepted:
        event = runtime.queue.enqueue(req.source, req.type, req.payload, req.metadata)
        return EventAccepted(event_id=event.id)

    @app.get("/api/events/{event_id}", response_model=Event)
    def get_event(event_id: str) -> Event:
        return _require(stores.events.get(event_id), f"Event {event_id} not found")

    @app.get("/api/workflow-runs/{run_id}", response_model=WorkflowRun)
    def get_workflow_run(run_id: str) -> WorkflowRun:
        return _require(stores.workflow_runs.get(run_id), f"Workflow run {run_id} not found")

    @app.get("/api/workflow-runs/{run_id}/checkpoints", response_model=list[Checkpoint])
    def list_workflow_run_checkpoints(run_id: str) -> list[Checkpoint]:
        _require(stores.workflow_runs.get(run_id), f"Workflow run {run_id} not found")
        return stores.checkpoints.list_for(CheckpointOwner.workflow_run(run_id))

    @app.post("/api/workflow-runs/{run_id}/cancel", response_model=WorkflowRun)
    def cancel_workflow_run(run_id: str) -> WorkflowRun:
        return runtime.hitl.cancel_workflow_run(run_id)

    @app.get("/api/runs/{run_id}", response_model=Run)
    def get_run(run_id: str) -> Run:
        return _require(stores.runs.get(run_id), f"Run {run_id} not found")

    @app.get("/api/runs/{run_id}/checkpoints", response_model=list[Checkpoint])
    def list_run_checkpoints(run_id: str) -> list[Checkpoint]:
        _require(stores.runs.get(run_id), f"Run {run_id} not found")
        return stores.checkpoints.list_for(CheckpointOwner.run(run_id))

    @app.get("/api/hitl-requests", response_model=list[HitlRequest])
    def list_pending_hitl_requests() -> list[HitlRequest]:
        return runtime.hitl.list_pending()

    @app.get("/api/hitl-requests/{hitl_id}", response_model=HitlRequest)
    def get_hitl_request(hitl_id: str) -> HitlRequest:
        return _require(stores.hitl_requests.get(hitl_id), f"HITL request {hitl_id} not found")

    @app.post("/api/hitl-requests/{hitl_id}/respond", status_code=202, response_model=HitlRequest)
    def respond_to_hitl_request(hitl_id: str, req: HitlRespondRequest) -> HitlRequest:
        responded = runtime.hitl.respond_and_resume(hitl_id, req.response)
        if responded is None:
            raise HTTPException(status_code=409, detail="HITL request is no longer pending")
        return responded

    @app.post("/api/hitl-requests/{hitl_id}/cancel", response_model=HitlRequest)
    def cancel_hitl_request(hitl_id: str) -> HitlRequest:
        cancelled = runtime.hitl.cancel_request(hitl_id)
        if cancelled is None:
            raise HTTPException(status_code=409, detail="HITL request is no longer pending")
        return cancelled

    @app.get("/api/schedules/validate", response_model=ScheduleValidationResponse)
    def validate_schedule_expression(
        expression: str = Query(min_length=1),
    ) -> ScheduleValidationResponse:
        result = validate_schedule(expression)
        if not result.valid:
            return ScheduleValidationResponse(valid=False, error=result.error)
        return ScheduleValidationResponse(valid=True, next_runs=get_next_runs(expression, 5))

    return app


def _resync_schedules(runtime: Runtime, settings: ServerSettings) -> None:
    if settings.start_scheduler and runtime.settings.scheduler_enabled:
        runtime.scheduler.sync_jobs()


def _require(value: Any, message: str) -> Any:
    if value is None:
        raise HTTPException(status_code=404, detail=message)
    return value
