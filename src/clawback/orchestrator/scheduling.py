"""Cron scheduler.

Scheduled trigger rules become ScheduledJob records (one per owner and
trigger index). A background thread ticks on a fixed interval; each tick
emits a synthetic ``cron/scheduled`` event for every due job and advances
the job's ``next_run_at``. Firing is at-least-once: a crash between emitting
and advancing fires the job again on restart.

All times are UTC.
"""

from __future__ import annotations

import logging
import threading
from collections.abc import Callable, Iterable
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import Any

from croniter import CroniterBadCronError, CroniterBadDateError, croniter

from clawback.orchestrator.models import Event, ScheduledJob, Skill, Workflow, utc_now
from clawback.orchestrator.registry import SkillRegistry, WorkflowRegistry
from clawback.orchestrator.storage import HitlRequestStore, ScheduledJobStore
from clawback.orchestrator.workflow.events import (
    CRON_SOURCE,
    OWNER_ID_KEY,
    SCHEDULED_TYPE,
    SKILL_ID_KEY,
    WORKFLOW_ID_KEY,
)
from clawback.orchestrator.workflow.triggers import scheduled_rules

logger = logging.getLogger(__name__)

MIN_INTERVAL_SECONDS = 60
CRON_FIELD_COUNT = 5

# (source, type, payload, metadata) -> persisted event
EventEmitter = Callable[[str, str, dict[str, Any], dict[str, Any]], Event]


class InvalidScheduleError(ValueError):
    pass


@dataclass(frozen=True, slots=True)
class ScheduleValidation:
    valid: bool
    error: str | None = None


def _parse(schedule: str, start: datetime) -> croniter:
    if len(schedule.split()) != CRON_FIELD_COUNT:
        raise InvalidScheduleError(
            f"Expected {CRON_FIELD_COUNT} cron fields, got {len(schedule.split())}: {schedule!r}"
        )
    try:
        return croniter(schedule, start)
    except (CroniterBadCronError, ValueError, KeyError) as e:
        raise InvalidScheduleError(f"Invalid cron expression {schedule!r}: {e}") from e


def next_run(schedule: str, from_time: datetime | None = None) -> datetime:
    """First fire time strictly after ``from_time`` (default: now)."""

    start = (from_time or utc_now()).astimezone(UTC)
    try:
        return _parse(schedule, start).get_next(datetime).astimezone(UTC)
    except CroniterBadDateError as e:
        raise InvalidScheduleError(f"Schedule {schedule!r} never fires: {e}") from e


def get_next_runs(schedule: str, count: int = 5, from_time: datetime | None = None) -> list[datetime]:
    runs: list[datetime] = []
    current = from_time or utc_now()
    for _ in range(count):
        current = next_run(schedule, current)
        runs.append(current)
    return runs


def validate_schedule(schedule: str) -> ScheduleValidation:
    try:
        first, second = get_next_runs(schedule, 2)
    except InvalidScheduleError as e:
        return ScheduleValidation(valid=False, error=str(e))
    if (second - first).total_seconds() < MIN_INTERVAL_SECONDS:
        return ScheduleValidation(
            valid=False, error="Schedule runs too frequently (minimum interval is 1 minute)"
        )
    return ScheduleValidation(valid=True)


class Scheduler:
    def __init__(
        self,
        *,
        jobs: ScheduledJobStore,
        skills: SkillRegistry,
        workflows: WorkflowRegistry,
        emit: EventEmitter,
        hitl_requests: HitlRequestStore | None = None,
        tick_seconds: float = 60.0,
    ) -> None:
        self._jobs = jobs
        self._skills = skills
        self._workflows = workflows
        self._emit = emit
        self._hitl_requests = hitl_requests
        self._tick_seconds = tick_seconds
        self._stop = threading.Event()
        self._thread: threading.Thread | None = None

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def start(self) -> None:
        """Start the background loop. Ticks once immediately."""

        if self.running:
            return
        self._stop.clear()
        self._thread = threading.Thread(target=self._loop, name="clawback-scheduler", daemon=True)
        self._thread.start()
        logger.info("Scheduler started", extra={"tick_seconds": self._tick_seconds})

    def stop(self, timeout: float | None = 5.0) -> None:
        self._stop.set()
        thread, self._thread = self._thread, None
        if thread is not None:
            thread.join(timeout=timeout)
        logger.info("Scheduler stopped")

    def _loop(self) -> None:
        while not self._stop.is_set():
            try:
                self.tick()
            except Exception:
                logger.exception("Scheduler tick failed")
            self._stop.wait(self._tick_seconds)

    def tick(self, now: datetime | None = None) -> list[Event]:
        """Fire every due job once. Returns the emitted events."""

        now = now or utc_now()
        if self._hitl_requests is not None:
            for expired in self._hitl_requests.expire_overdue(now):
                logger.info(
                    "HITL request expired",
                    extra={"hitl_request_id": expired.id, "workflow_run_id": expired.workflow_run_id},
                )

        emitted: list[Event] = []
        for job in self._jobs.find_due(now):
            try:
                event = self._fire(job, now)
            except Exception:
                logger.exception("Failed to fire scheduled job", extra={"job_id": job.id})
                continue
            if event is not None:
                emitted.append(event)
        return emitted

    def _fire(self, job: ScheduledJob, now: datetime) -> Event | None:
        owner: Skill | Workflow | None
        if job.skill_id is not None:
            owner, owner_key = self._skills.get(job.skill_id), SKILL_ID_KEY
        else:
            owner, owner_key = self._workflows.get(job.owner_id), WORKFLOW_ID_KEY

        if owner is None:
            logger.warning(
                "Scheduled job owner not found, disabling job",
                extra={"job_id": job.id, "owner_id": job.owner_id, "owner_kind": job.owner_kind},
            )
            self._jobs.set_enabled(job.id, False)
            return None

        logger.info("Firing scheduled job", extra={"job_id": job.id, "owner_id": owner.id})
        event = self._emit(
            CRON_SOURCE,
            SCHEDULED_TYPE,
            {
                "timestamp": now.isoformat(),
                "schedule": job.schedule,
                OWNER_ID_KEY: owner.id,
                owner_key: owner.id,
                "jobId": job.id,
            },
            {"triggerIndex": job.trigger_index},
        )

        try:
            following = next_run(job.schedule, now)
        except InvalidScheduleError as e:
            logger.warning(
                "Could not compute next run, disabling job",
                extra={"job_id": job.id, "error": str(e)},
            )
            self._jobs.set_enabled(job.id, False)
            return event

        self._jobs.update_after_run(job.id, last_run_at=now, next_run_at=following)
        return event

    def sync_jobs(
        self,
        skills: Iterable[Skill] | None = None,
        workflows: Iterable[Workflow] | None = None,
        now: datetime | None = None,
    ) -> None:
        """Reconcile ScheduledJobs with the scheduled trigger rules of enabled definitions.

        Jobs are keyed by (owner id, trigger index). Unchanged rules cause no
        writes, so calling this repeatedly is idempotent.
        """

        now = now or utc_now()
        skill_list = [s for s in (skills if skills is not None else self._skills.list()) if s.enabled]
        workflow_list = [
            w for w in (workflows if workflows is not None else self._workflows.list()) if w.enabled
        ]

        active_skill_keys: set[tuple[str, int]] = set()
        for skill in skill_list:
            for index, schedule in scheduled_rules(skill):
                active_skill_keys.add((skill.id, index))
                self._sync_job(schedule, index, now, skill_id=skill.id)

        active_workflow_keys: set[tuple[str, int]] = set()
        for workflow in workflow_list:
            for index, schedule in scheduled_rules(workflow):
                active_workflow_keys.add((workflow.id, index))
                self._sync_job(schedule, index, now, workflow_id=workflow.id)

        for job in self._jobs.all():
            key = (job.owner_id, job.trigger_index)
            orphaned = (
                key not in active_skill_keys
                if job.owner_kind == "skill"
                else key not in active_workflow_keys
            )
            if orphaned:
                self._jobs.delete(job.id)
                logger.info(
                    "Deleted orphaned scheduled job",
                    extra={"job_id": job.id, "owner_id": job.owner_id, "owner_kind": job.owner_kind},
                )

    def _sync_job(
        self,
        schedule: str,
        trigger_index: int,
        now: datetime,
        *,
        skill_id: str | None = None,
        workflow_id: str | None = None,
    ) -> None:
        existing = self._jobs.find_for_owner(
            skill_id=skill_id, workflow_id=workflow_id, trigger_index=trigger_index
        )
        if existing is not None and existing.schedule == schedule and existing.enabled:
            return

        try:
            following = next_run(schedule, now)
        except InvalidScheduleError as e:
            logger.warning(
                "Invalid schedule",
                extra={"owner_id": skill_id or workflow_id, "schedule": schedule, "error": str(e)},
            )
            if existing is not None and existing.enabled:
                self._jobs.update(existing.id, schedule=schedule, enabled=False)
            return

        if existing is None:
            job = self._jobs.create(
                skill_id=skill_id,
                workflow_id=workflow_id,
                trigger_index=trigger_index,
                schedule=schedule,
                next_run_at=following,
            )
            logger.info("Created scheduled job", extra={"job_id": job.id, "schedule": schedule})
            return

        self._jobs.update(existing.id, schedule=schedule, next_run_at=following, enabled=True)
        logger.info("Updated scheduled job", extra={"job_id": existing.id, "schedule": schedule})
