"""Unit tests for cron validation, job sync and the scheduler tick."""

from __future__ import annotations

from datetime import UTC, datetime, timedelta
from typing import Any

import pytest

from clawback.orchestrator.models import Event, Skill, TriggerRule, Workflow
from clawback.orchestrator.registry import SkillRegistry, WorkflowRegistry
from clawback.orchestrator.runtime import Runtime
from clawback.orchestrator.scheduling import (
    InvalidScheduleError,
    Scheduler,
    get_next_runs,
    next_run,
    validate_schedule,
)
from clawback.orchestrator.storage import Stores

MORNING = datetime(2024, 1, 1, 8, 0, tzinfo=UTC)


class Harness:
    def __init__(self, stores: Stores) -> None:
        self.stores = stores
        self.skills = SkillRegistry(stores.skills)
        self.workflows = WorkflowRegistry(stores.workflows)
        self.emitted: list[Event] = []
        self.scheduler = Scheduler(
            jobs=stores.scheduled_jobs,
            skills=self.skills,
            workflows=self.workflows,
            emit=self._emit,
            hitl_requests=stores.hitl_requests,
            tick_seconds=3600,
        )

    def _emit(self, source: str, type: str, payload: dict[str, Any], metadata: dict[str, Any]) -> Event:
        event = self.stores.events.create(source=source, type=type, payload=payload, metadata=metadata)
        self.emitted.append(event)
        return event


@pytest.fixture
def harness(stores: Stores) -> Harness:
    return Harness(stores)


@pytest.mark.parametrize(
    ("expression", "valid"),
    [
        ("0 9 * * *", True),
        ("*/5 * * * *", True),
        ("* * * * *", True),
        ("0 9 * * 1-5", True),
        ("0 9 * *", False),
        ("* * * * * *", False),
        ("61 * * * *", False),
        ("every morning", False),
    ],
)
def test_validate_schedule(expression: str, valid: bool) -> None:
    result = validate_schedule(expression)
    assert result.valid is valid
    assert (result.error is None) is valid


def test_next_run_is_strictly_after() -> None:
    assert next_run("0 9 * * *", MORNING) == datetime(2024, 1, 1, 9, 0, tzinfo=UTC)
    at_nine = datetime(2024, 1, 1, 9, 0, tzinfo=UTC)
    assert next_run("0 9 * * *", at_nine) == datetime(2024, 1, 2, 9, 0, tzinfo=UTC)


def test_get_next_runs() -> None:
    runs = get_next_runs("0 */6 * * *", 3, MORNING)
    assert runs == [
        datetime(2024, 1, 1, 12, 0, tzinfo=UTC),
        datetime(2024, 1, 1, 18, 0, tzinfo=UTC),
        datetime(2024, 1, 2, 0, 0, tzinfo=UTC),
    ]
    with pytest.raises(InvalidScheduleError):
        get_next_runs("nope", 3, MORNING)


def test_daily_job_fires_once_and_advances(harness: Harness) -> None:
    skill = harness.skills.register(
        Skill(name="standup", triggers=[TriggerRule(source="cron", schedule="0 9 * * *")])
    )
    harness.scheduler.sync_jobs(now=MORNING)
    [job] = harness.stores.scheduled_jobs.all()
    assert job.skill_id == skill.id
    assert job.next_run_at == datetime(2024, 1, 1, 9, 0, tzinfo=UTC)

    assert harness.scheduler.tick(now=datetime(2024, 1, 1, 8, 59, tzinfo=UTC)) == []

    fire_time = datetime(2024, 1, 1, 9, 0, 30, tzinfo=UTC)
    [event] = harness.scheduler.tick(now=fire_time)
    assert event.source == "cron"
    assert event.type == "scheduled"
    assert event.payload == {
        "timestamp": fire_time.isoformat(),
        "schedule": "0 9 * * *",
        "ownerId": skill.id,
        "skillId": skill.id,
        "jobId": job.id,
    }
    assert event.metadata == {"triggerIndex": 0}

    fired = harness.stores.scheduled_jobs.get(job.id)
    assert fired.last_run_at == fire_time
    assert fired.next_run_at == datetime(2024, 1, 2, 9, 0, tzinfo=UTC)
    assert harness.scheduler.tick(now=fire_time) == []


def test_workflow_job_payload_names_workflow(harness: Harness) -> None:
    workflow = harness.workflows.register(
        Workflow(name="nightly", triggers=[TriggerRule(source="cron", schedule="0 2 * * *")])
    )
    harness.scheduler.sync_jobs(now=MORNING)

    [event] = harness.scheduler.tick(now=datetime(2024, 1, 2, 2, 0, tzinfo=UTC))

    assert event.payload["workflowId"] == workflow.id
    assert "skillId" not in event.payload


def test_sync_is_idempotent(harness: Harness, monkeypatch: pytest.MonkeyPatch) -> None:
    harness.skills.register(
        Skill(
            name="multi",
            triggers=[
                TriggerRule(source="cron", schedule="0 9 * * *"),
                TriggerRule(source="github", events=["push"]),
                TriggerRule(source="cron", schedule="*/15 * * * *"),
            ],
        )
    )
    harness.scheduler.sync_jobs(now=MORNING)
    jobs = harness.stores.scheduled_jobs.all()
    assert sorted(j.trigger_index for j in jobs) == [0, 2]

    writes: list[int] = []
    jobs_store = harness.stores.scheduled_jobs
    original_save = jobs_store._save_unlocked

    def _counting_save(items: list[Any]) -> None:
        writes.append(len(items))
        original_save(items)

    monkeypatch.setattr(jobs_store, "_save_unlocked", _counting_save)

    harness.scheduler.sync_jobs(now=MORNING + timedelta(hours=1))
    harness.scheduler.sync_jobs(now=MORNING + timedelta(hours=2))

    assert writes == []
    assert [j.model_dump() for j in jobs_store.all()] == [j.model_dump() for j in jobs]


def test_schedule_change_and_invalid_schedule(harness: Harness) -> None:
    skill = harness.skills.register(
        Skill(name="report", triggers=[TriggerRule(source="cron", schedule="0 9 * * *")])
    )
    harness.scheduler.sync_jobs(now=MORNING)
    [job] = harness.stores.scheduled_jobs.all()

    harness.skills.update(skill.id, triggers=[TriggerRule(source="cron", schedule="30 10 * * *")])
    harness.scheduler.sync_jobs(now=MORNING)
    changed = harness.stores.scheduled_jobs.get(job.id)
    assert changed.schedule == "30 10 * * *"
    assert changed.next_run_at == datetime(2024, 1, 1, 10, 30, tzinfo=UTC)

    harness.skills.update(skill.id, triggers=[TriggerRule(source="cron", schedule="bogus")])
    harness.scheduler.sync_jobs(now=MORNING)
    broken = harness.stores.scheduled_jobs.get(job.id)
    assert broken.enabled is False
    assert harness.scheduler.tick(now=datetime(2024, 1, 2, tzinfo=UTC)) == []

    harness.skills.update(skill.id, triggers=[TriggerRule(source="cron", schedule="0 12 * * *")])
    harness.scheduler.sync_jobs(now=MORNING)
    repaired = harness.stores.scheduled_jobs.get(job.id)
    assert repaired.enabled is True
    assert repaired.next_run_at == datetime(2024, 1, 1, 12, 0, tzinfo=UTC)


def test_orphaned_jobs_are_deleted_per_owner_kind(harness: Harness) -> None:
    skill = harness.skills.register(
        Skill(name="s", triggers=[TriggerRule(source="cron", schedule="0 9 * * *")])
    )
    workflow = harness.workflows.register(
        Workflow(name="w", triggers=[TriggerRule(source="cron", schedule="0 9 * * *")])
    )
    harness.scheduler.sync_jobs(now=MORNING)
    assert len(harness.stores.scheduled_jobs.all()) == 2

    harness.workflows.update(workflow.id, triggers=[TriggerRule(source="github")])
    harness.scheduler.sync_jobs(now=MORNING)
    [remaining] = harness.stores.scheduled_jobs.all()
    assert remaining.skill_id == skill.id

    harness.skills.update(skill.id, enabled=False)
    harness.scheduler.sync_jobs(now=MORNING)
    assert harness.stores.scheduled_jobs.all() == []


def test_job_with_missing_owner_is_disabled(harness: Harness) -> None:
    job = harness.stores.scheduled_jobs.create(
        skill_id="skill_gone",
        trigger_index=0,
        schedule="0 9 * * *",
        next_run_at=datetime(2024, 1, 1, 9, 0, tzinfo=UTC),
    )

    assert harness.scheduler.tick(now=datetime(2024, 1, 1, 9, 1, tzinfo=UTC)) == []
    assert harness.stores.scheduled_jobs.get(job.id).enabled is False
    assert harness.emitted == []


def test_tick_expires_overdue_hitl_requests(harness: Harness) -> None:
    request = harness.stores.hitl_requests.create(
        workflow_run_id="wfrun_1",
        checkpoint_id="cp_1",
        prompt="Approve?",
        timeout_at=datetime(2024, 1, 1, 8, 30, tzinfo=UTC),
    )

    harness.scheduler.tick(now=datetime(2024, 1, 1, 9, 0, tzinfo=UTC))

    assert harness.stores.hitl_requests.get(request.id).status == "expired"


def test_start_and_stop(harness: Harness) -> None:
    harness.scheduler.start()
    assert harness.scheduler.running
    harness.scheduler.stop(timeout=5)
    assert not harness.scheduler.running


def test_tick_without_provider_credentials_still_advances_the_job(settings) -> None:
    runtime = Runtime(settings.model_copy(update={"openai_api_key": ""}), sleep=lambda _s: None)
    try:
        workflow = runtime.workflows.register(
            Workflow(name="nightly", triggers=[TriggerRule(source="cron", schedule="0 2 * * *")])
        )
        runtime.scheduler.sync_jobs(now=MORNING)
        [job] = runtime.stores.scheduled_jobs.all()

        fire_time = datetime(2024, 1, 2, 2, 0, tzinfo=UTC)
        [event] = runtime.scheduler.tick(now=fire_time)
        runtime.queue.shutdown(wait=True)

        assert event.payload["workflowId"] == workflow.id
        assert runtime.stores.events.get(event.id).status == "failed"
        advanced = runtime.stores.scheduled_jobs.get(job.id)
        assert advanced.enabled is True
        assert advanced.next_run_at == datetime(2024, 1, 3, 2, 0, tzinfo=UTC)
        assert runtime.scheduler.tick(now=fire_time) == []
    finally:
        runtime.close()
