"""Wiring: builds every engine component from one EngineSettings.

The language-model provider (and everything that needs it) is created on
first use, so the stores, registries and scheduler work without an API key.
"""

from __future__ import annotations

import logging
import time
from collections.abc import Callable, Mapping
from functools import cached_property
from typing import Any

from clawback.llm.factory import LLMFactory
from clawback.llm.provider import LLMProvider
from clawback.orchestrator.config import EngineSettings
from clawback.orchestrator.dispatch import EventDispatcher, EventQueue
from clawback.orchestrator.hitl import HitlService
from clawback.orchestrator.models import Event
from clawback.orchestrator.notifications import NotificationService
from clawback.orchestrator.registry import SkillRegistry, WorkflowRegistry
from clawback.orchestrator.scheduling import Scheduler
from clawback.orchestrator.skills.executor import TaskExecutor
from clawback.orchestrator.storage import Stores
from clawback.orchestrator.tools import ToolServer
from clawback.orchestrator.workflow.engine import OrchestratorEngine

logger = logging.getLogger(__name__)

ToolServerFactory = Callable[[], ToolServer]


class Runtime:
    def __init__(
        self,
        settings: EngineSettings,
        *,
        llm: LLMProvider | None = None,
        tool_servers: Mapping[str, ToolServerFactory] | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.settings = settings
        self._llm = llm
        self._tool_servers = dict(tool_servers or {})
        self._sleep = sleep

        self.stores = Stores.open(settings.state_path)
        self.notifications = NotificationService(self.stores.notifications)
        self.skills = SkillRegistry(self.stores.skills, settings.skills_dir)
        self.workflows = WorkflowRegistry(self.stores.workflows)
        self.skills.load()
        self.workflows.load()

    @cached_property
    def llm(self) -> LLMProvider:
        return self._llm or LLMFactory.create(self.settings)

    @cached_property
    def task_executor(self) -> TaskExecutor:
        return TaskExecutor(
            settings=self.settings,
            llm=self.llm,
            runs=self.stores.runs,
            checkpoints=self.stores.checkpoints,
            tool_resolver=self._resolve_tool_server,
            sleep=self._sleep,
        )

    @cached_property
    def engine(self) -> OrchestratorEngine:
        return OrchestratorEngine(
            settings=self.settings,
            llm=self.llm,
            stores=self.stores,
            skills=self.skills,
            workflows=self.workflows,
            task_executor=self.task_executor,
            notifications=self.notifications,
            sleep=self._sleep,
        )

    @cached_property
    def dispatcher(self) -> EventDispatcher:
        return EventDispatcher(
            skills=self.skills,
            workflows=self.workflows,
            engine=self.engine,
            task_executor=self.task_executor,
            notifications=self.notifications,
        )

    @cached_property
    def queue(self) -> EventQueue:
        return EventQueue(
            self.stores.events,
            lambda: self.dispatcher,
            workers=self.settings.dispatch_workers,
        )

    @cached_property
    def scheduler(self) -> Scheduler:
        return Scheduler(
            jobs=self.stores.scheduled_jobs,
            skills=self.skills,
            workflows=self.workflows,
            emit=self._emit,
            hitl_requests=self.stores.hitl_requests,
            tick_seconds=self.settings.scheduler_tick_seconds,
        )

    @cached_property
    def hitl(self) -> HitlService:
        return HitlService(
            hitl_requests=self.stores.hitl_requests,
            workflow_runs=self.stores.workflow_runs,
            resume=lambda hitl_id: self.engine.resume_from_checkpoint(hitl_id),
        )

    def _emit(
        self, source: str, type: str, payload: dict[str, Any], metadata: dict[str, Any]
    ) -> Event:
        # Resolved lazily so syncing jobs never needs the provider.
        return self.queue.enqueue(source, type, payload, metadata)

    def _resolve_tool_server(self, name: str) -> ToolServer | None:
        factory = self._tool_servers.get(name)
        return factory() if factory is not None else None

    def close(self) -> None:
        if "scheduler" in self.__dict__:
            self.scheduler.stop()
        if "queue" in self.__dict__:
            self.queue.shutdown(wait=True)
        logger.info("Runtime closed")
