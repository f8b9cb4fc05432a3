"""Clawback: event-driven automation engine.

Events (webhooks, schedules, API calls) are matched against declarative
trigger rules and dispatched either to a single-step skill or to a
multi-step, model-orchestrated workflow that can pause for human input and
resume later.
"""

__version__ = "0.1.0"

from clawback.orchestrator.config import EngineSettings

__all__ = ["__version__", "EngineSettings"]
