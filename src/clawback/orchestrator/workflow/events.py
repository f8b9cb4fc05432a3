from __future__ import annotations

import json
from typing import Any

from clawback.orchestrator.models import Event

CRON_SOURCE = "cron"
SCHEDULED_TYPE = "scheduled"

# Payload keys a scheduled event uses to name its owner directly.
SKILL_ID_KEY = "skillId"
WORKFLOW_ID_KEY = "workflowId"
OWNER_ID_KEY = "ownerId"


def parse_payload(raw: dict[str, Any] | str | None) -> dict[str, Any]:
    """Return the event payload as a dict.

    Payloads may arrive pre-serialized (stored as a JSON string). Anything that
    does not decode to a JSON object is wrapped as ``{"value": ...}`` so that
    callers can always narrow fields with ``.get``.
    """

    if raw is None:
        return {}
    if isinstance(raw, dict):
        return raw
    try:
        decoded = json.loads(raw)
    except json.JSONDecodeError:
        return {"value": raw}
    if isinstance(decoded, dict):
        return decoded
    return {"value": decoded}


def is_scheduled_event(event: Event) -> bool:
    return event.source == CRON_SOURCE and event.type == SCHEDULED_TYPE


def format_event_block(event: Event, payload: dict[str, Any]) -> str:
    return (
        f"**Source:** {event.source}\n"
        f"**Type:** {event.type}\n\n"
        "**Payload:**\n"
        "```json\n"
        f"{json.dumps(payload, indent=2, ensure_ascii=False, default=str)}\n"
        "```"
    )
