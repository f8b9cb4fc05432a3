"""Trigger matching: which skills and workflows does an event activate?

Pure evaluation. No I/O and no state; the registries call into this module
with their cached definitions.

Confidence only orders the fan-out. It never excludes a match:
- 1.0: the rule declared payload filters and they were satisfied
- 0.8: the event type matched the rule's ``events`` list
- 0.5: source-only rule (no ``events`` list)
"""

from __future__ import annotations

import re
from collections.abc import Iterable, Mapping, Sequence
from dataclasses import dataclass
from typing import Any, Generic, Protocol, TypeVar

from clawback.orchestrator.models import TriggerFilters, TriggerRule

from .events import CRON_SOURCE, OWNER_ID_KEY, SCHEDULED_TYPE, SKILL_ID_KEY, WORKFLOW_ID_KEY

WILDCARD_SOURCE = "*"

FILTERED_CONFIDENCE = 1.0
EVENT_LIST_CONFIDENCE = 0.8
SOURCE_ONLY_CONFIDENCE = 0.5


class TriggerOwner(Protocol):
    @property
    def id(self) -> str: ...

    @property
    def triggers(self) -> list[TriggerRule]: ...


OwnerT = TypeVar("OwnerT", bound=TriggerOwner)


@dataclass(frozen=True, slots=True)
class TriggerMatch(Generic[OwnerT]):
    owner: OwnerT
    confidence: float
    # None when a scheduled event named the owner directly.
    trigger_index: int | None = None


def matches_event_pattern(event_type: str, pattern: str) -> bool:
    """Exact match, or a glob where ``*`` matches any run of characters.

    The glob is anchored at both ends: ``pull_request.*`` matches
    ``pull_request.opened`` but not ``push``.
    """

    if pattern == event_type:
        return True
    if "*" not in pattern:
        return False
    regex = ".*".join(re.escape(part) for part in pattern.split("*"))
    return re.fullmatch(regex, event_type) is not None


def matches_filters(filters: TriggerFilters, payload: Mapping[str, Any]) -> bool:
    if filters.repository:
        repository = payload.get("repository")
        full_name = repository.get("full_name") if isinstance(repository, Mapping) else None
        if full_name != filters.repository:
            return False

    if filters.ref:
        ref = payload.get("ref")
        if not isinstance(ref, str) or ref not in filters.ref:
            return False

    return True


def evaluate_rule(
    rule: TriggerRule, *, source: str, event_type: str, payload: Mapping[str, Any]
) -> float | None:
    """Return the match confidence for one rule, or None if it does not match."""

    if rule.source != source and rule.source != WILDCARD_SOURCE:
        return None

    # Cron rules only ever fire through the scheduler.
    if rule.is_scheduled or rule.source == CRON_SOURCE:
        return None

    if rule.events:
        if not any(matches_event_pattern(event_type, p) for p in rule.events):
            return None
        confidence = EVENT_LIST_CONFIDENCE
    elif rule.source == source:
        confidence = SOURCE_ONLY_CONFIDENCE
    else:
        # A wildcard source needs an explicit event list.
        return None

    if rule.filters is not None and not rule.filters.is_empty():
        if not matches_filters(rule.filters, payload):
            return None
        return FILTERED_CONFIDENCE

    return confidence


def names_owner_directly(source: str, event_type: str, payload: Mapping[str, Any]) -> bool:
    if source != CRON_SOURCE or event_type != SCHEDULED_TYPE:
        return False
    return any(key in payload for key in (SKILL_ID_KEY, WORKFLOW_ID_KEY, OWNER_ID_KEY))


def match_triggers(
    owners: Iterable[OwnerT],
    *,
    source: str,
    event_type: str,
    payload: Mapping[str, Any],
    owner_key: str,
) -> list[TriggerMatch[OwnerT]]:
    """Rank the owners whose trigger rules accept the event.

    ``owner_key`` is the payload key a scheduled event uses to name an owner of
    this kind (``skillId`` or ``workflowId``). Scheduled events that name an
    owner bypass rule evaluation entirely: they match that owner (if it is
    among ``owners``) or nothing.

    Each owner appears at most once, with its best-scoring rule. Ties keep the
    iteration order of ``owners``.
    """

    if names_owner_directly(source, event_type, payload):
        owner_id = payload.get(owner_key, payload.get(OWNER_ID_KEY))
        if not isinstance(owner_id, str):
            return []
        for owner in owners:
            if owner.id == owner_id:
                return [TriggerMatch(owner=owner, confidence=FILTERED_CONFIDENCE)]
        return []

    matches: list[TriggerMatch[OwnerT]] = []
    for owner in owners:
        best: TriggerMatch[OwnerT] | None = None
        for index, rule in enumerate(owner.triggers):
            confidence = evaluate_rule(
                rule, source=source, event_type=event_type, payload=payload
            )
            if confidence is None:
                continue
            if best is None or confidence > best.confidence:
                best = TriggerMatch(owner=owner, confidence=confidence, trigger_index=index)
        if best is not None:
            matches.append(best)

    # list.sort is stable, so equal confidences keep owner order.
    matches.sort(key=lambda m: m.confidence, reverse=True)
    return matches


def scheduled_rules(owner: TriggerOwner) -> Sequence[tuple[int, str]]:
    """(trigger_index, schedule) for every cron rule on the owner."""

    return [
        (index, rule.schedule)
        for index, rule in enumerate(owner.triggers)
        if rule.schedule
    ]
