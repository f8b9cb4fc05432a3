"""Request and response bodies for the REST API.

Domain records are returned as-is (camelCase on the wire); only the shapes
that exist purely for HTTP live here.
"""

from __future__ import annotations

from datetime import datetime
from typing import Any

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


class ApiModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class EmitEventRequest(ApiModel):
    source: str = Field(min_length=1)
    type: str = Field(min_length=1)
    payload: dict[str, Any] = Field(default_factory=dict)
    metadata: dict[str, Any] = Field(default_factory=dict)


class EventAccepted(ApiModel):
    event_id: str
    message: str = "Event queued for processing"


class HitlRespondRequest(ApiModel):
    response: str = Field(min_length=1)


class ScheduleValidationResponse(ApiModel):
    valid: bool
    error: str | None = None
    next_runs: list[datetime] = Field(default_factory=list)
