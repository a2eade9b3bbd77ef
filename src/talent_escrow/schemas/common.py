"""Schemas shared across the API: timestamps, audit events, health."""

from __future__ import annotations

import uuid  # noqa: TC003 - pydantic resolves annotations at runtime
from datetime import datetime
from typing import Annotated

from pydantic import AfterValidator, BaseModel, ConfigDict, Field

from talent_escrow.domain.timeutils import ensure_utc

# SQLite hands back naive datetimes; responses are always UTC-aware.
UtcDatetime = Annotated[datetime, AfterValidator(ensure_utc)]


class AuditEventResponse(BaseModel):
    """Response schema for an audit event."""

    model_config = ConfigDict(from_attributes=True, populate_by_name=True)

    id: uuid.UUID
    entity_type: str
    entity_id: uuid.UUID
    event_type: str
    old_status: str | None
    new_status: str
    actor: str
    metadata: dict | None = Field(default=None, validation_alias="metadata_json")
    created_at: UtcDatetime


class ErrorResponse(BaseModel):
    """Body returned for every handled domain error."""

    error: str
    message: str
    current_state: dict | None = None


class HealthResponse(BaseModel):
    """Health check response."""

    status: str = "ok"
    version: str = "0.1.0"
    database: str = "unknown"
    redis: str = "unknown"
