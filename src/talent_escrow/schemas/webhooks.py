"""Pydantic schemas for provider webhook deliveries."""

from __future__ import annotations

from typing import Any

from pydantic import BaseModel, ConfigDict, Field

from talent_escrow.domain.enums import WebhookOutcome


class ProviderObject(BaseModel):
    """The charge or transfer a webhook event is about."""

    model_config = ConfigDict(extra="allow")

    id: str = Field(..., min_length=1)
    metadata: dict[str, str] = Field(default_factory=dict)
    failure_message: str | None = None


class WebhookEnvelope(BaseModel):
    """Provider event envelope: {id, type, data}.

    data stays untyped here so unknown event types parse and get
    acknowledged; known types validate data.object on dispatch.
    """

    model_config = ConfigDict(extra="allow")

    id: str | None = Field(default=None, max_length=255)
    type: str = Field(..., min_length=1, max_length=64)
    data: dict[str, Any] = Field(default_factory=dict)

    def provider_object(self) -> ProviderObject:
        return ProviderObject.model_validate(self.data.get("object", self.data))


class WebhookAckResponse(BaseModel):
    received: bool = True
    outcome: WebhookOutcome
