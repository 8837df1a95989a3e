"""Payload contracts for the sidecar workers."""
from __future__ import annotations

from typing import Any, Literal

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, model_validator


class WorkerPayload(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    idempotency_key: str | None = Field(
        default=None, validation_alias=AliasChoices("idempotencyKey", "idempotency_key")
    )
    tenant_id: str | None = Field(default=None, validation_alias=AliasChoices("tenantId", "tenant_id"))


class EmailTask(WorkerPayload):
    to: str
    subject: str = Field(min_length=1)
    text: str | None = None
    html: str | None = None
    from_address: str | None = Field(default=None, validation_alias=AliasChoices("from", "from_address"))
    tenant: str | None = None

    @model_validator(mode="after")
    def _require_body(self) -> "EmailTask":
        if not (self.text or self.html):
            raise ValueError("at least one of text or html is required")
        return self


class SmsTask(WorkerPayload):
    to: str
    body: str = Field(min_length=1, max_length=1600)
    type: Literal["sms", "whatsapp"] = "sms"
    from_number: str | None = Field(default=None, validation_alias=AliasChoices("from", "from_number"))


class PhoneNumberTask(WorkerPayload):
    action: Literal["purchase", "release", "forwarding-update"]
    tenant_id: str = Field(validation_alias=AliasChoices("tenantId", "tenant_id"))
    area_code: int | None = Field(default=None, validation_alias=AliasChoices("areaCode", "area_code"))
    agent_id: str | None = Field(default=None, validation_alias=AliasChoices("agentId", "agent_id"))
    assignment_id: str | None = Field(default=None, validation_alias=AliasChoices("assignmentId", "assignment_id"))
    forwarding_number: str | None = Field(
        default=None, validation_alias=AliasChoices("forwardingNumber", "forwarding_number")
    )
    instructions: str | None = None

    @model_validator(mode="after")
    def _require_action_fields(self) -> "PhoneNumberTask":
        if self.action in {"release", "forwarding-update"} and not self.assignment_id:
            raise ValueError("assignmentId is required for this action")
        if self.action == "forwarding-update" and not self.forwarding_number:
            raise ValueError("forwardingNumber is required for forwarding-update")
        return self


class PostCallAnalysisTask(WorkerPayload):
    tenant_id: str = Field(validation_alias=AliasChoices("tenantId", "tenant_id"))
    call_id: str = Field(min_length=1, validation_alias=AliasChoices("callId", "call_id"))
    analyzed_at: int | float | str | None = Field(
        default=None, validation_alias=AliasChoices("analyzedAt", "analyzed_at")
    )
    summary: str | None = None
    sentiment: str | None = None
    successful: bool = False
    booking_created: bool = Field(default=False, validation_alias=AliasChoices("bookingCreated", "booking_created"))
    transcript: str | None = None
    extracted_fields: dict[str, Any] = Field(
        default_factory=dict, validation_alias=AliasChoices("extractedFields", "extracted_fields")
    )
