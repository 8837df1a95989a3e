"""Schemas for voice-provider lifecycle webhooks."""
from __future__ import annotations

from typing import Any

from pydantic import BaseModel, ConfigDict, Field


class CallPayload(BaseModel):
    """The ``call`` object the provider attaches to every lifecycle event."""

    model_config = ConfigDict(extra="allow")

    call_id: str = Field(min_length=1)
    agent_id: str | None = None
    direction: str | None = None
    from_number: str | None = None
    to_number: str | None = None
    call_status: str | None = None
    start_timestamp: int | float | str | None = None
    end_timestamp: int | float | str | None = None
    disconnection_reason: str | None = None
    transcript: str | None = None
    call_cost: dict[str, Any] | None = None
    call_analysis: dict[str, Any] | None = None
    metadata: dict[str, Any] | None = None

    @property
    def cost_cents(self) -> int | None:
        if not self.call_cost:
            return None
        combined = self.call_cost.get("combined_cost")
        if combined is None:
            return None
        try:
            return int(round(float(combined)))
        except (TypeError, ValueError):
            return None


class WebhookEvent(BaseModel):
    model_config = ConfigDict(extra="allow")

    event: str
    call: CallPayload
    timestamp: int | float | str | None = None
    analyzed_at: int | float | str | None = None


class InboundCall(BaseModel):
    model_config = ConfigDict(extra="allow")

    agent_id: str | None = None
    from_number: str | None = None
    to_number: str | None = None


class InboundCallEvent(BaseModel):
    model_config = ConfigDict(extra="allow")

    event: str = "call_inbound"
    call_inbound: InboundCall
