"""Schemas for voice-agent tool calls.

Requests accept both the camelCase names the agent prompt uses and their
snake_case spellings; responses are rendered in camelCase.
"""
from __future__ import annotations

from datetime import date, datetime, timezone
from typing import Any

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel


class ToolRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore", str_strip_whitespace=True)


class CheckAvailabilityRequest(ToolRequest):
    service_id: str = Field(min_length=1, validation_alias=AliasChoices("serviceId", "service_id"))
    date_iso: date = Field(validation_alias=AliasChoices("dateISO", "dateIso", "date_iso", "date"))
    staff_id: str | None = Field(default=None, validation_alias=AliasChoices("staffId", "staff_id"))
    window_days: int = Field(default=14, ge=1, le=31, validation_alias=AliasChoices("windowDays", "window_days"))

    @field_validator("date_iso", mode="before")
    @classmethod
    def _date_part(cls, value: Any) -> Any:
        """Accept full ISO timestamps and keep only the calendar date."""

        if isinstance(value, str) and "T" in value:
            return value.split("T", 1)[0]
        return value


class CreateBookingRequest(ToolRequest):
    customer_phone: str = Field(validation_alias=AliasChoices("customerPhone", "customer_phone", "phone"))
    service_id: str = Field(min_length=1, validation_alias=AliasChoices("serviceId", "service_id"))
    start_at: datetime = Field(validation_alias=AliasChoices("startAt", "start_at"))
    staff_id: str | None = Field(default=None, validation_alias=AliasChoices("staffId", "staff_id"))
    notes: str | None = Field(default=None, max_length=500)
    customer_name: str | None = Field(default=None, validation_alias=AliasChoices("customerName", "customer_name"))

    @field_validator("start_at")
    @classmethod
    def _require_utc(cls, value: datetime) -> datetime:
        if value.tzinfo is None:
            raise ValueError("startAt must include a UTC offset")
        return value.astimezone(timezone.utc)


class LookupCustomerRequest(ToolRequest):
    phone: str = Field(
        validation_alias=AliasChoices("phone", "customerPhone", "customer_phone", "phoneNumber", "phone_number")
    )
    customer_name: str | None = Field(default=None, validation_alias=AliasChoices("customerName", "customer_name", "name"))


class CancelBookingRequest(ToolRequest):
    booking_id: str = Field(min_length=1, validation_alias=AliasChoices("bookingId", "booking_id"))
    version: int | None = Field(default=None, ge=0, validation_alias=AliasChoices("version", "bookingVersion"))


class ToolResponse(BaseModel):
    model_config = ConfigDict(populate_by_name=True, alias_generator=to_camel)

    success: bool = True
    slow: bool = False


class AvailableSlot(BaseModel):
    model_config = ConfigDict(populate_by_name=True, alias_generator=to_camel)

    start_at: str
    service_id: str
    staff_id: str | None = None
    duration_minutes: int | None = None


class CheckAvailabilityResponse(ToolResponse):
    service_id: str
    date_iso: str = Field(serialization_alias="dateISO")
    slots: list[AvailableSlot] = Field(default_factory=list)


class CustomerCard(BaseModel):
    model_config = ConfigDict(populate_by_name=True, alias_generator=to_camel)

    customer_id: str
    given_name: str | None = None
    family_name: str | None = None
    full_name: str = ""
    phone_number: str | None = None
    email: str | None = None


class LookupCustomerResponse(ToolResponse):
    found: bool
    created: bool = False
    customer: CustomerCard | None = None


class CancelBookingResponse(ToolResponse):
    booking_id: str
    status: str | None = None
