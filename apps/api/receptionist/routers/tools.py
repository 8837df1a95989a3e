"""Tool endpoints the voice agent calls mid-conversation."""
from __future__ import annotations

from fastapi import APIRouter, Depends
from fastapi.responses import Response
from sqlalchemy.ext.asyncio import AsyncSession

from ..container import AppContainer
from ..db.session import get_session
from ..schemas import tools as tools_schema
from ..services.tools import parse_tool_payload
from .deps import ToolCall, get_container, tool_call

router = APIRouter()


@router.post("/check-availability", response_model=tools_schema.CheckAvailabilityResponse)
async def check_availability(
    call: ToolCall = Depends(tool_call),
    container: AppContainer = Depends(get_container),
) -> tools_schema.CheckAvailabilityResponse:
    """Return available slots for a service."""

    payload = parse_tool_payload(tools_schema.CheckAvailabilityRequest, call.payload)
    return await container.tools.check_availability(call.tenant, payload)


@router.post("/create-booking")
async def create_booking(
    call: ToolCall = Depends(tool_call),
    session: AsyncSession = Depends(get_session),
    container: AppContainer = Depends(get_container),
) -> Response:
    """Book a slot; repeats of the same request replay the stored body."""

    payload = parse_tool_payload(tools_schema.CreateBookingRequest, call.payload)
    body = await container.tools.create_booking(session, call.tenant, payload, call_id=call.call_id)
    return Response(content=body, media_type="application/json")


@router.post("/lookup-customer", response_model=tools_schema.LookupCustomerResponse)
async def lookup_customer(
    call: ToolCall = Depends(tool_call),
    container: AppContainer = Depends(get_container),
) -> tools_schema.LookupCustomerResponse:
    """Find (or optionally create) a customer by phone number."""

    payload = parse_tool_payload(tools_schema.LookupCustomerRequest, call.payload)
    return await container.tools.lookup_customer(call.tenant, payload)


@router.post("/cancel-booking")
async def cancel_booking(
    call: ToolCall = Depends(tool_call),
    session: AsyncSession = Depends(get_session),
    container: AppContainer = Depends(get_container),
) -> Response:
    """Cancel a booking."""

    payload = parse_tool_payload(tools_schema.CancelBookingRequest, call.payload)
    body = await container.tools.cancel_booking(session, call.tenant, payload)
    return Response(content=body, media_type="application/json")
