"""Retell phone-number provisioning adapter (global API key)."""
from __future__ import annotations

from dataclasses import dataclass
from typing import Any
from urllib.parse import quote

import httpx

from .base import ProviderClient


@dataclass(frozen=True, slots=True)
class ProvisionedNumber:
    phone_number: str
    phone_number_pretty: str | None
    inbound_agent_id: str | None
    nickname: str | None


class TelephonyClient(ProviderClient):
    """Purchase, release and re-point phone numbers.

    The client is built with the provider base URL and bearer header already set.
    """

    provider = "telephony"

    async def create_phone_number(
        self,
        *,
        inbound_agent_id: str | None,
        area_code: int | None = None,
        nickname: str | None = None,
    ) -> ProvisionedNumber:
        body: dict[str, Any] = {}
        if inbound_agent_id:
            body["inbound_agent_id"] = inbound_agent_id
        if area_code is not None:
            body["area_code"] = area_code
        if nickname:
            body["nickname"] = nickname
        response = await self.request("POST", "/create-phone-number", json=body)
        return _number(response.json())

    async def delete_phone_number(self, phone_number: str) -> None:
        await self.request("DELETE", f"/delete-phone-number/{quote(phone_number)}")

    async def update_phone_number(
        self,
        phone_number: str,
        *,
        inbound_agent_id: str | None = None,
        nickname: str | None = None,
    ) -> ProvisionedNumber:
        body: dict[str, Any] = {}
        if inbound_agent_id is not None:
            body["inbound_agent_id"] = inbound_agent_id
        if nickname is not None:
            body["nickname"] = nickname
        response = await self.request("PATCH", f"/update-phone-number/{quote(phone_number)}", json=body)
        return _number(response.json())


def build_telephony_client(*, base_url: str, api_key: str, timeout: float, **kwargs: Any) -> TelephonyClient:
    client = httpx.AsyncClient(
        base_url=base_url,
        headers={"Authorization": f"Bearer {api_key}"},
        timeout=timeout,
    )
    return TelephonyClient(client, **kwargs)


def _number(data: dict[str, Any]) -> ProvisionedNumber:
    return ProvisionedNumber(
        phone_number=data.get("phone_number", ""),
        phone_number_pretty=data.get("phone_number_pretty"),
        inbound_agent_id=data.get("inbound_agent_id"),
        nickname=data.get("nickname"),
    )
