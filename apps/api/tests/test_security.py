"""Tests for webhook signatures and agent bearer tokens."""
from __future__ import annotations

from types import SimpleNamespace

import pytest

from receptionist.core.errors import AuthError
from receptionist.core.security import (
    compute_signature,
    hash_token,
    parse_bearer,
    token_matches,
    verify_webhook_signature,
)
from receptionist.models.agent import AgentStatus
from receptionist.repositories import agents as agents_repo
from receptionist.services import auth as auth_service

SECRET = "whsec_test"
BODY = b'{"event":"call_started","call":{"call_id":"call_1"}}'
NOW = 1_700_000_000


def _sign(timestamp: int, body: bytes = BODY) -> str:
    return compute_signature(SECRET, str(timestamp), body)


@pytest.mark.parametrize("skew", [-300, 0, 300])
def test_signature_accepted_within_skew(skew: int) -> None:
    timestamp = NOW + skew
    verify_webhook_signature(
        secret=SECRET,
        signature=_sign(timestamp),
        timestamp=str(timestamp),
        raw_body=BODY,
        now=NOW,
    )


@pytest.mark.parametrize("skew", [-301, 301])
def test_signature_rejected_outside_skew(skew: int) -> None:
    timestamp = NOW + skew
    with pytest.raises(AuthError) as excinfo:
        verify_webhook_signature(
            secret=SECRET,
            signature=_sign(timestamp),
            timestamp=str(timestamp),
            raw_body=BODY,
            now=NOW,
        )
    assert excinfo.value.kind == "auth/stale-timestamp"
    assert excinfo.value.status_code == 401


def test_signature_rejected_when_a_body_byte_flips() -> None:
    signature = _sign(NOW)
    tampered = bytearray(BODY)
    tampered[10] ^= 0x01
    with pytest.raises(AuthError) as excinfo:
        verify_webhook_signature(
            secret=SECRET,
            signature=signature,
            timestamp=str(NOW),
            raw_body=bytes(tampered),
            now=NOW,
        )
    assert excinfo.value.kind == "auth/invalid-signature"


def _flip_first_digit(signature: str) -> str:
    return ("0" if signature[0] != "0" else "1") + signature[1:]


def _upper_first_letter(signature: str) -> str:
    index = next(i for i, char in enumerate(signature) if char.isalpha())
    return signature[:index] + signature[index].upper() + signature[index + 1 :]


@pytest.mark.parametrize("mutate", [_flip_first_digit, _upper_first_letter])
def test_signature_rejected_when_signature_byte_flips(mutate) -> None:
    tampered = mutate(_sign(NOW))
    with pytest.raises(AuthError):
        verify_webhook_signature(secret=SECRET, signature=tampered, timestamp=str(NOW), raw_body=BODY, now=NOW)


@pytest.mark.parametrize(
    "signature,timestamp",
    [(None, str(NOW)), ("abc", None), ("abc", "not-a-number")],
)
def test_missing_or_malformed_headers_rejected(signature, timestamp) -> None:
    with pytest.raises(AuthError) as excinfo:
        verify_webhook_signature(secret=SECRET, signature=signature, timestamp=timestamp, raw_body=BODY, now=NOW)
    assert excinfo.value.message == "Unauthorized"


def test_auth_errors_share_one_message() -> None:
    assert AuthError("auth/invalid-signature").message == AuthError("auth/stale-timestamp").message


def test_token_helpers() -> None:
    stored = hash_token("secret-token")
    assert token_matches("secret-token", stored)
    assert not token_matches("other-token", stored)
    assert not token_matches("secret-token", None)
    assert parse_bearer("Bearer  secret-token ") == "secret-token"
    assert parse_bearer("Basic abc") is None
    assert parse_bearer("Bearer ") is None
    assert parse_bearer(None) is None


def _agent(status: AgentStatus = AgentStatus.ACTIVE) -> SimpleNamespace:
    return SimpleNamespace(
        id="agent-row-1",
        tenant_id="tenant-1",
        external_agent_id="agent_abc",
        bearer_token_hash=hash_token("good-token"),
        status=status,
    )


@pytest.mark.asyncio
async def test_authenticate_agent_accepts_matching_token(monkeypatch) -> None:
    agent = _agent()

    async def fake_get(session, external_agent_id):
        return agent if external_agent_id == "agent_abc" else None

    monkeypatch.setattr(agents_repo, "get_by_external_id", fake_get)

    result = await auth_service.authenticate_agent(
        object(), authorization="Bearer good-token", external_agent_id="agent_abc"
    )

    assert result is agent


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "authorization,external_agent_id,status",
    [
        ("Bearer wrong-token", "agent_abc", AgentStatus.ACTIVE),
        ("Bearer good-token", "agent_unknown", AgentStatus.ACTIVE),
        (None, "agent_abc", AgentStatus.ACTIVE),
        ("Bearer good-token", "agent_abc", AgentStatus.PAUSED),
    ],
)
async def test_authenticate_agent_rejections_are_uniform(monkeypatch, authorization, external_agent_id, status) -> None:
    agent = _agent(status)

    async def fake_get(session, external_id):
        return agent if external_id == "agent_abc" else None

    monkeypatch.setattr(agents_repo, "get_by_external_id", fake_get)

    with pytest.raises(AuthError) as excinfo:
        await auth_service.authenticate_agent(
            object(), authorization=authorization, external_agent_id=external_agent_id
        )

    assert excinfo.value.kind == "auth/invalid-token"
    assert excinfo.value.message == "Unauthorized"
