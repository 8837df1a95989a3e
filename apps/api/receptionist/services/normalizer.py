"""Flatten voice-provider tool-call envelopes into plain REST payloads.

The provider posts tool invocations in three shapes::

    {"args": {...}, "call": {...}, "name": "check-availability"}
    {"tool": {"name": ..., "arguments": {...}}, "call": {...}}
    {...flat args..., "call_id": ...}          # with an x-retell-call-id header

All of them normalize to the same interior payload. Envelope fields never
reach handlers through the body; they travel on ``metadata`` instead.
"""
from __future__ import annotations

import json
from collections.abc import Mapping
from dataclasses import dataclass, field
from typing import Any

from ..core.errors import ValidationFailed

ENVELOPE_KEYS: frozenset[str] = frozenset({"args", "call", "tool", "name"})
META_KEYS: frozenset[str] = frozenset(
    {
        "args",
        "call",
        "tool",
        "name",
        "agent_id",
        "call_id",
        "callId",
        "tool_call_id",
        "toolCallId",
        "execution_message",
        "executionMessage",
    }
)
META_PREFIXES: tuple[str, ...] = ("retell_", "tool_")


@dataclass(frozen=True)
class NormalizedPayload:
    """Canonical interior of a tool call plus its side-channel metadata."""

    payload: dict[str, Any]
    metadata: dict[str, Any] = field(default_factory=dict)
    is_envelope: bool = False

    @property
    def call(self) -> dict[str, Any]:
        call = self.metadata.get("call")
        return call if isinstance(call, dict) else {}

    @property
    def call_id(self) -> str | None:
        return _text(self.call.get("call_id"))

    @property
    def agent_id(self) -> str | None:
        return _text(self.metadata.get("agent_id")) or _text(self.call.get("agent_id"))

    @property
    def to_number(self) -> str | None:
        return _text(self.call.get("to_number"))

    @property
    def from_number(self) -> str | None:
        return _text(self.call.get("from_number"))

    @property
    def tool_name(self) -> str | None:
        return _text(self.metadata.get("name"))


def is_envelope(body: Any, call_id_header: str | None = None) -> bool:
    """Return True when the body (or headers) look like a provider tool call."""

    if call_id_header:
        return True
    return isinstance(body, Mapping) and any(key in body for key in ENVELOPE_KEYS)


def normalize(body: Any, *, call_id_header: str | None = None) -> NormalizedPayload:
    """Return the flattened payload and metadata for ``body``.

    ``body`` is never mutated. Normalizing an already-flat payload yields the
    same payload, so applying this twice equals applying it once.
    """

    if body is None:
        body = {}
    if not isinstance(body, Mapping):
        raise ValidationFailed("Request body must be a JSON object", fields=["body"])

    if not is_envelope(body, call_id_header):
        return NormalizedPayload(payload=dict(body), metadata={}, is_envelope=False)

    metadata: dict[str, Any] = {}
    _collect_meta(body, metadata)

    if "args" in body and body["args"] is not None:
        source = _as_object(body["args"])
    elif isinstance(body.get("tool"), Mapping) and "arguments" in body["tool"]:
        source = _as_object(body["tool"]["arguments"])
    else:
        source = body

    payload: dict[str, Any] = {}
    for key, value in source.items():
        if _is_meta_key(key):
            if source is not body:
                _collect_meta({key: value}, metadata)
            continue
        payload[key] = value

    call = dict(metadata.get("call") or {})
    if call_id_header and not call.get("call_id"):
        call["call_id"] = call_id_header
    if call:
        metadata["call"] = call

    return NormalizedPayload(payload=payload, metadata=metadata, is_envelope=True)


def merge_query(payload: Mapping[str, Any], query: Mapping[str, str]) -> dict[str, Any]:
    """Merge a normalized payload under explicit query parameters (query wins)."""

    merged = dict(payload)
    merged.update(query)
    return merged


def _collect_meta(source: Mapping[str, Any], metadata: dict[str, Any]) -> None:
    for key, value in source.items():
        if not _is_meta_key(key) or key == "args":
            continue
        if key == "call":
            call = _as_object(value)
            metadata["call"] = {**call, **(metadata.get("call") or {})}
        elif key == "tool":
            tool = _as_object(value)
            metadata["tool"] = {k: v for k, v in tool.items() if k != "arguments"}
            if tool.get("name") and "name" not in metadata:
                metadata["name"] = tool["name"]
        elif key in {"call_id", "callId"}:
            call = dict(metadata.get("call") or {})
            call.setdefault("call_id", value)
            metadata["call"] = call
        else:
            metadata.setdefault(key, value)


def _is_meta_key(key: str) -> bool:
    return key in META_KEYS or key.startswith(META_PREFIXES)


def _as_object(value: Any) -> dict[str, Any]:
    """Coerce ``args``-style values to a dict; JSON strings are decoded."""

    if isinstance(value, Mapping):
        return dict(value)
    if isinstance(value, str) and value.strip().startswith("{"):
        try:
            decoded = json.loads(value)
        except json.JSONDecodeError as exc:
            raise ValidationFailed("Tool arguments are not valid JSON", fields=["args"]) from exc
        if isinstance(decoded, dict):
            return decoded
    return {}


def _text(value: Any) -> str | None:
    if value is None:
        return None
    text = str(value).strip()
    return text or None
