"""Locate a tool's arguments inside the voice platform's tool-call bodies.

The platform has shipped several envelope shapes over time and more than one
is live at once. Each decoder below recognises exactly one shape and returns
``None`` when the body is not that shape; ``extract_tool_arguments`` tries
them in order and falls back to the whole body. No decoder raises on a
structurally unexpected body.
"""
from __future__ import annotations

import json
from dataclasses import dataclass
from typing import Any, Callable, Iterable, Optional


@dataclass(frozen=True)
class Extraction:
    data: Any
    matched_shape: str
    tool_call_id: str | None = None


def dig(obj: Any, *path: str) -> Any:
    for key in path:
        if not isinstance(obj, dict):
            return None
        obj = obj.get(key)
    return obj


def _message(body: Any) -> dict:
    message = dig(body, "message")
    return message if isinstance(message, dict) else {}


def parse_arguments(raw: Any) -> Any:
    if raw is None:
        return {}
    if isinstance(raw, str):
        try:
            return json.loads(raw)
        except ValueError:
            return raw
    return raw


def resolve_parameters(call: dict) -> Any:
    for params in (call.get("parameters"), dig(call, "function", "parameters")):
        if isinstance(params, dict):
            return params
    arguments = call.get("arguments")
    if arguments is None:
        arguments = dig(call, "function", "arguments")
    return parse_arguments(arguments)


def _call_name(call: dict) -> str | None:
    name = dig(call, "function", "name") or call.get("name") or call.get("toolName")
    return name if isinstance(name, str) else None


def _call_id(call: dict) -> str | None:
    call_id = call.get("id") or call.get("toolCallId")
    return call_id if isinstance(call_id, str) else None


def _matches(call: Any, tool_name: str) -> bool:
    if not isinstance(call, dict):
        return False
    return (
        dig(call, "function", "name") == tool_name
        or call.get("id") == tool_name
        or call.get("toolCallId") == tool_name
        or call.get("name") == tool_name
    )


def _match_in(calls: Any, tool_name: str, shape: str) -> Optional[Extraction]:
    if not isinstance(calls, list):
        return None
    for call in calls:
        if _matches(call, tool_name):
            return Extraction(resolve_parameters(call), shape, _call_id(call))
    return None


def _from_tool_calls(body: Any, tool_name: str) -> Optional[Extraction]:
    return _match_in(_message(body).get("toolCalls"), tool_name, "message.toolCalls")


def _from_tool_call_list(body: Any, tool_name: str) -> Optional[Extraction]:
    return _match_in(_message(body).get("toolCallList"), tool_name, "message.toolCallList")


def _from_single_tool_call(body: Any, tool_name: str) -> Optional[Extraction]:
    call = _message(body).get("toolCall")
    if _matches(call, tool_name):
        return Extraction(resolve_parameters(call), "message.toolCall", _call_id(call))
    return None


def _from_function_wrapper(body: Any, tool_name: str) -> Optional[Extraction]:
    if not isinstance(body, dict):
        return None
    if dig(body, "function", "name") == tool_name:
        return Extraction(resolve_parameters(body), "function", _call_id(body))
    if body.get("name") == tool_name and ("parameters" in body or "arguments" in body):
        return Extraction(resolve_parameters(body), "function", _call_id(body))
    return None


Decoder = Callable[[Any, str], Optional[Extraction]]

DECODERS: tuple[Decoder, ...] = (
    _from_tool_calls,
    _from_tool_call_list,
    _from_single_tool_call,
    _from_function_wrapper,
)


def extract_tool_arguments(body: Any, tool_name: str) -> Extraction:
    for decoder in DECODERS:
        found = decoder(body, tool_name)
        if found is not None:
            return found
    return Extraction(body, "body")


def _candidate_calls(body: Any) -> Iterable[Any]:
    message = _message(body)
    for key in ("toolCalls", "toolCallList"):
        calls = message.get(key)
        if isinstance(calls, list):
            yield from calls
    yield message.get("toolCall")
    yield body


def detect_tool_call_id(body: Any, tool_name: str) -> str | None:
    return extract_tool_arguments(body, tool_name).tool_call_id


def detect_tool_name(body: Any) -> str | None:
    """First tool name any known shape carries, for requests without x-tool-name."""
    for call in _candidate_calls(body):
        if isinstance(call, dict):
            name = _call_name(call) or call.get("tool") or call.get("tool_name")
            if isinstance(name, str) and name:
                return name
    return None
