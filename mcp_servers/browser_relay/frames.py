"""JSON-RPC frame codec for the relay socket."""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from typing import Any

from .errors import MalformedFrame


@dataclass(frozen=True, slots=True)
class Request:
    id: Any
    method: str
    params: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True, slots=True)
class Notification:
    method: str
    params: dict[str, Any] = field(default_factory=dict)


def decode(raw: str | bytes) -> Request | Notification:
    """Parse one inbound frame.

    A frame with an `id` is a request, without one it is a notification.
    Anything that is not a JSON object with a string `method` (or a `type`
    status field) raises MalformedFrame.
    """
    if isinstance(raw, (bytes, bytearray)):
        try:
            raw = raw.decode("utf-8")
        except UnicodeDecodeError as exc:
            raise MalformedFrame("Parse error: frame is not valid UTF-8") from exc
    try:
        obj = json.loads(raw)
    except (TypeError, ValueError) as exc:
        raise MalformedFrame(f"Parse error: {exc}") from exc

    if not isinstance(obj, dict):
        raise MalformedFrame("Parse error: frame must be a JSON object")

    method = obj.get("method")
    if method is None and isinstance(obj.get("type"), str) and obj.get("type"):
        # Status frames (`{"type": ...}`) are notifications without a method.
        return Notification(method=obj["type"], params={k: v for k, v in obj.items() if k != "type"})
    if not isinstance(method, str) or not method:
        raise MalformedFrame("Parse error: frame has no method")

    params = obj.get("params")
    if params is None:
        params = {}
    if not isinstance(params, dict):
        raise MalformedFrame("Parse error: params must be an object")

    if "id" in obj and obj["id"] is not None:
        return Request(id=obj["id"], method=method, params=params)
    return Notification(method=method, params=params)


def _dumps(payload: dict[str, Any]) -> str:
    return json.dumps(payload, ensure_ascii=False)


def encode_response(request_id: Any, result: Any) -> str:
    return _dumps({"jsonrpc": "2.0", "id": request_id, "result": {} if result is None else result})


def encode_error(request_id: Any, code: int, message: str, data: dict[str, Any] | None = None) -> str:
    error: dict[str, Any] = {"code": int(code), "message": str(message)}
    if data:
        error["data"] = data
    return _dumps({"jsonrpc": "2.0", "id": request_id, "error": error})


def encode_notification(method: str, params: dict[str, Any] | None = None) -> str:
    return _dumps({"jsonrpc": "2.0", "method": method, "params": params or {}})


__all__ = [
    "Notification",
    "Request",
    "decode",
    "encode_error",
    "encode_notification",
    "encode_response",
]
