"""Wire codec shared by both bridge peers.

One JSON object per transport frame:

- call:      {"kind": "call", "id": str, "operation": str, "arguments": any}
- response:  {"kind": "response", "id": str, "result": any}
             {"kind": "response", "id": str, "error": str}
- keepalive: {"kind": "keepalive"}

Unknown fields are ignored on decode. Arguments and results are opaque here;
validating their shape is the handler's job.
"""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from typing import Any

from .errors import ProtocolError

KIND_CALL = "call"
KIND_RESPONSE = "response"
KIND_KEEPALIVE = "keepalive"


@dataclass(frozen=True, slots=True)
class CallMessage:
    id: str
    operation: str
    arguments: Any = field(default_factory=dict)


@dataclass(frozen=True, slots=True)
class ResponseMessage:
    id: str
    result: Any = None
    # None means success; any string (including "") means failure.
    error: str | None = None

    @property
    def ok(self) -> bool:
        return self.error is None

    @classmethod
    def success(cls, call_id: str, result: Any) -> ResponseMessage:
        return cls(id=call_id, result=result)

    @classmethod
    def failure(cls, call_id: str, error: str) -> ResponseMessage:
        return cls(id=call_id, error=str(error))


@dataclass(frozen=True, slots=True)
class LivenessMessage:
    pass


Message = CallMessage | ResponseMessage | LivenessMessage


def message_to_dict(msg: Message) -> dict[str, Any]:
    if isinstance(msg, CallMessage):
        return {"kind": KIND_CALL, "id": msg.id, "operation": msg.operation, "arguments": msg.arguments}
    if isinstance(msg, ResponseMessage):
        if msg.error is not None:
            return {"kind": KIND_RESPONSE, "id": msg.id, "error": msg.error}
        return {"kind": KIND_RESPONSE, "id": msg.id, "result": msg.result}
    if isinstance(msg, LivenessMessage):
        return {"kind": KIND_KEEPALIVE}
    raise ProtocolError(f"cannot encode {type(msg).__name__}")


def encode_message(msg: Message) -> str:
    payload = message_to_dict(msg)
    try:
        return json.dumps(payload, ensure_ascii=False, separators=(",", ":"), allow_nan=False)
    except (TypeError, ValueError) as exc:
        raise ProtocolError(f"payload is not JSON-serializable: {exc}") from exc
    except RecursionError as exc:
        raise ProtocolError("payload is nested too deeply to encode") from exc


def _require_id(obj: dict[str, Any], kind: str) -> str:
    raw_id = obj.get("id")
    if not isinstance(raw_id, str) or not raw_id:
        raise ProtocolError(f"{kind} message requires a non-empty string id")
    return raw_id


def message_from_dict(obj: Any) -> Message:
    if not isinstance(obj, dict):
        raise ProtocolError("message must be a JSON object")

    kind = obj.get("kind")
    if kind is None:
        raise ProtocolError("message is missing 'kind'")

    if kind == KIND_CALL:
        call_id = _require_id(obj, kind)
        operation = obj.get("operation")
        if not isinstance(operation, str) or not operation:
            raise ProtocolError("call message requires a non-empty string operation")
        arguments = obj["arguments"] if "arguments" in obj else {}
        return CallMessage(id=call_id, operation=operation, arguments=arguments)

    if kind == KIND_RESPONSE:
        call_id = _require_id(obj, kind)
        has_result = "result" in obj
        has_error = "error" in obj
        if has_result == has_error:
            raise ProtocolError("response message requires exactly one of 'result' or 'error'")
        if has_error:
            error = obj.get("error")
            if not isinstance(error, str):
                raise ProtocolError("response 'error' must be a string")
            return ResponseMessage(id=call_id, error=error)
        return ResponseMessage(id=call_id, result=obj.get("result"))

    if kind == KIND_KEEPALIVE:
        if "id" in obj:
            raise ProtocolError("keepalive message must not carry an id")
        return LivenessMessage()

    raise ProtocolError(f"unknown message kind: {kind!r}")


def decode_message(raw: str | bytes) -> Message:
    if isinstance(raw, (bytes, bytearray)):
        try:
            raw = bytes(raw).decode("utf-8")
        except UnicodeDecodeError as exc:
            raise ProtocolError(f"message is not valid UTF-8: {exc}") from exc
    if not isinstance(raw, str):
        raise ProtocolError(f"unsupported frame type: {type(raw).__name__}")
    try:
        obj = json.loads(raw)
    except json.JSONDecodeError as exc:
        raise ProtocolError(f"message is not valid JSON: {exc}") from exc
    except RecursionError as exc:
        raise ProtocolError("message is nested too deeply to decode") from exc
    return message_from_dict(obj)


__all__ = [
    "KIND_CALL",
    "KIND_KEEPALIVE",
    "KIND_RESPONSE",
    "CallMessage",
    "LivenessMessage",
    "Message",
    "ResponseMessage",
    "decode_message",
    "encode_message",
    "message_from_dict",
    "message_to_dict",
]
