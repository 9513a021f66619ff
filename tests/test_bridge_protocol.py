from __future__ import annotations

import json

import pytest

from mcp_servers.browser_bridge.errors import ProtocolError
from mcp_servers.browser_bridge.protocol import (
    CallMessage,
    LivenessMessage,
    ResponseMessage,
    decode_message,
    encode_message,
)


@pytest.mark.parametrize(
    "raw",
    [
        '{"kind":"call","id":"abc","operation":"GetTitle","arguments":{}}',
        '{"kind":"call","id":"abc","operation":"tabs.query","arguments":{"active":true,"title":"Привет"}}',
        '{"kind":"response","id":"abc","result":null}',
        '{"kind":"response","id":"abc","result":[1,"two",{"three":3}]}',
        '{"kind":"response","id":"abc","error":""}',
        '{"kind":"response","id":"abc","error":"boom"}',
        '{"kind":"keepalive"}',
    ],
)
def test_canonical_frames_survive_decode_then_encode(raw: str) -> None:
    assert encode_message(decode_message(raw)) == raw


def test_decode_builds_typed_messages() -> None:
    call = decode_message('{"kind":"call","id":"1","operation":"GetTitle","arguments":{"tabId":5}}')
    assert call == CallMessage(id="1", operation="GetTitle", arguments={"tabId": 5})

    ok = decode_message('{"kind":"response","id":"1","result":null}')
    assert isinstance(ok, ResponseMessage)
    assert ok.ok is True
    assert ok.result is None

    failed = decode_message('{"kind":"response","id":"1","error":""}')
    assert isinstance(failed, ResponseMessage)
    assert failed.ok is False
    assert failed.error == ""

    assert decode_message(b'{"kind":"keepalive"}') == LivenessMessage()


def test_unknown_fields_are_ignored() -> None:
    msg = decode_message('{"kind":"call","id":"1","operation":"x","arguments":{},"traceId":"t","v":2}')
    assert msg == CallMessage(id="1", operation="x", arguments={})
    assert decode_message('{"kind":"keepalive","ts":123}') == LivenessMessage()


def test_call_without_arguments_defaults_to_empty_object() -> None:
    msg = decode_message('{"kind":"call","id":"1","operation":"GetTitle"}')
    assert isinstance(msg, CallMessage)
    assert msg.arguments == {}


@pytest.mark.parametrize(
    "raw",
    [
        "not json",
        "[]",
        '"call"',
        "{}",
        '{"kind":"nope","id":"1"}',
        '{"kind":"call","operation":"x"}',
        '{"kind":"call","id":"","operation":"x"}',
        '{"kind":"call","id":7,"operation":"x"}',
        '{"kind":"call","id":"1"}',
        '{"kind":"call","id":"1","operation":""}',
        '{"kind":"response","id":"1"}',
        '{"kind":"response","id":"1","result":1,"error":"x"}',
        '{"kind":"response","id":"1","error":{"message":"x"}}',
        '{"kind":"response","result":1}',
        '{"kind":"keepalive","id":"1"}',
    ],
)
def test_malformed_frames_raise_protocol_error(raw: str) -> None:
    with pytest.raises(ProtocolError):
        decode_message(raw)


def test_invalid_utf8_is_a_protocol_error() -> None:
    with pytest.raises(ProtocolError):
        decode_message(b"\xff\xfe{}")


def test_encode_rejects_unserializable_payload() -> None:
    with pytest.raises(ProtocolError):
        encode_message(ResponseMessage.success("1", object()))
    with pytest.raises(ProtocolError):
        encode_message(ResponseMessage.success("1", float("nan")))


def test_response_failure_wins_over_result_on_encode() -> None:
    wire = json.loads(encode_message(ResponseMessage(id="1", result="ignored", error="bad")))
    assert wire == {"kind": "response", "id": "1", "error": "bad"}


def test_protocol_error_is_a_value_error() -> None:
    with pytest.raises(ValueError):
        decode_message("{")


def _nested_list(depth: int) -> list:
    root: list = []
    node = root
    for _ in range(depth):
        child: list = []
        node.append(child)
        node = child
    return root


def test_deeply_nested_frame_is_a_protocol_error() -> None:
    with pytest.raises(ProtocolError):
        decode_message("[" * 100_000)
    with pytest.raises(ProtocolError):
        decode_message('{"kind":"call","id":"1","operation":"x","arguments":' + "[" * 100_000 + "]" * 100_000 + "}")


def test_deeply_nested_payload_is_a_protocol_error_on_encode() -> None:
    with pytest.raises(ProtocolError):
        encode_message(ResponseMessage.success("1", _nested_list(50_000)))
