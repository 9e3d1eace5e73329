import json

import pytest

from toolhost.core.errors import MalformedMessage
from toolhost.mcp.messages import (
    JsonRpcNotification,
    JsonRpcRequest,
    JsonRpcResponse,
    classify,
    encode,
)


def test_classify_request_response_notification():
    assert isinstance(classify({"jsonrpc": "2.0", "id": 5, "method": "ping"}), JsonRpcRequest)
    assert isinstance(classify({"jsonrpc": "2.0", "method": "notifications/x"}), JsonRpcNotification)

    resp = classify({"jsonrpc": "2.0", "id": 5, "result": {"ok": True}})
    assert isinstance(resp, JsonRpcResponse)
    assert resp.id == 5 and resp.result == {"ok": True} and not resp.is_error

    err = classify({"jsonrpc": "2.0", "id": 6, "error": {"code": -32000, "message": "boom"}})
    assert err.is_error and err.error["message"] == "boom"


def test_null_result_is_still_a_result():
    resp = classify({"id": 1, "result": None})
    assert isinstance(resp, JsonRpcResponse)
    assert resp.result is None and not resp.is_error


def test_null_id_with_method_is_a_notification():
    assert isinstance(classify({"id": None, "method": "log"}), JsonRpcNotification)


@pytest.mark.parametrize(
    "value",
    [
        [1, 2],
        "text",
        42,
        {},
        {"id": 1},
        {"id": 1, "result": 1, "error": {"code": 1, "message": "x"}},
        {"id": True, "result": 1},
        {"id": 1.5, "result": 1},
        {"method": ""},
        {"method": "x", "params": "nope"},
    ],
)
def test_malformed_values(value):
    with pytest.raises(MalformedMessage):
        classify(value)


def test_non_object_error_payload_is_wrapped():
    resp = classify({"id": 2, "error": "bad things"})
    assert resp.error == {"code": None, "message": "bad things"}


def test_encode_is_one_line_with_version():
    data = encode(JsonRpcRequest(id=3, method="tools/call", params={"name": "x", "arguments": {"t": "a\nb"}}))
    assert data.endswith(b"\n")
    assert data.count(b"\n") == 1
    decoded = json.loads(data)
    assert decoded == {
        "jsonrpc": "2.0",
        "id": 3,
        "method": "tools/call",
        "params": {"name": "x", "arguments": {"t": "a\nb"}},
    }


def test_encode_notification_omits_params_and_id():
    decoded = json.loads(encode(JsonRpcNotification(method="notifications/initialized")))
    assert decoded == {"jsonrpc": "2.0", "method": "notifications/initialized"}


def test_encode_plain_dict_adds_version():
    assert json.loads(encode({"method": "x"}))["jsonrpc"] == "2.0"
