"""
JSON-RPC 2.0 message shapes used on the stdio wire.

Decoded JSON values are classified once, at parse time, into a request, a
response or a notification. Everything downstream dispatches on the type.
"""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from typing import Any, Dict, Optional, Union

from toolhost.core.errors import MalformedMessage

JSONRPC_VERSION = "2.0"

METHOD_INITIALIZE = "initialize"
METHOD_INITIALIZED = "notifications/initialized"
METHOD_TOOLS_LIST = "tools/list"
METHOD_TOOLS_CALL = "tools/call"
METHOD_PING = "ping"
METHOD_TOOLS_LIST_CHANGED = "notifications/tools/list_changed"

METHOD_NOT_FOUND = -32601

RequestId = Union[int, str]


@dataclass
class JsonRpcRequest:
    """JSON-RPC 2.0 request."""
    id: RequestId
    method: str
    params: Optional[Dict[str, Any]] = None

    def to_dict(self) -> Dict[str, Any]:
        out: Dict[str, Any] = {"jsonrpc": JSONRPC_VERSION, "id": self.id, "method": self.method}
        if self.params is not None:
            out["params"] = self.params
        return out


@dataclass
class JsonRpcNotification:
    """JSON-RPC 2.0 notification (no id, no reply)."""
    method: str
    params: Optional[Dict[str, Any]] = None

    def to_dict(self) -> Dict[str, Any]:
        out: Dict[str, Any] = {"jsonrpc": JSONRPC_VERSION, "method": self.method}
        if self.params is not None:
            out["params"] = self.params
        return out


@dataclass
class JsonRpcResponse:
    """JSON-RPC 2.0 response: exactly one of result/error."""
    id: RequestId
    result: Any = None
    error: Optional[Dict[str, Any]] = None
    raw: Dict[str, Any] = field(default_factory=dict, repr=False)

    @property
    def is_error(self) -> bool:
        return self.error is not None

    def to_dict(self) -> Dict[str, Any]:
        out: Dict[str, Any] = {"jsonrpc": JSONRPC_VERSION, "id": self.id}
        if self.error is not None:
            out["error"] = self.error
        else:
            out["result"] = self.result
        return out


Message = Union[JsonRpcRequest, JsonRpcResponse, JsonRpcNotification]


def _valid_id(value: Any) -> bool:
    # bool is an int subclass but never a valid id
    return isinstance(value, str) or (isinstance(value, int) and not isinstance(value, bool))


def classify(value: Any) -> Message:
    """Turn a decoded JSON value into a typed message or raise MalformedMessage."""
    if not isinstance(value, dict):
        raise MalformedMessage(f"expected a JSON object, got {type(value).__name__}")

    method = value.get("method")
    has_id = "id" in value and value["id"] is not None
    params = value.get("params")
    if params is not None and not isinstance(params, (dict, list)):
        raise MalformedMessage("params must be an object or array")

    if method is not None:
        if not isinstance(method, str) or not method:
            raise MalformedMessage("method must be a non-empty string")
        if has_id:
            if not _valid_id(value["id"]):
                raise MalformedMessage(f"invalid request id: {value['id']!r}")
            return JsonRpcRequest(id=value["id"], method=method, params=params)
        return JsonRpcNotification(method=method, params=params)

    if not has_id:
        raise MalformedMessage("message has neither id nor method")
    if not _valid_id(value["id"]):
        raise MalformedMessage(f"invalid response id: {value['id']!r}")

    has_result = "result" in value
    has_error = "error" in value and value["error"] is not None
    if has_result == has_error:
        raise MalformedMessage("response must carry exactly one of result or error")
    error = value["error"] if has_error else None
    if error is not None and not isinstance(error, dict):
        error = {"code": None, "message": str(error)}
    return JsonRpcResponse(id=value["id"], result=value.get("result"), error=error, raw=value)


def encode(message: Union[Message, Dict[str, Any]]) -> bytes:
    """Serialize one message as a single newline-terminated line."""
    payload = message if isinstance(message, dict) else message.to_dict()
    if "jsonrpc" not in payload:
        payload = {"jsonrpc": JSONRPC_VERSION, **payload}
    # json.dumps never emits a raw newline, so one message is always one line.
    return (json.dumps(payload, ensure_ascii=False, separators=(",", ":")) + "\n").encode("utf-8")
