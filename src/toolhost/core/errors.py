"""
Error taxonomy for the tool server host.

Every failure the host can report to a caller is a ``ToolHostError`` carrying
an ``ErrorKind``. Protocol and process failures are converted into these at
the supervisor boundary; the host registry turns them into ``HostResult``
failures instead of letting them escape.
"""

from __future__ import annotations

from enum import Enum
from typing import Any, Optional


class ErrorKind(str, Enum):
    """Failure kinds surfaced to callers."""
    SPAWN_FAILURE = "spawn_failure"
    HANDSHAKE_FAILURE = "handshake_failure"
    TIMEOUT = "timeout"
    CONNECTION_LOST = "connection_lost"
    NOT_RUNNING = "not_running"
    TOOL_NOT_FOUND = "tool_not_found"
    ALREADY_EXISTS = "already_exists"
    NOT_FOUND = "not_found"
    MALFORMED_MESSAGE = "malformed_message"
    REMOTE_ERROR = "remote_error"  # provider answered with a JSON-RPC error
    TOOL_ERROR = "tool_error"  # tool result flagged isError
    CAPACITY_EXCEEDED = "capacity_exceeded"


class ToolHostError(Exception):
    """Base class for all expected host failures."""

    kind: ErrorKind = ErrorKind.HANDSHAKE_FAILURE

    def __init__(self, message: str, *, server_id: Optional[str] = None) -> None:
        super().__init__(message)
        self.message = message
        self.server_id = server_id

    def to_dict(self) -> dict:
        return {
            "kind": self.kind.value,
            "message": self.message,
            "server_id": self.server_id,
        }


class SpawnFailure(ToolHostError):
    kind = ErrorKind.SPAWN_FAILURE


class HandshakeFailure(ToolHostError):
    kind = ErrorKind.HANDSHAKE_FAILURE


class RequestTimeout(ToolHostError):
    kind = ErrorKind.TIMEOUT


class ConnectionLost(ToolHostError):
    kind = ErrorKind.CONNECTION_LOST


class NotRunning(ToolHostError):
    kind = ErrorKind.NOT_RUNNING


class ToolNotFound(ToolHostError):
    kind = ErrorKind.TOOL_NOT_FOUND


class AlreadyExists(ToolHostError):
    kind = ErrorKind.ALREADY_EXISTS


class ServerNotFound(ToolHostError):
    kind = ErrorKind.NOT_FOUND


class MalformedMessage(ToolHostError):
    kind = ErrorKind.MALFORMED_MESSAGE


class CapacityExceeded(ToolHostError):
    kind = ErrorKind.CAPACITY_EXCEEDED


class RemoteError(ToolHostError):
    """The provider answered a request with a JSON-RPC ``error`` object."""

    kind = ErrorKind.REMOTE_ERROR

    def __init__(
        self,
        message: str,
        *,
        code: Optional[int] = None,
        data: Any = None,
        server_id: Optional[str] = None,
    ) -> None:
        super().__init__(message, server_id=server_id)
        self.code = code
        self.data = data

    @classmethod
    def from_payload(cls, payload: Any, *, server_id: Optional[str] = None) -> "RemoteError":
        if isinstance(payload, dict):
            code = payload.get("code")
            message = payload.get("message") or "Server error"
            return cls(
                str(message),
                code=code if isinstance(code, int) else None,
                data=payload.get("data"),
                server_id=server_id,
            )
        return cls(str(payload or "Server error"), server_id=server_id)

    def to_dict(self) -> dict:
        out = super().to_dict()
        out["code"] = self.code
        if self.data is not None:
            out["data"] = self.data
        return out


class ToolError(ToolHostError):
    """The tool ran but reported failure (``isError: true``)."""

    kind = ErrorKind.TOOL_ERROR

    def __init__(self, message: str, *, result: Any = None, server_id: Optional[str] = None) -> None:
        super().__init__(message, server_id=server_id)
        self.result = result
