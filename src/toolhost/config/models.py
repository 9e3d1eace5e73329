"""
Data model for the tool server host (Pydantic).

``ServerConfig`` describes how to launch one tool provider; it is created by a
configuration collaborator and never mutated by the host. ``ToolDescriptor``
is one discovered tool, ``ToolCall`` one requested invocation.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator


def _require_text(value: str, what: str) -> str:
    value = (value or "").strip()
    if not value:
        raise ValueError(f"{what} cannot be empty")
    return value


class ServerConfig(BaseModel):
    """Immutable launch description of one tool provider."""

    model_config = ConfigDict(frozen=True, populate_by_name=True)

    id: str
    name: str = ""
    description: str = ""
    command: str
    args: List[str] = Field(default_factory=list)
    env: Dict[str, str] = Field(default_factory=dict)
    cwd: Optional[str] = None
    auto_start: bool = Field(default=False, alias="autoStart")

    @field_validator("id")
    @classmethod
    def _validate_id(cls, v: str) -> str:
        return _require_text(v, "server id")

    @field_validator("command")
    @classmethod
    def _validate_command(cls, v: str) -> str:
        return _require_text(v, "server command")

    @field_validator("env", mode="before")
    @classmethod
    def _stringify_env(cls, v: Any) -> Any:
        # YAML happily produces ints/bools for env values; the OS wants strings.
        if isinstance(v, dict):
            return {str(k): "" if val is None else str(val) for k, val in v.items()}
        return v or {}

    @property
    def display_name(self) -> str:
        return self.name or self.id


class ToolDescriptor(BaseModel):
    """One callable tool discovered on a server."""

    name: str
    description: str = ""
    input_schema: Dict[str, Any] = Field(default_factory=dict)
    server: str

    def to_dict(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "description": self.description,
            "inputSchema": self.input_schema,
            "server": self.server,
        }


class ToolCall(BaseModel):
    """A caller's request to run ``tool`` on ``server``."""

    tool: str
    server: str
    parameters: Dict[str, Any] = Field(default_factory=dict)

    @field_validator("tool")
    @classmethod
    def _validate_tool(cls, v: str) -> str:
        return _require_text(v, "tool name")

    @field_validator("server")
    @classmethod
    def _validate_server(cls, v: str) -> str:
        return _require_text(v, "server id")


@dataclass(frozen=True)
class HostTimeouts:
    handshake_seconds: float = 10.0
    tool_call_seconds: float = 60.0
    startup_seconds: float = 30.0
    stop_grace_seconds: float = 5.0


@dataclass(frozen=True)
class ClientInfo:
    name: str = "toolhost"
    version: str = "0.1.0"
    protocol_version: str = "2024-11-05"

    def to_dict(self) -> Dict[str, str]:
        return {"name": self.name, "version": self.version}
