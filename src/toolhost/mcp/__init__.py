"""
MCP runtime - supervise stdio tool servers and call their tools.
"""

from __future__ import annotations

from toolhost.mcp.connection import Connection
from toolhost.mcp.framing import MessageFramer
from toolhost.mcp.handshake import Handshake, HandshakeState
from toolhost.mcp.host import HostRegistry
from toolhost.mcp.supervisor import ServerSnapshot, ServerStatus, ServerSupervisor

__all__ = [
    "Connection",
    "Handshake",
    "HandshakeState",
    "HostRegistry",
    "MessageFramer",
    "ServerSnapshot",
    "ServerStatus",
    "ServerSupervisor",
]
