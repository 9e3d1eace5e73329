"""
Handshake and tool discovery.

    NotStarted -> Initializing -> Initialized -> Discovering -> Ready
                        \______________\______________\______-> Failed

``discover()`` may be run again later (after a tools/list_changed
notification) without repeating initialize.
"""

from __future__ import annotations

import asyncio
from enum import Enum
from typing import Any, Dict, List, Optional

from loguru import logger

from toolhost.config.models import ClientInfo, ToolDescriptor
from toolhost.core.errors import ConnectionLost, HandshakeFailure, RequestTimeout, ToolHostError
from toolhost.mcp.connection import Connection
from toolhost.mcp.messages import METHOD_INITIALIZE, METHOD_INITIALIZED, METHOD_TOOLS_LIST


class HandshakeState(str, Enum):
    NOT_STARTED = "not_started"
    INITIALIZING = "initializing"
    INITIALIZED = "initialized"
    DISCOVERING = "discovering"
    READY = "ready"
    FAILED = "failed"


class Handshake:
    """Runs initialize / initialized / tools/list against one connection."""

    MAX_TOOL_PAGES = 50

    def __init__(
        self,
        connection: Connection,
        *,
        client_info: Optional[ClientInfo] = None,
        capabilities: Optional[Dict[str, Any]] = None,
        timeout: float = 10.0,
    ) -> None:
        self._connection = connection
        self._server_id = connection.server_id
        self._client_info = client_info or ClientInfo()
        self._capabilities = dict(capabilities or {})
        self._timeout = timeout

        self.state = HandshakeState.NOT_STARTED
        self.protocol_version: Optional[str] = None
        self.server_info: Dict[str, Any] = {}
        self.server_capabilities: Dict[str, Any] = {}

    @property
    def ready(self) -> bool:
        return self.state == HandshakeState.READY

    async def run(self) -> List[ToolDescriptor]:
        """Full handshake followed by the first discovery."""
        await self.initialize()
        return await self.discover()

    async def initialize(self) -> None:
        if self.state != HandshakeState.NOT_STARTED:
            raise RuntimeError(f"initialize() called in state {self.state.value}")

        self.state = HandshakeState.INITIALIZING
        params = {
            "protocolVersion": self._client_info.protocol_version,
            "capabilities": self._capabilities,
            "clientInfo": self._client_info.to_dict(),
        }
        try:
            result = await self._connection.request(METHOD_INITIALIZE, params, timeout=self._timeout)
            self._accept_initialize(result)
            self.state = HandshakeState.INITIALIZED
            await self._connection.notify(METHOD_INITIALIZED)
        except ToolHostError as e:
            self.state = HandshakeState.FAILED
            raise self._handshake_error(e, "initialize")
        except asyncio.CancelledError:
            self.state = HandshakeState.FAILED
            raise

        logger.debug(
            f"[{self._server_id}] initialized (protocol={self.protocol_version}, "
            f"server={self.server_info.get('name', '?')})"
        )

    async def discover(self) -> List[ToolDescriptor]:
        """List the server's tools. Zero tools is a valid, ready state."""
        if self.state not in (HandshakeState.INITIALIZED, HandshakeState.READY):
            raise RuntimeError(f"discover() called in state {self.state.value}")

        rediscovery = self.state == HandshakeState.READY
        self.state = HandshakeState.DISCOVERING
        try:
            tools = await self._list_tools()
        except ToolHostError as e:
            # A failed re-discovery leaves the session usable with its old registry.
            self.state = HandshakeState.READY if rediscovery else HandshakeState.FAILED
            raise self._handshake_error(e, "tools/list")
        except asyncio.CancelledError:
            self.state = HandshakeState.READY if rediscovery else HandshakeState.FAILED
            raise

        self.state = HandshakeState.READY
        return tools

    def _accept_initialize(self, result: Any) -> None:
        if not isinstance(result, dict):
            raise HandshakeFailure(
                f"initialize returned {type(result).__name__}, expected an object",
                server_id=self._server_id,
            )
        version = result.get("protocolVersion")
        if not isinstance(version, str) or not version:
            raise HandshakeFailure("initialize response is missing protocolVersion", server_id=self._server_id)

        if version != self._client_info.protocol_version:
            logger.info(
                f"[{self._server_id}] server negotiated protocol {version} "
                f"(requested {self._client_info.protocol_version})"
            )
        self.protocol_version = version
        caps = result.get("capabilities")
        self.server_capabilities = caps if isinstance(caps, dict) else {}
        info = result.get("serverInfo")
        self.server_info = info if isinstance(info, dict) else {}

    async def _list_tools(self) -> List[ToolDescriptor]:
        tools: List[ToolDescriptor] = []
        seen = set()
        cursor: Optional[str] = None

        for _ in range(self.MAX_TOOL_PAGES):
            params = {"cursor": cursor} if cursor else None
            result = await self._connection.request(METHOD_TOOLS_LIST, params, timeout=self._timeout)
            if not isinstance(result, dict):
                raise HandshakeFailure("tools/list returned a non-object result", server_id=self._server_id)

            raw_tools = result.get("tools")
            if raw_tools is None:
                logger.warning(f"[{self._server_id}] tools/list response has no 'tools'; treating as empty")
                raw_tools = []
            if not isinstance(raw_tools, list):
                raise HandshakeFailure("tools/list 'tools' is not an array", server_id=self._server_id)

            for entry in raw_tools:
                tool = self._parse_tool(entry)
                if tool is None:
                    continue
                if tool.name in seen:
                    logger.warning(f"[{self._server_id}] duplicate tool '{tool.name}' ignored")
                    continue
                seen.add(tool.name)
                tools.append(tool)

            cursor = result.get("nextCursor")
            if not cursor:
                break
        else:
            logger.warning(f"[{self._server_id}] stopped following tools/list pages after {self.MAX_TOOL_PAGES}")

        return tools

    def _parse_tool(self, entry: Any) -> Optional[ToolDescriptor]:
        name = entry.get("name") if isinstance(entry, dict) else None
        if not isinstance(name, str) or not name.strip():
            logger.warning(f"[{self._server_id}] skipping tool entry without a name: {str(entry)[:120]}")
            return None
        schema = entry.get("inputSchema")
        return ToolDescriptor(
            name=name,
            description=str(entry.get("description") or ""),
            input_schema=schema if isinstance(schema, dict) else {},
            server=self._server_id,
        )

    def _handshake_error(self, error: ToolHostError, stage: str) -> ToolHostError:
        if isinstance(error, (RequestTimeout, ConnectionLost, HandshakeFailure)):
            return error
        return HandshakeFailure(f"{stage} failed: {error.message}", server_id=self._server_id)
