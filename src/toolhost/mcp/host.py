"""
HostRegistry - public API of the tool server host.

Holds one ServerSupervisor per added ServerConfig and routes list/find/execute
requests to them. Every method returns a ``HostResult``; expected failures
never raise. Only programming errors (blank ids, wrong argument types) do.
"""

from __future__ import annotations

import asyncio
import time
from typing import Any, Dict, List, Mapping, Optional, Union

from loguru import logger

from toolhost.config.models import ClientInfo, HostTimeouts, ServerConfig, ToolCall, ToolDescriptor
from toolhost.core import events
from toolhost.core.errors import (
    AlreadyExists,
    CapacityExceeded,
    ServerNotFound,
    ToolHostError,
    ToolNotFound,
)
from toolhost.core.events import EventBus
from toolhost.core.results import HostResult
from toolhost.mcp.supervisor import ServerSnapshot, ServerStatus, ServerSupervisor


def _require_id(server_id: Any) -> str:
    if not isinstance(server_id, str):
        raise TypeError(f"server id must be a string, got {type(server_id).__name__}")
    server_id = server_id.strip()
    if not server_id:
        raise ValueError("server id cannot be empty")
    return server_id


class HostRegistry:
    """
    Registry of tool servers.

    Usage:
        host = HostRegistry()
        await host.add_server(ServerConfig(id="echo", command="echo-tool-server"))
        await host.start_server("echo")
        result = await host.execute_tool(ToolCall(tool="ping", server="echo"))
        await host.shutdown()
    """

    def __init__(
        self,
        *,
        timeouts: Optional[HostTimeouts] = None,
        client_info: Optional[ClientInfo] = None,
        max_servers: int = 10,
        event_bus: Optional[EventBus] = None,
    ) -> None:
        self._timeouts = timeouts or HostTimeouts()
        self._client_info = client_info or ClientInfo()
        self._max_servers = max_servers
        self._event_bus = event_bus
        self._servers: Dict[str, ServerSupervisor] = {}

    @classmethod
    def from_config(cls, config: Any, *, event_bus: Optional[EventBus] = None) -> "HostRegistry":
        """Build a registry from a loaded ConfigManager (servers are not added)."""
        return cls(
            timeouts=config.timeouts(),
            client_info=config.client_info(),
            max_servers=config.max_servers(),
            event_bus=event_bus,
        )

    @property
    def event_bus(self) -> Optional[EventBus]:
        return self._event_bus

    def supervisor(self, server_id: str) -> Optional[ServerSupervisor]:
        return self._servers.get(server_id)

    # ------------------------------------------------------------------ servers

    async def add_server(self, config: Union[ServerConfig, Mapping[str, Any]]) -> HostResult:
        if isinstance(config, Mapping):
            config = ServerConfig.model_validate(dict(config))
        if not isinstance(config, ServerConfig):
            raise TypeError(f"expected ServerConfig, got {type(config).__name__}")

        if config.id in self._servers:
            return HostResult.fail(AlreadyExists(f"Server '{config.id}' already exists", server_id=config.id))

        supervisor = ServerSupervisor(
            config,
            timeouts=self._timeouts,
            client_info=self._client_info,
            event_bus=self._event_bus,
        )
        self._servers[config.id] = supervisor
        logger.info(f"Added tool server '{config.id}' ({config.display_name})")
        await self._emit(events.SERVER_ADDED, supervisor)

        if config.auto_start:
            started = await self.start_server(config.id)
            if not started.success:
                return HostResult(
                    success=True,
                    data=supervisor.snapshot(),
                    metadata={"auto_start_error": started.error, "auto_start_error_kind": started.error_kind},
                )
        return HostResult.ok(supervisor.snapshot())

    async def start_server(self, server_id: str) -> HostResult:
        server_id = _require_id(server_id)
        supervisor = self._servers.get(server_id)
        if supervisor is None:
            return self._not_found(server_id)

        if supervisor.status not in (ServerStatus.RUNNING, ServerStatus.STARTING):
            active = sum(
                1 for s in self._servers.values() if s.status in (ServerStatus.RUNNING, ServerStatus.STARTING)
            )
            if active >= self._max_servers:
                return HostResult.fail(
                    CapacityExceeded(f"Maximum number of running servers reached ({self._max_servers})",
                                     server_id=server_id)
                )

        started = time.perf_counter()
        try:
            await supervisor.start()
        except ToolHostError as e:
            result = HostResult.fail(e)
        else:
            result = HostResult.ok(supervisor.snapshot())
        result.execution_time_ms = (time.perf_counter() - started) * 1000
        return result

    async def stop_server(self, server_id: str) -> HostResult:
        server_id = _require_id(server_id)
        supervisor = self._servers.get(server_id)
        if supervisor is None:
            return self._not_found(server_id)
        await supervisor.stop()
        return HostResult.ok(supervisor.snapshot())

    async def remove_server(self, server_id: str) -> HostResult:
        server_id = _require_id(server_id)
        supervisor = self._servers.get(server_id)
        if supervisor is None:
            return self._not_found(server_id)

        await supervisor.remove()
        snapshot = supervisor.snapshot()
        # stop() awaited the process, so nothing is leaked once the entry disappears.
        if self._servers.get(server_id) is supervisor:
            del self._servers[server_id]
        logger.info(f"Removed tool server '{server_id}'")
        await self._emit(events.SERVER_REMOVED, supervisor)
        return HostResult.ok(snapshot)

    async def refresh_tools(self, server_id: str) -> HostResult:
        server_id = _require_id(server_id)
        supervisor = self._servers.get(server_id)
        if supervisor is None:
            return self._not_found(server_id)
        try:
            tools = await supervisor.refresh_tools()
        except ToolHostError as e:
            return HostResult.fail(e)
        return HostResult.ok(tools)

    async def start_all(self) -> Dict[str, HostResult]:
        """Start every added server one after another; failures do not stop the rest."""
        results: Dict[str, HostResult] = {}
        for server_id in list(self._servers):
            results[server_id] = await self.start_server(server_id)
        return results

    async def shutdown(self) -> None:
        """Stop all servers concurrently."""
        supervisors = list(self._servers.values())
        if not supervisors:
            return
        outcomes = await asyncio.gather(*(s.stop() for s in supervisors), return_exceptions=True)
        for supervisor, outcome in zip(supervisors, outcomes):
            if isinstance(outcome, Exception):
                logger.error(f"Failed to stop tool server '{supervisor.id}': {outcome}")
        if self._event_bus is not None:
            await self._event_bus.drain()
        logger.info(f"Tool server host shut down ({len(supervisors)} server(s))")

    # ------------------------------------------------------------------ queries

    async def list_servers(self) -> HostResult:
        return HostResult.ok([s.snapshot() for s in self._servers.values()])

    async def get_server(self, server_id: str) -> HostResult:
        server_id = _require_id(server_id)
        supervisor = self._servers.get(server_id)
        if supervisor is None:
            return self._not_found(server_id)
        return HostResult.ok(supervisor.snapshot())

    async def list_tools(self, server_id: Optional[str] = None) -> HostResult:
        if server_id is not None:
            server_id = _require_id(server_id)
            supervisor = self._servers.get(server_id)
            if supervisor is None:
                return self._not_found(server_id)
            return HostResult.ok(supervisor.tools)

        tools: List[ToolDescriptor] = []
        for supervisor in self._servers.values():
            tools.extend(supervisor.tools)
        return HostResult.ok(tools)

    async def find_tool(self, name: str, server_id: Optional[str] = None) -> HostResult:
        """First tool called ``name``; unscoped lookups follow server insertion order."""
        if not isinstance(name, str) or not name.strip():
            raise ValueError("tool name cannot be empty")

        if server_id is not None:
            server_id = _require_id(server_id)
            supervisor = self._servers.get(server_id)
            if supervisor is None:
                return self._not_found(server_id)
            candidates = [supervisor]
        else:
            candidates = list(self._servers.values())

        for supervisor in candidates:
            tool = supervisor.find_tool(name)
            if tool is not None:
                return HostResult.ok(tool.model_copy(deep=True))

        where = f" on server '{server_id}'" if server_id else ""
        return HostResult.fail(ToolNotFound(f"Tool '{name}' not found{where}", server_id=server_id))

    async def execute_tool(self, call: Union[ToolCall, Mapping[str, Any]]) -> HostResult:
        if isinstance(call, Mapping):
            call = ToolCall.model_validate(dict(call))
        if not isinstance(call, ToolCall):
            raise TypeError(f"expected ToolCall, got {type(call).__name__}")

        supervisor = self._servers.get(call.server)
        if supervisor is None:
            return self._not_found(call.server)

        started = time.perf_counter()
        try:
            data = await supervisor.execute(call.tool, call.parameters)
        except ToolHostError as e:
            result = HostResult.fail(e, tool=call.tool)
        else:
            result = HostResult.ok(data, server_id=call.server, tool=call.tool)
        result.execution_time_ms = (time.perf_counter() - started) * 1000
        return result

    # ------------------------------------------------------------------ helpers

    def _not_found(self, server_id: str) -> HostResult:
        return HostResult.fail(ServerNotFound(f"Server '{server_id}' not found", server_id=server_id))

    async def _emit(self, name: str, supervisor: ServerSupervisor) -> None:
        if self._event_bus is None:
            return
        snapshot: ServerSnapshot = supervisor.snapshot()
        await self._event_bus.emit(name, snapshot.to_dict(), source=supervisor.id)
