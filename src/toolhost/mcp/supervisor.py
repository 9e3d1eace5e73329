"""
ServerSupervisor - lifecycle of one tool provider process.

Spawns the child, runs the handshake, watches for exit and routes tool
calls. All failures of one server are contained in its own supervisor: they
end up as ``status = ERROR`` plus ``last_error`` and never touch other
servers. A child that exits with code 0 on its own is simply STOPPED.
"""

from __future__ import annotations

import asyncio
import codecs
import contextlib
import os
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional

from loguru import logger

from toolhost.config.models import ClientInfo, HostTimeouts, ServerConfig, ToolDescriptor
from toolhost.core import events
from toolhost.core.errors import (
    ConnectionLost,
    NotRunning,
    RequestTimeout,
    SpawnFailure,
    ToolError,
    ToolHostError,
    ToolNotFound,
)
from toolhost.core.events import EventBus
from toolhost.mcp.connection import Connection
from toolhost.mcp.handshake import Handshake
from toolhost.mcp.messages import METHOD_TOOLS_CALL, METHOD_TOOLS_LIST_CHANGED, JsonRpcNotification

STDERR_CHUNK_SIZE = 64 * 1024
STDERR_LINE_LIMIT = 4096


class ServerStatus(str, Enum):
    STOPPED = "stopped"
    STARTING = "starting"
    RUNNING = "running"
    ERROR = "error"


@dataclass(frozen=True)
class ServerSnapshot:
    """Point-in-time copy of a server's runtime state."""

    id: str
    name: str
    description: str
    status: ServerStatus
    tool_count: int
    last_error: Optional[str] = None
    pid: Optional[int] = None
    started_at: Optional[datetime] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "description": self.description,
            "status": self.status.value,
            "tool_count": self.tool_count,
            "last_error": self.last_error,
            "pid": self.pid,
            "started_at": self.started_at.isoformat() if self.started_at else None,
        }


def _flatten_content(content: Any) -> str:
    if not isinstance(content, list):
        return str(content or "")
    parts = []
    for block in content:
        if isinstance(block, dict) and isinstance(block.get("text"), str):
            parts.append(block["text"].strip())
        else:
            parts.append(str(block))
    return "\n".join(p for p in parts if p)


class ServerSupervisor:
    """Owns one ServerConfig's process, connection and tool registry."""

    def __init__(
        self,
        config: ServerConfig,
        *,
        timeouts: Optional[HostTimeouts] = None,
        client_info: Optional[ClientInfo] = None,
        event_bus: Optional[EventBus] = None,
    ) -> None:
        self.config = config
        self._timeouts = timeouts or HostTimeouts()
        self._client_info = client_info or ClientInfo()
        self._event_bus = event_bus

        self._status = ServerStatus.STOPPED
        self._tools: List[ToolDescriptor] = []
        self._last_error: Optional[str] = None
        self._process: Optional[asyncio.subprocess.Process] = None
        self._connection: Optional[Connection] = None
        self._handshake: Optional[Handshake] = None
        self._started_at: Optional[datetime] = None

        # Bumped by every start/stop so a superseded start cannot overwrite newer state.
        self._generation = 0
        self._start_task: Optional[asyncio.Task] = None
        self._background: set = set()

    # ------------------------------------------------------------------ state

    @property
    def id(self) -> str:
        return self.config.id

    @property
    def status(self) -> ServerStatus:
        return self._status

    @property
    def last_error(self) -> Optional[str]:
        return self._last_error

    @property
    def tools(self) -> List[ToolDescriptor]:
        return [t.model_copy(deep=True) for t in self._tools]

    @property
    def pid(self) -> Optional[int]:
        return self._process.pid if self._process is not None else None

    @property
    def process(self) -> Optional[asyncio.subprocess.Process]:
        return self._process

    @property
    def server_info(self) -> Dict[str, Any]:
        return dict(self._handshake.server_info) if self._handshake else {}

    @property
    def capabilities(self) -> Dict[str, Any]:
        return dict(self._handshake.server_capabilities) if self._handshake else {}

    @property
    def protocol_version(self) -> Optional[str]:
        return self._handshake.protocol_version if self._handshake else None

    def find_tool(self, name: str) -> Optional[ToolDescriptor]:
        for tool in self._tools:
            if tool.name == name:
                return tool
        return None

    def snapshot(self) -> ServerSnapshot:
        return ServerSnapshot(
            id=self.id,
            name=self.config.display_name,
            description=self.config.description,
            status=self._status,
            tool_count=len(self._tools),
            last_error=self._last_error,
            pid=self.pid,
            started_at=self._started_at,
        )

    # ------------------------------------------------------------------ lifecycle

    async def start(self) -> None:
        """Spawn + handshake + discovery. No-op when already running."""
        if self._status == ServerStatus.RUNNING:
            return
        if self._start_task is not None and not self._start_task.done():
            # Share the attempt already in flight.
            await asyncio.shield(self._start_task)
            return

        self._start_task = asyncio.get_running_loop().create_task(
            self._start(), name=f"toolhost-start-{self.id}"
        )
        try:
            await asyncio.shield(self._start_task)
        finally:
            if self._start_task is not None and self._start_task.done():
                self._start_task = None

    async def _start(self) -> None:
        self._generation += 1
        generation = self._generation

        self._status = ServerStatus.STARTING
        self._last_error = None
        self._tools = []
        self._started_at = datetime.now()
        logger.info(f"Starting tool server '{self.id}': {self.config.command} {' '.join(self.config.args)}")
        await self._emit(events.SERVER_STARTING)

        try:
            await asyncio.wait_for(self._launch(generation), timeout=self._timeouts.startup_seconds)
        except asyncio.TimeoutError:
            error: ToolHostError = RequestTimeout(
                f"Startup of '{self.id}' exceeded {self._timeouts.startup_seconds:g}s",
                server_id=self.id,
            )
            await self._fail_start(generation, error)
            raise error
        except ToolHostError as e:
            await self._fail_start(generation, e)
            if generation != self._generation:
                raise NotRunning(f"Start of '{self.id}' was interrupted by stop", server_id=self.id) from e
            raise

        if generation != self._generation:
            raise NotRunning(f"Start of '{self.id}' was interrupted by stop", server_id=self.id)

        self._status = ServerStatus.RUNNING
        logger.info(f"Tool server '{self.id}' running (pid={self.pid}, tools={[t.name for t in self._tools]})")
        await self._emit(events.TOOLS_DISCOVERED, tools=[t.to_dict() for t in self._tools])
        await self._emit(events.SERVER_STARTED)

    async def _launch(self, generation: int) -> None:
        process = await self._spawn()
        if generation != self._generation:
            await self._terminate(process)
            raise NotRunning(f"Start of '{self.id}' was interrupted by stop", server_id=self.id)
        self._process = process

        connection = Connection(self.id, process.stdout, process.stdin, request_timeout=self._timeouts.tool_call_seconds)
        connection.set_notification_handler(self._on_notification)
        connection.set_close_handler(lambda reason: self._on_connection_closed(connection, reason))
        self._connection = connection
        connection.start()

        self._spawn_background(self._drain_stderr(process), f"toolhost-stderr-{self.id}")
        self._spawn_background(self._watch_exit(process), f"toolhost-watch-{self.id}")

        handshake = Handshake(connection, client_info=self._client_info, timeout=self._timeouts.handshake_seconds)
        self._handshake = handshake
        tools = await handshake.run()
        if generation == self._generation:
            self._tools = tools

    async def _spawn(self) -> asyncio.subprocess.Process:
        env = {**os.environ, **self.config.env}
        try:
            return await asyncio.create_subprocess_exec(
                self.config.command,
                *self.config.args,
                stdin=asyncio.subprocess.PIPE,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                env=env,
                cwd=self.config.cwd or None,
            )
        except (OSError, ValueError) as e:
            raise SpawnFailure(f"Failed to launch '{self.config.command}': {e}", server_id=self.id) from e

    async def _fail_start(self, generation: int, error: ToolHostError) -> None:
        process = self._process
        connection = self._connection

        if generation != self._generation:
            # stop() already tore everything down and owns the state now.
            return

        message = error.message
        if process is not None and process.returncode is not None and "exit code" not in message:
            message = f"{message} (exit code {process.returncode})"

        self._status = ServerStatus.ERROR
        self._last_error = message
        self._tools = []
        self._process = None
        self._connection = None
        logger.error(f"Tool server '{self.id}' failed to start: {message}")

        if connection is not None:
            await connection.close(f"startup failed: {message}")
        if process is not None:
            await self._terminate(process)
        await self._emit(events.SERVER_ERROR, error=message, kind=error.kind.value)

    async def stop(self) -> None:
        """Terminate the child (SIGTERM, then SIGKILL after the grace period)."""
        if self._status == ServerStatus.STOPPED and self._process is None:
            return

        self._generation += 1
        process = self._process
        connection = self._connection
        self._process = None
        self._connection = None

        if connection is not None:
            await connection.close("server stopped")
        if process is not None:
            await self._terminate(process)

        # An in-flight start sees the closed connection (or the bumped generation) and bails out.
        start_task = self._start_task
        if start_task is not None and not start_task.done():
            with contextlib.suppress(ToolHostError):
                await asyncio.shield(start_task)

        self._tools = []
        self._status = ServerStatus.STOPPED
        self._started_at = None
        logger.info(f"Tool server '{self.id}' stopped")
        await self._emit(events.SERVER_STOPPED)

    async def remove(self) -> None:
        await self.stop()

    async def _terminate(self, process: asyncio.subprocess.Process) -> None:
        grace = self._timeouts.stop_grace_seconds
        if process.returncode is None:
            with contextlib.suppress(ProcessLookupError):
                process.terminate()
            try:
                await asyncio.wait_for(process.wait(), timeout=grace)
                return
            except asyncio.TimeoutError:
                logger.warning(f"Tool server '{self.id}' ignored SIGTERM for {grace:g}s; killing")
            with contextlib.suppress(ProcessLookupError):
                process.kill()
        try:
            await asyncio.wait_for(process.wait(), timeout=grace)
        except asyncio.TimeoutError:
            logger.error(f"Tool server '{self.id}' (pid={process.pid}) did not exit after SIGKILL")

    # ------------------------------------------------------------------ tools

    async def execute(self, tool_name: str, arguments: Optional[Dict[str, Any]] = None) -> Any:
        """Invoke one tool; returns the provider's result payload."""
        connection = self._connection
        if self._status != ServerStatus.RUNNING or connection is None:
            raise NotRunning(f"Server '{self.id}' is not running (status={self._status.value})", server_id=self.id)
        if self.find_tool(tool_name) is None:
            raise ToolNotFound(f"Tool '{tool_name}' not found on server '{self.id}'", server_id=self.id)

        logger.debug(f"Calling {self.id}/{tool_name}")
        result = await connection.request(
            METHOD_TOOLS_CALL,
            {"name": tool_name, "arguments": dict(arguments or {})},
            timeout=self._timeouts.tool_call_seconds,
        )
        if isinstance(result, dict) and result.get("isError") is True:
            text = _flatten_content(result.get("content")) or "tool reported an error"
            raise ToolError(f"{self.id}/{tool_name}: {text}", result=result, server_id=self.id)
        return result

    async def refresh_tools(self) -> List[ToolDescriptor]:
        """Re-run discovery on a running server; on failure the old registry is kept."""
        if self._status != ServerStatus.RUNNING or self._handshake is None:
            raise NotRunning(f"Server '{self.id}' is not running (status={self._status.value})", server_id=self.id)

        generation = self._generation
        try:
            tools = await self._handshake.discover()
        except ToolHostError as e:
            if generation == self._generation:
                self._last_error = f"tool re-discovery failed: {e.message}"
            logger.warning(f"Tool server '{self.id}' re-discovery failed: {e.message}")
            raise

        if generation != self._generation or self._status != ServerStatus.RUNNING:
            raise NotRunning(f"Server '{self.id}' stopped during re-discovery", server_id=self.id)
        self._tools = tools
        logger.info(f"Tool server '{self.id}' tools refreshed: {[t.name for t in tools]}")
        await self._emit(events.TOOLS_DISCOVERED, tools=[t.to_dict() for t in tools])
        return self.tools

    # ------------------------------------------------------------------ callbacks

    def _on_notification(self, notification: JsonRpcNotification) -> None:
        if notification.method == METHOD_TOOLS_LIST_CHANGED:
            if self._status == ServerStatus.RUNNING:
                self._spawn_background(self._refresh_quietly(), f"toolhost-refresh-{self.id}")
            return
        logger.debug(f"[{self.id}] notification {notification.method}")
        self._spawn_background(
            self._emit(events.SERVER_MESSAGE, method=notification.method, params=notification.params),
            f"toolhost-message-{self.id}",
        )

    async def _refresh_quietly(self) -> None:
        with contextlib.suppress(ToolHostError):
            await self.refresh_tools()

    def _on_connection_closed(self, connection: Connection, reason: str) -> None:
        if connection is not self._connection or self._status != ServerStatus.RUNNING:
            return
        self._spawn_background(self._handle_connection_lost(connection, reason), f"toolhost-lost-{self.id}")

    async def _handle_connection_lost(self, connection: Connection, reason: str) -> None:
        process = self._process
        if process is not None:
            # stdout usually closes because the process died; give the exit watcher a moment to report it.
            with contextlib.suppress(asyncio.TimeoutError):
                await asyncio.wait_for(process.wait(), timeout=1.0)
        if connection is not self._connection or self._status != ServerStatus.RUNNING:
            return
        if process is not None and process.returncode is not None:
            self._mark_exited(process.returncode)
            return
        self._mark_down(ServerStatus.ERROR, f"connection lost: {reason}")
        if process is not None and process.returncode is None:
            await self._terminate(process)

    async def _watch_exit(self, process: asyncio.subprocess.Process) -> None:
        returncode = await process.wait()
        if process is not self._process or self._status != ServerStatus.RUNNING:
            return
        connection = self._connection
        self._mark_exited(returncode)
        if connection is not None:
            await connection.close("process exited")

    def _mark_exited(self, returncode: int) -> None:
        if returncode == 0:
            self._mark_down(ServerStatus.STOPPED, "process exited with exit code 0")
        else:
            self._mark_down(ServerStatus.ERROR, f"process exited unexpectedly with exit code {returncode}")

    def _mark_down(self, status: ServerStatus, reason: str) -> None:
        """Drop the process and registry of a server that went away on its own."""
        self._generation += 1
        self._status = status
        self._last_error = reason if status == ServerStatus.ERROR else None
        self._tools = []
        self._process = None
        self._connection = None
        self._started_at = None

        if status == ServerStatus.ERROR:
            logger.error(f"Tool server '{self.id}' failed: {reason}")
            event = self._emit(events.SERVER_ERROR, error=reason, kind=ConnectionLost.kind.value)
        else:
            logger.info(f"Tool server '{self.id}' stopped: {reason}")
            event = self._emit(events.SERVER_STOPPED, reason=reason)
        self._spawn_background(event, f"toolhost-down-{self.id}")

    async def _drain_stderr(self, process: asyncio.subprocess.Process) -> None:
        """Log the child's stderr line by line until EOF; never stops reading early."""
        stream = process.stderr
        if stream is None:
            return
        decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        pending = ""
        while True:
            try:
                chunk = await stream.read(STDERR_CHUNK_SIZE)
            except (ConnectionError, OSError) as e:
                logger.debug(f"[{self.id}] stderr read failed: {e}")
                return
            if not chunk:
                break
            *lines, pending = (pending + decoder.decode(chunk)).split("\n")
            if len(pending) > STDERR_LINE_LIMIT:
                lines.append(pending)
                pending = ""
            for line in lines:
                self._log_stderr(line)
        self._log_stderr(pending + decoder.decode(b"", final=True))

    def _log_stderr(self, line: str) -> None:
        text = line.rstrip()
        if text:
            if len(text) > STDERR_LINE_LIMIT:
                text = f"{text[:STDERR_LINE_LIMIT]}... ({len(text)} chars)"
            logger.debug(f"[{self.id}] stderr: {text}")

    def _spawn_background(self, coro: Any, name: str) -> None:
        task = asyncio.get_running_loop().create_task(coro, name=name)
        self._background.add(task)
        task.add_done_callback(self._background.discard)

    async def _emit(self, name: str, **data: Any) -> None:
        if self._event_bus is None:
            return
        payload = {"server_id": self.id, "status": self._status.value, **data}
        await self._event_bus.emit(name, payload, source=self.id)
