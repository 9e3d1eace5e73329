"""
Connection - JSON-RPC request/response correlation over one child's stdio.

A Connection owns the child's stdin writer and stdout reader, a single
MessageFramer listening on stdout, a per-connection request id counter and
the table of requests still waiting for an answer.
"""

from __future__ import annotations

import asyncio
import contextlib
import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, Optional, Set

from loguru import logger

from toolhost.core.errors import ConnectionLost, MalformedMessage, RemoteError, RequestTimeout
from toolhost.mcp.framing import MessageFramer
from toolhost.mcp.messages import (
    METHOD_NOT_FOUND,
    METHOD_PING,
    JsonRpcNotification,
    JsonRpcRequest,
    JsonRpcResponse,
    Message,
    classify,
    encode,
)

NotificationHandler = Callable[[JsonRpcNotification], None]
CloseHandler = Callable[[str], None]


@dataclass
class PendingRequest:
    id: int
    method: str
    sent_at: float
    future: asyncio.Future
    timer: Optional[asyncio.TimerHandle] = None

    def cancel_timer(self) -> None:
        if self.timer is not None:
            self.timer.cancel()
            self.timer = None


class Connection:
    """
    Stdio JSON-RPC connection to one tool provider process.

    ``reader`` is the child's stdout (an ``asyncio.StreamReader``) and
    ``writer`` its stdin (an ``asyncio.StreamWriter`` or anything with
    ``write``/``drain``/``close``).
    """

    def __init__(
        self,
        server_id: str,
        reader: asyncio.StreamReader,
        writer: Any,
        *,
        request_timeout: Optional[float] = 60.0,
        read_chunk_size: int = 64 * 1024,
    ) -> None:
        self.server_id = server_id
        self._reader = reader
        self._writer = writer
        self._request_timeout = request_timeout
        self._chunk_size = read_chunk_size

        self._framer = MessageFramer(source=server_id)
        self._framer.add_listener(self._on_value)

        self._next_id = 1
        self._pending: Dict[int, PendingRequest] = {}
        self._write_lock = asyncio.Lock()
        self._reader_task: Optional[asyncio.Task] = None
        self._reply_tasks: Set[asyncio.Task] = set()

        self._notification_handler: Optional[NotificationHandler] = None
        self._close_handler: Optional[CloseHandler] = None
        self._closed = False
        self._close_reason: Optional[str] = None
        self.malformed = 0

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def close_reason(self) -> Optional[str]:
        return self._close_reason

    @property
    def pending_count(self) -> int:
        return len(self._pending)

    @property
    def framer(self) -> MessageFramer:
        return self._framer

    def set_notification_handler(self, handler: Optional[NotificationHandler]) -> None:
        self._notification_handler = handler

    def set_close_handler(self, handler: Optional[CloseHandler]) -> None:
        self._close_handler = handler

    def start(self) -> None:
        """Begin pumping the child's stdout through the framer."""
        if self._reader_task is None:
            self._reader_task = asyncio.get_running_loop().create_task(
                self._read_loop(), name=f"toolhost-read-{self.server_id}"
            )

    async def send(self, message: Any) -> None:
        """Write one message as a JSON line. No reply is implied."""
        if self._closed:
            raise ConnectionLost(
                f"Connection to '{self.server_id}' is closed ({self._close_reason})",
                server_id=self.server_id,
            )
        data = encode(message)
        async with self._write_lock:
            try:
                self._writer.write(data)
                await self._writer.drain()
            except (ConnectionError, OSError) as e:
                reason = f"stdin write failed: {e}"
                self._mark_lost(reason)
                raise ConnectionLost(f"Connection to '{self.server_id}' lost: {reason}", server_id=self.server_id) from e

    async def notify(self, method: str, params: Optional[Dict[str, Any]] = None) -> None:
        await self.send(JsonRpcNotification(method=method, params=params))

    async def request(
        self,
        method: str,
        params: Optional[Dict[str, Any]] = None,
        *,
        timeout: Optional[float] = None,
    ) -> Any:
        """
        Send a request and wait for the response with the same id.

        Raises RequestTimeout, ConnectionLost or RemoteError. A response that
        arrives after the timeout finds no pending entry and is dropped.
        """
        if self._closed:
            raise ConnectionLost(
                f"Connection to '{self.server_id}' is closed ({self._close_reason})",
                server_id=self.server_id,
            )

        loop = asyncio.get_running_loop()
        request_id = self._next_id
        self._next_id += 1

        pending = PendingRequest(
            id=request_id,
            method=method,
            sent_at=time.monotonic(),
            future=loop.create_future(),
        )
        self._pending[request_id] = pending

        deadline = self._request_timeout if timeout is None else timeout
        if deadline is not None and deadline > 0:
            pending.timer = loop.call_later(deadline, self._expire, request_id, deadline)

        try:
            await self.send(JsonRpcRequest(id=request_id, method=method, params=params))
            return await pending.future
        finally:
            self._discard(pending)

    async def close(self, reason: str = "closed by host") -> None:
        """Fail everything pending, close stdin and stop reading."""
        self._mark_lost(reason)

        try:
            self._writer.close()
        except (ConnectionError, OSError, RuntimeError) as e:
            logger.debug(f"[{self.server_id}] closing stdin failed: {e}")

        task = self._reader_task
        if task is not None and not task.done() and task is not asyncio.current_task():
            task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await task

        for reply in list(self._reply_tasks):
            reply.cancel()

    # ------------------------------------------------------------------ internals

    async def _read_loop(self) -> None:
        try:
            while True:
                chunk = await self._reader.read(self._chunk_size)
                if not chunk:
                    break
                self._framer.feed_bytes(chunk)
        except (ConnectionError, OSError) as e:
            self._mark_lost(f"stdout read failed: {e}")
            return
        except Exception as e:
            logger.exception(f"[{self.server_id}] stdout reader crashed")
            self._mark_lost(f"stdout reader failed: {type(e).__name__}: {e}")
            return
        self._mark_lost("stdout closed by tool server")

    def _on_value(self, value: Any) -> None:
        try:
            message: Message = classify(value)
        except MalformedMessage as e:
            self.malformed += 1
            logger.debug(f"[{self.server_id}] discarding malformed message: {e.message}")
            return

        if isinstance(message, JsonRpcResponse):
            self._resolve(message)
        elif isinstance(message, JsonRpcRequest):
            self._answer(message)
        else:
            self._route_notification(message)

    def _resolve(self, response: JsonRpcResponse) -> None:
        pending = self._pending.pop(response.id, None) if isinstance(response.id, int) else None
        if pending is None:
            logger.debug(f"[{self.server_id}] no pending request for id={response.id!r}; dropping response")
            return

        pending.cancel_timer()
        if pending.future.done():
            return
        if response.is_error:
            pending.future.set_exception(RemoteError.from_payload(response.error, server_id=self.server_id))
        else:
            pending.future.set_result(response.result)

    def _route_notification(self, notification: JsonRpcNotification) -> None:
        handler = self._notification_handler
        if handler is None:
            logger.debug(f"[{self.server_id}] unhandled notification: {notification.method}")
            return
        try:
            handler(notification)
        except Exception as e:
            logger.error(f"[{self.server_id}] notification handler failed for {notification.method}: {e}")

    def _answer(self, request: JsonRpcRequest) -> None:
        """Reply to a server-initiated request: ping is answered, everything else is rejected."""
        if request.method == METHOD_PING:
            reply = JsonRpcResponse(id=request.id, result={})
        else:
            reply = JsonRpcResponse(
                id=request.id,
                error={"code": METHOD_NOT_FOUND, "message": f"Method not found: {request.method}"},
            )

        async def _send_reply() -> None:
            try:
                await self.send(reply)
            except ConnectionLost as e:
                logger.debug(f"[{self.server_id}] could not answer {request.method}: {e.message}")

        task = asyncio.get_running_loop().create_task(_send_reply())
        self._reply_tasks.add(task)
        task.add_done_callback(self._reply_tasks.discard)

    def _expire(self, request_id: int, deadline: float) -> None:
        pending = self._pending.pop(request_id, None)
        if pending is None:
            return
        pending.timer = None
        logger.warning(f"[{self.server_id}] request '{pending.method}' (id={request_id}) timed out after {deadline:g}s")
        if not pending.future.done():
            pending.future.set_exception(
                RequestTimeout(
                    f"Request '{pending.method}' to '{self.server_id}' timed out after {deadline:g}s",
                    server_id=self.server_id,
                )
            )

    def _discard(self, pending: PendingRequest) -> None:
        if self._pending.get(pending.id) is pending:
            del self._pending[pending.id]
        pending.cancel_timer()
        # Mark a failure as retrieved when the caller bailed out before awaiting it.
        if pending.future.done() and not pending.future.cancelled():
            pending.future.exception()

    def _mark_lost(self, reason: str) -> None:
        if self._closed:
            return
        self._closed = True
        self._close_reason = reason

        pending, self._pending = list(self._pending.values()), {}
        if pending:
            logger.warning(f"[{self.server_id}] connection lost ({reason}); failing {len(pending)} pending request(s)")
        for entry in pending:
            entry.cancel_timer()
            if not entry.future.done():
                entry.future.set_exception(
                    ConnectionLost(
                        f"Connection to '{self.server_id}' lost before '{entry.method}' completed: {reason}",
                        server_id=self.server_id,
                    )
                )

        if self._close_handler is not None:
            try:
                self._close_handler(reason)
            except Exception as e:
                logger.error(f"[{self.server_id}] close handler failed: {e}")
