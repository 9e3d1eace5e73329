"""
Lifecycle event bus for the tool server host.

Supervisors publish server lifecycle changes here so the surrounding
application (UI, chat integration) can react without polling the registry.
"""

from __future__ import annotations

import asyncio
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Awaitable, Callable, Deque, Dict, List, Optional, Set, Tuple

from loguru import logger


SERVER_ADDED = "server_added"
SERVER_STARTING = "server_starting"
SERVER_STARTED = "server_started"
SERVER_ERROR = "server_error"
SERVER_STOPPED = "server_stopped"
SERVER_REMOVED = "server_removed"
TOOLS_DISCOVERED = "tools_discovered"
SERVER_MESSAGE = "server_message"

ALL_EVENTS = "*"


@dataclass
class Event:
    """One lifecycle change of one server; ``data`` is a snapshot, never live state."""

    name: str
    data: Dict[str, Any]
    source: Optional[str] = None
    timestamp: datetime = field(default_factory=datetime.now)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "server_id": self.source,
            "data": self.data,
            "timestamp": self.timestamp.isoformat(),
        }


EventHandler = Callable[[Event], Awaitable[None]]


class EventBus:
    """
    Asynchronous pub/sub bus for server lifecycle events.

    A subscription names one event (or ``"*"``) and optionally one server id.
    Handlers are coroutines run in subscription order; a failing handler is
    logged and never reaches the emitting supervisor.
    """

    def __init__(self, max_history: int = 1000):
        self._subscriptions: List[Tuple[str, Optional[str], EventHandler]] = []
        self._history: Deque[Event] = deque(maxlen=max_history)
        self._tasks: Set[asyncio.Task] = set()

    def subscribe(self, event_name: str, handler: EventHandler, server_id: Optional[str] = None) -> None:
        """Call ``handler`` for ``event_name`` ("*" for all), limited to ``server_id`` when given."""
        self._subscriptions.append((event_name, server_id, handler))
        scope = f" on '{server_id}'" if server_id else ""
        logger.debug(f"Handler subscribed to '{event_name}'{scope}")

    async def emit(
        self,
        event_name: str,
        data: Dict[str, Any],
        source: Optional[str] = None,
        wait: bool = False,
    ) -> Event:
        """
        Publish an event.

        Args:
            event_name: Name of the event
            data: Event payload (should be a snapshot, not live state)
            source: Id of the server the event is about
            wait: If True, wait for all handlers to complete
        """
        event = Event(name=event_name, data=data, source=source)
        self._history.append(event)

        handlers = [
            handler
            for name, server_id, handler in self._subscriptions
            if name in (event_name, ALL_EVENTS) and (server_id is None or server_id == source)
        ]
        if not handlers:
            return event

        async def run_handler(handler: EventHandler) -> None:
            try:
                await handler(event)
            except Exception as e:
                logger.error(f"Event handler error for '{event_name}' ({source}): {e}")

        if wait:
            await asyncio.gather(*[run_handler(h) for h in handlers])
        else:
            for handler in handlers:
                task = asyncio.create_task(run_handler(handler))
                self._tasks.add(task)
                task.add_done_callback(self._tasks.discard)

        return event

    def get_history(
        self,
        event_name: Optional[str] = None,
        limit: int = 100,
        source: Optional[str] = None,
    ) -> List[Event]:
        """Most recent events, oldest first, optionally filtered by name and/or server id."""
        events = [
            e for e in self._history
            if (not event_name or e.name == event_name) and (source is None or e.source == source)
        ]
        return events[-limit:]

    async def drain(self) -> None:
        """Wait for handlers dispatched in the background to finish."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)
