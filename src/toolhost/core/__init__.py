"""
Core infrastructure for toolhost: errors, results, events and logging.
"""

from toolhost.core.errors import ErrorKind, ToolHostError
from toolhost.core.events import Event, EventBus
from toolhost.core.results import HostResult

__all__ = ["ErrorKind", "ToolHostError", "Event", "EventBus", "HostResult"]
