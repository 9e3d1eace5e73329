"""
Configuration: server launch descriptions, host settings and file loading.
"""

from toolhost.config.manager import ConfigManager
from toolhost.config.models import ClientInfo, HostTimeouts, ServerConfig, ToolCall, ToolDescriptor

__all__ = [
    "ConfigManager",
    "ClientInfo",
    "HostTimeouts",
    "ServerConfig",
    "ToolCall",
    "ToolDescriptor",
]
