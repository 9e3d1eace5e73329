"""
toolhost - supervise stdio tool-provider processes and call their tools.

The host launches external MCP-style tool servers as child processes, speaks
newline-delimited JSON-RPC over their stdin/stdout, discovers the tools each
one exposes and routes tool calls to the right process.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

__version__ = "0.1.0"

if TYPE_CHECKING:
    from toolhost.mcp.host import HostRegistry as HostRegistry

__all__ = ["HostRegistry", "__version__"]


def __getattr__(name: str):
    # Lazy import so `toolhost.config.*` can be used without pulling in asyncio machinery.
    if name == "HostRegistry":
        from toolhost.mcp.host import HostRegistry  # local import

        return HostRegistry
    raise AttributeError(name)
