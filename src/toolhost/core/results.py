"""
HostResult - success/failure envelope returned by every host API call.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, Optional

from toolhost.core.errors import ErrorKind, ToolHostError


@dataclass
class HostResult:
    """Result of a host registry operation."""

    success: bool
    data: Any = None
    error: Optional[str] = None
    error_kind: Optional[ErrorKind] = None
    execution_time_ms: float = 0
    metadata: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def ok(cls, data: Any = None, **metadata: Any) -> "HostResult":
        return cls(success=True, data=data, metadata=dict(metadata))

    @classmethod
    def fail(cls, error: ToolHostError, **metadata: Any) -> "HostResult":
        meta = dict(metadata)
        if error.server_id and "server_id" not in meta:
            meta["server_id"] = error.server_id
        return cls(success=False, error=error.message, error_kind=error.kind, metadata=meta)

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary."""
        return {
            "success": self.success,
            "data": self.data,
            "error": self.error,
            "error_kind": self.error_kind.value if self.error_kind else None,
            "execution_time_ms": self.execution_time_ms,
            "metadata": self.metadata,
        }
