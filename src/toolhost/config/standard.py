"""
Import/export of the common ``mcp.json`` format:

    {"mcpServers": {"<id>": {"command": "...", "args": [...], "env": {...}, "disabled": false}}}
"""

from __future__ import annotations

import json
from pathlib import Path
from typing import Any, Dict, Iterable, List, Mapping, Union

from loguru import logger

from toolhost.config.models import ServerConfig


def name_from_id(server_id: str) -> str:
    """'sequential-thinking' -> 'Sequential Thinking'."""
    words = [w for w in server_id.replace("_", "-").split("-") if w]
    return " ".join(w[:1].upper() + w[1:] for w in words) or server_id


def servers_from_mapping(mapping: Mapping[str, Any]) -> List[ServerConfig]:
    """Convert an ``mcpServers`` mapping into server configs, skipping disabled entries."""
    configs: List[ServerConfig] = []
    for server_id, entry in (mapping or {}).items():
        if not isinstance(entry, dict):
            logger.warning(f"Ignoring mcpServers entry '{server_id}': expected an object")
            continue
        if entry.get("disabled"):
            continue
        configs.append(
            ServerConfig(
                id=server_id,
                name=entry.get("name") or name_from_id(server_id),
                description=entry.get("description") or f"Imported from mcpServers: {server_id}",
                command=entry.get("command", ""),
                args=list(entry.get("args") or []),
                env=entry.get("env") or {},
                cwd=entry.get("cwd"),
                auto_start=bool(entry.get("autoStart", False)),
            )
        )
    return configs


def load_standard_config(path: Union[str, Path]) -> List[ServerConfig]:
    """Read an ``mcp.json`` file. A missing file yields no servers."""
    path = Path(path)
    if not path.exists():
        return []
    data = json.loads(path.read_text(encoding="utf-8"))
    configs = servers_from_mapping(data.get("mcpServers") or {})
    logger.info(f"Imported {len(configs)} server(s) from {path}")
    return configs


def to_standard_mapping(servers: Iterable[ServerConfig]) -> Dict[str, Any]:
    out: Dict[str, Any] = {}
    for server in servers:
        entry: Dict[str, Any] = {"command": server.command, "args": list(server.args)}
        if server.env:
            entry["env"] = dict(server.env)
        if server.cwd:
            entry["cwd"] = server.cwd
        entry["disabled"] = False
        out[server.id] = entry
    return {"mcpServers": out}


def export_standard_config(servers: Iterable[ServerConfig], path: Union[str, Path]) -> None:
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(json.dumps(to_standard_mapping(servers), indent=2), encoding="utf-8")
    logger.info(f"Exported server configuration to {path}")
