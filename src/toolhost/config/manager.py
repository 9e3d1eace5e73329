"""
Configuration Manager - host settings and server definitions.

Handles YAML/JSON configuration files layered over built-in defaults.
"""

from __future__ import annotations

import json
import os
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional

import yaml
from loguru import logger

from toolhost.config.models import ClientInfo, HostTimeouts, ServerConfig
from toolhost.config.standard import servers_from_mapping


class ConfigManager:
    """
    Configuration manager for the tool server host.

    Features:
    - YAML/JSON configuration files
    - Environment variable overrides
    - Change watchers
    - Default values
    """

    DEFAULT_CONFIG: Dict[str, Any] = {
        "host": {
            "max_servers": 10,
            "protocol_version": "2024-11-05",
            "client": {
                "name": "toolhost",
                "version": "0.1.0",
            },
            "timeouts": {
                "handshake_seconds": 10.0,
                "tool_call_seconds": 60.0,
                "startup_seconds": 30.0,
                "stop_grace_seconds": 5.0,
            },
        },
        "logging": {
            "level": "INFO",
            "file": None,
        },
        "servers": [],
        "mcpServers": {},
    }

    ENV_OVERRIDES = {
        "TOOLHOST_DEBUG": ("logging.level", lambda x: "DEBUG" if x.lower() == "true" else None),
        "TOOLHOST_LOG_LEVEL": ("logging.level", str.upper),
        "TOOLHOST_HANDSHAKE_TIMEOUT": ("host.timeouts.handshake_seconds", float),
        "TOOLHOST_TOOL_TIMEOUT": ("host.timeouts.tool_call_seconds", float),
    }

    def __init__(self, config_path: Optional[str] = None):
        self._config_path = Path(config_path) if config_path else None
        self._config: Dict[str, Any] = self._deep_copy(self.DEFAULT_CONFIG)
        self._watchers: List[Callable[[str, Any], None]] = []
        self._loaded = False

    @property
    def path(self) -> Optional[Path]:
        return self._config_path

    def load(self) -> None:
        """Load configuration from file (if any) and apply environment overrides."""
        self._config = self._deep_copy(self.DEFAULT_CONFIG)

        if self._config_path is not None:
            if not self._config_path.exists():
                raise FileNotFoundError(f"Config file not found: {self._config_path}")
            content = self._config_path.read_text(encoding="utf-8")
            if self._config_path.suffix in (".yaml", ".yml"):
                file_config = yaml.safe_load(content) or {}
            else:
                file_config = json.loads(content or "{}")
            if not isinstance(file_config, dict):
                raise ValueError(f"Config file {self._config_path} must contain a mapping")
            self._deep_merge(self._config, file_config)
            logger.info(f"Configuration loaded from {self._config_path}")

        self._apply_env_overrides()
        self._loaded = True

    def save(self, path: Optional[str] = None) -> None:
        """Save configuration to file."""
        target = Path(path) if path else self._config_path
        if target is None:
            raise ValueError("No configuration path to save to")
        target.parent.mkdir(parents=True, exist_ok=True)
        if target.suffix in (".yaml", ".yml"):
            content = yaml.dump(self._config, default_flow_style=False, sort_keys=False)
        else:
            content = json.dumps(self._config, indent=2)
        target.write_text(content, encoding="utf-8")
        logger.debug(f"Configuration saved to {target}")

    def get(self, key: str, default: Any = None) -> Any:
        """
        Get a configuration value.

        Args:
            key: Dot-notation key (e.g., "host.timeouts.handshake_seconds")
            default: Default value if not found
        """
        value: Any = self._config
        for part in key.split("."):
            if isinstance(value, dict) and part in value:
                value = value[part]
            else:
                return default
        return value

    def set(self, key: str, value: Any) -> None:
        """Set a dot-notation key and notify watchers."""
        parts = key.split(".")
        config = self._config
        for part in parts[:-1]:
            if not isinstance(config.get(part), dict):
                config[part] = {}
            config = config[part]
        config[parts[-1]] = value

        for watcher in self._watchers:
            try:
                watcher(key, value)
            except Exception as e:
                logger.warning(f"Config watcher error: {e}")

    def watch(self, callback: Callable[[str, Any], None]) -> None:
        self._watchers.append(callback)

    def unwatch(self, callback: Callable[[str, Any], None]) -> None:
        if callback in self._watchers:
            self._watchers.remove(callback)

    def timeouts(self) -> HostTimeouts:
        defaults = HostTimeouts()
        return HostTimeouts(
            handshake_seconds=float(self.get("host.timeouts.handshake_seconds", defaults.handshake_seconds)),
            tool_call_seconds=float(self.get("host.timeouts.tool_call_seconds", defaults.tool_call_seconds)),
            startup_seconds=float(self.get("host.timeouts.startup_seconds", defaults.startup_seconds)),
            stop_grace_seconds=float(self.get("host.timeouts.stop_grace_seconds", defaults.stop_grace_seconds)),
        )

    def client_info(self) -> ClientInfo:
        defaults = ClientInfo()
        return ClientInfo(
            name=str(self.get("host.client.name", defaults.name)),
            version=str(self.get("host.client.version", defaults.version)),
            protocol_version=str(self.get("host.protocol_version", defaults.protocol_version)),
        )

    def max_servers(self) -> int:
        return int(self.get("host.max_servers", 10))

    def server_configs(self) -> List[ServerConfig]:
        """Servers from the ``servers`` list followed by the ``mcpServers`` map; first id wins."""
        configs: List[ServerConfig] = []
        for entry in self.get("servers") or []:
            configs.append(ServerConfig.model_validate(entry))
        configs.extend(servers_from_mapping(self.get("mcpServers") or {}))

        seen = set()
        unique: List[ServerConfig] = []
        for cfg in configs:
            if cfg.id in seen:
                logger.warning(f"Duplicate server id '{cfg.id}' in configuration; keeping the first")
                continue
            seen.add(cfg.id)
            unique.append(cfg)
        return unique

    def _apply_env_overrides(self) -> None:
        for env_var, (config_key, converter) in self.ENV_OVERRIDES.items():
            value = os.getenv(env_var)
            if not value:
                continue
            try:
                converted = converter(value)
            except ValueError as e:
                logger.warning(f"Failed to apply {env_var}: {e}")
                continue
            if converted is not None:
                self.set(config_key, converted)
                logger.debug(f"Applied env override: {env_var}")

    def _deep_merge(self, base: dict, override: dict) -> None:
        for key, value in override.items():
            if key in base and isinstance(base[key], dict) and isinstance(value, dict):
                self._deep_merge(base[key], value)
            else:
                base[key] = value

    def _deep_copy(self, obj: Any) -> Any:
        if isinstance(obj, dict):
            return {k: self._deep_copy(v) for k, v in obj.items()}
        if isinstance(obj, list):
            return [self._deep_copy(item) for item in obj]
        return obj

    @property
    def all(self) -> Dict[str, Any]:
        """Get all configuration."""
        return self._deep_copy(self._config)
