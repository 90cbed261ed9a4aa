"""
mcpgate Configuration - Configuration loading and validation.

This module provides the Config class for managing mcpgate configuration
from both global (~/.mcpgate/config.yaml) and local (.mcpgate/config.yaml)
sources, plus the pydantic schema for MCP service definitions.
"""

import os
import re
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Any, Dict, List, Optional

import yaml
from pydantic import BaseModel, Field, ValidationError, field_validator, model_validator

DEFAULT_TIMEOUT = 20.0
DEFAULT_CACHE_TTL = 30.0
DEFAULT_PROTOCOL_VERSION = "2025-06-18"

SERVICE_ID_PATTERN = re.compile(r"^[a-zA-Z0-9_-]+$")


class ConfigError(Exception):
    """Raised when there's a configuration error."""

    pass


class TransportKind(str, Enum):
    """The closed set of wire transports a service can declare."""

    STREAMABLE_HTTP = "streamable_http"
    SSE = "sse"
    STDIO = "stdio"

    @classmethod
    def parse(cls, value: str) -> Optional["TransportKind"]:
        """Return the kind for ``value``, or None if it is not a known transport."""
        try:
            return cls(normalize_transport(value))
        except ValueError:
            return None


_TRANSPORT_ALIASES = {
    "": TransportKind.STREAMABLE_HTTP.value,
    "streamablehttp": TransportKind.STREAMABLE_HTTP.value,
    "streamable_http": TransportKind.STREAMABLE_HTTP.value,
    "streamable-http": TransportKind.STREAMABLE_HTTP.value,
    "sse": TransportKind.SSE.value,
    "stdio": TransportKind.STDIO.value,
}


def normalize_transport(raw: Optional[str]) -> str:
    """Map transport aliases to their canonical name; unknown values pass through."""
    raw = raw or ""
    return _TRANSPORT_ALIASES.get(raw.strip().lower(), raw)


class ToolState(BaseModel):
    """Per-tool override on a service. Only disabled tools are recorded."""

    name: str
    enabled: bool = False
    updated_at: Optional[datetime] = None


def normalize_tool_states(states: List[ToolState]) -> List[ToolState]:
    """Keep explicit disabled entries only, one per name, sorted by name."""
    by_name: Dict[str, ToolState] = {}
    for state in states:
        name = state.name.strip()
        if not name:
            continue
        if state.enabled:
            by_name.pop(name, None)
            continue
        by_name[name] = state.model_copy(update={"name": name, "enabled": False})
    return [by_name[name] for name in sorted(by_name)]


class ServiceConfig(BaseModel):
    """Configuration for a single MCP service."""

    id: str = ""
    name: str = ""
    endpoint: str = ""
    command: str = ""
    args: List[str] = Field(default_factory=list)
    env: Dict[str, str] = Field(default_factory=dict)
    transport: str = TransportKind.STREAMABLE_HTTP.value
    auth_token: Optional[str] = None
    enabled: bool = True
    tool_states: List[ToolState] = Field(default_factory=list)
    updated_at: Optional[datetime] = None

    @model_validator(mode="before")
    @classmethod
    def _default_transport(cls, data: Any) -> Any:
        # A bare command with no endpoint can only mean a subprocess service.
        if isinstance(data, dict) and not (data.get("transport") or "").strip():
            if data.get("command") and not data.get("endpoint"):
                data = {**data, "transport": TransportKind.STDIO.value}
        return data

    @field_validator("transport", mode="before")
    @classmethod
    def _normalize_transport(cls, value: Any) -> str:
        return normalize_transport(value)

    @field_validator("tool_states")
    @classmethod
    def _normalize_tool_states(cls, value: List[ToolState]) -> List[ToolState]:
        return normalize_tool_states(value)

    @property
    def transport_kind(self) -> Optional[TransportKind]:
        return TransportKind.parse(self.transport)

    def is_tool_enabled(self, tool_name: str) -> bool:
        tool_name = tool_name.strip()
        return not any(state.name == tool_name and not state.enabled for state in self.tool_states)

    def validate_service(self) -> None:
        """
        Check the service definition.

        Raises:
            ConfigError: If the definition cannot be used to reach a service.
        """
        if not self.id:
            raise ConfigError("service id is required")
        if not SERVICE_ID_PATTERN.match(self.id):
            raise ConfigError("service id must match [a-zA-Z0-9_-]+")

        kind = self.transport_kind
        if kind is None:
            raise ConfigError(
                f"service transport must be streamable_http, sse or stdio (got {self.transport!r})"
            )
        if kind is TransportKind.STDIO:
            if not self.command.strip():
                raise ConfigError("service command is required for stdio transport")
        else:
            if not self.endpoint:
                raise ConfigError("service endpoint is required")
            if not self.endpoint.startswith(("http://", "https://")):
                raise ConfigError("service endpoint must start with http:// or https://")

        for state in self.tool_states:
            if not state.name.strip():
                raise ConfigError("service tool state name is required")


class ClientConfig(BaseModel):
    """Protocol client settings. Unset values fall back to env, then defaults."""

    timeout: Optional[float] = None
    protocol_version: Optional[str] = None
    cache_ttl: Optional[float] = None


class MCPGateConfig(BaseModel):
    """Complete mcpgate configuration schema."""

    client: ClientConfig = Field(default_factory=ClientConfig)
    services: Dict[str, ServiceConfig] = Field(default_factory=dict)

    @model_validator(mode="after")
    def _fill_service_ids(self) -> "MCPGateConfig":
        for key, service in self.services.items():
            if not service.id:
                service.id = key
            if not service.name:
                service.name = service.id
        return self


@dataclass
class ClientSettings:
    """Resolved protocol client settings."""

    timeout: float = DEFAULT_TIMEOUT
    protocol_version: str = DEFAULT_PROTOCOL_VERSION
    cache_ttl: float = DEFAULT_CACHE_TTL


_DURATION_UNITS = {"ms": 0.001, "s": 1.0, "m": 60.0, "h": 3600.0}
_DURATION_RE = re.compile(r"^\s*([0-9]*\.?[0-9]+)\s*(ms|s|m|h)?\s*$")


def parse_duration(value: str) -> float:
    """
    Parse ``20``, ``20s``, ``500ms``, ``2m`` or ``1h`` into seconds.

    Raises:
        ConfigError: If the value is not a duration.
    """
    match = _DURATION_RE.match(value or "")
    if not match:
        raise ConfigError(f"invalid duration: {value!r}")
    number, unit = match.groups()
    return float(number) * _DURATION_UNITS[unit or "s"]


class Config:
    """
    mcpgate configuration manager.

    Handles loading, merging, and validating configuration from:
    - Global: ~/.mcpgate/config.yaml
    - Local: .mcpgate/config.yaml (project-specific)

    Local configuration overrides global configuration.

    Example:
        >>> config = Config.load()
        >>> settings = config.get_client_settings()
        >>> services = config.get_services()
    """

    GLOBAL_CONFIG_DIR = Path.home() / ".mcpgate"
    LOCAL_CONFIG_DIR = Path(".mcpgate")

    def __init__(
        self,
        global_config: Optional[Dict[str, Any]] = None,
        local_config: Optional[Dict[str, Any]] = None,
        path: Optional[Path] = None,
    ):
        """
        Initialize Config.

        Args:
            global_config: Global configuration dictionary.
            local_config: Local (project) configuration dictionary.
            path: File that ``save()`` writes the local configuration to.
        """
        self._global_config = global_config or {}
        self._local_config = local_config or {}
        self.path = path
        self._merged: Optional[MCPGateConfig] = None

    @classmethod
    def load(cls, path: Optional[Path] = None) -> "Config":
        """
        Load configuration.

        With ``path`` only that file is read. Otherwise the global file and
        the nearest local file are merged.
        """
        if path is not None:
            path = Path(path)
            return cls(local_config=cls._load_yaml(path), path=path)

        global_config = cls._load_yaml(cls.GLOBAL_CONFIG_DIR / "config.yaml")
        local_path = cls._find_local_config()
        local_config = cls._load_yaml(local_path)

        return cls(
            global_config=global_config,
            local_config=local_config,
            path=local_path or cls.LOCAL_CONFIG_DIR / "config.yaml",
        )

    @classmethod
    def _load_yaml(cls, path: Optional[Path]) -> Dict[str, Any]:
        """Load YAML file if it exists."""
        if path is None or not path.exists():
            return {}

        try:
            with open(path) as f:
                data = yaml.safe_load(f)
                return data if data else {}
        except Exception as e:
            raise ConfigError(f"Failed to load config from {path}: {e}")

    @classmethod
    def _find_local_config(cls) -> Optional[Path]:
        """Find the local config file by walking up the directory tree."""
        current = Path.cwd()
        while current != current.parent:
            config_path = current / ".mcpgate" / "config.yaml"
            if config_path.exists():
                return config_path
            current = current.parent
        return None

    def get_merged_config(self) -> Dict[str, Any]:
        """Get the merged configuration as a dictionary."""
        return self._deep_merge(self._global_config.copy(), self._local_config)

    @property
    def merged(self) -> MCPGateConfig:
        """Get the validated merged configuration."""
        if self._merged is None:
            try:
                self._merged = MCPGateConfig(**self.get_merged_config())
            except ValidationError as e:
                raise ConfigError(f"Invalid configuration: {e}")
        return self._merged

    def get_services(self) -> List[ServiceConfig]:
        """Get all configured services, each validated."""
        services = list(self.merged.services.values())
        for service in services:
            try:
                service.validate_service()
            except ConfigError as e:
                raise ConfigError(f"invalid mcp service {service.id!r}: {e}")
        return services

    def get_client_settings(self) -> ClientSettings:
        """
        Resolve client settings.

        Config values win, then the ``MCP_HTTP_TIMEOUT``,
        ``MCP_PROTOCOL_VERSION`` and ``MCP_TOOL_CACHE_TTL`` environment
        variables, then defaults. Non-positive durations mean "default".
        """
        client = self.merged.client

        timeout = client.timeout
        if timeout is None and os.environ.get("MCP_HTTP_TIMEOUT"):
            timeout = parse_duration(os.environ["MCP_HTTP_TIMEOUT"])
        cache_ttl = client.cache_ttl
        if cache_ttl is None and os.environ.get("MCP_TOOL_CACHE_TTL"):
            cache_ttl = parse_duration(os.environ["MCP_TOOL_CACHE_TTL"])
        protocol_version = client.protocol_version or os.environ.get("MCP_PROTOCOL_VERSION", "")

        return ClientSettings(
            timeout=timeout if timeout and timeout > 0 else DEFAULT_TIMEOUT,
            protocol_version=protocol_version.strip() or DEFAULT_PROTOCOL_VERSION,
            cache_ttl=cache_ttl if cache_ttl and cache_ttl > 0 else DEFAULT_CACHE_TTL,
        )

    def set_services(self, services: List[ServiceConfig]) -> None:
        """Replace the locally configured services."""
        self._local_config["services"] = {
            service.id: service.model_dump(mode="json", exclude={"id"}, exclude_none=True)
            for service in services
        }
        self._merged = None  # Reset cache

    def save(self) -> None:
        """Save the local configuration to ``self.path``."""
        if self.path is None:
            raise ConfigError("no configuration file to save to")
        try:
            self._save_yaml(self.path, self._local_config)
        except OSError as e:
            raise ConfigError(f"Failed to save config to {self.path}: {e}")

    def _save_yaml(self, path: Path, data: Dict[str, Any]) -> None:
        """Save data to a YAML file."""
        path.parent.mkdir(parents=True, exist_ok=True)

        tmp_path = path.with_name(path.name + ".tmp")
        with open(tmp_path, "w") as f:
            yaml.dump(data, f, default_flow_style=False, sort_keys=False)
        os.replace(tmp_path, path)

    def _deep_merge(self, base: Dict[str, Any], override: Dict[str, Any]) -> Dict[str, Any]:
        """Deep merge two dictionaries, with override taking precedence."""
        result = base.copy()

        for key, value in override.items():
            if key in result and isinstance(result[key], dict) and isinstance(value, dict):
                result[key] = self._deep_merge(result[key], value)
            else:
                result[key] = value

        return result
