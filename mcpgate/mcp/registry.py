"""Tool registry: discovers, caches, and resolves tools across MCP services."""

from __future__ import annotations

import json
import logging
import re
import threading
import time
from typing import Any, Callable, Dict, List, Optional, Tuple

from mcpgate.mcp.client import MCPClient
from mcpgate.mcp.errors import MCPError
from mcpgate.mcp.schema import (
    Binding,
    RemoteTool,
    ServiceStatus,
    ServiceToolStatus,
    ToolCall,
    ToolCallResult,
    ToolDefinition,
    ToolFunction,
    empty_object_schema,
)
from mcpgate.validation.config import DEFAULT_CACHE_TTL, ServiceConfig
from mcpgate.validation.directory import ServiceDirectory

logger = logging.getLogger(__name__)


class ToolError(Exception):
    """Raised when a tool call cannot be resolved or completed."""


class UnknownToolError(ToolError):
    pass


class ServiceNotFoundError(ToolError):
    pass


class ServiceDisabledError(ToolError):
    pass


class ToolDisabledError(ToolError):
    pass


class InvalidArgumentsError(ToolError):
    pass


class ToolExecutionError(ToolError):
    """The service ran the tool and flagged the result as an error."""


_UNSAFE_NAME_CHARS = re.compile(r"[^A-Za-z0-9_-]")


def sanitize_name(value: str) -> str:
    """Make ``value`` safe for a function name: ``[A-Za-z0-9_-]`` only."""
    value = value.strip()
    if not value:
        return "tool"
    return _UNSAFE_NAME_CHARS.sub("_", value).strip("_")


def to_tool_definition(service: ServiceConfig, tool: RemoteTool) -> Tuple[ToolDefinition, Binding]:
    """Build the advertised definition for ``tool`` and its binding."""
    prefix = sanitize_name(service.id)
    tool_part = sanitize_name(tool.name) or "tool"
    name = f"{prefix}__{tool_part}" if prefix else tool_part

    description = tool.description.strip() or "MCP tool"
    parameters = tool.input_schema if tool.input_schema is not None else empty_object_schema()

    definition = ToolDefinition(
        function=ToolFunction(
            name=name,
            description=f"[MCP {service.name}] {description}",
            parameters=parameters,
        )
    )
    return definition, Binding(service_id=service.id, tool_name=tool.name)


def parse_tool_arguments(raw: Optional[str]) -> Dict[str, Any]:
    """
    Decode a tool call's JSON argument string.

    Blank input and ``null`` mean no arguments.

    Raises:
        InvalidArgumentsError: If the payload is not a JSON object.
    """
    raw = (raw or "").strip()
    if not raw:
        return {}
    try:
        args = json.loads(raw)
    except ValueError as exc:
        raise InvalidArgumentsError(str(exc))
    if args is None:
        return {}
    if not isinstance(args, dict):
        raise InvalidArgumentsError(f"expected a JSON object, got {type(args).__name__}")
    return args


def render_tool_result(result: ToolCallResult) -> str:
    """Text parts if any, else structured content, else the raw result, as a string."""
    parts = result.text_parts()
    if parts:
        return "\n".join(parts)

    if result.structured_content is not None:
        try:
            return json.dumps(result.structured_content, ensure_ascii=False)
        except (TypeError, ValueError):
            pass

    raw = result.model_dump(mode="json", by_alias=True, exclude_defaults=True)
    return json.dumps(raw, ensure_ascii=False)


class ToolRegistry:
    """
    Serves tool definitions for every enabled MCP service.

    ``refresh_tools()`` asks each enabled service for its tools and builds
    uniquely named definitions (``<service>__<tool>``, with ``_2``, ``_3``...
    on collisions) plus a binding table mapping those names back to the
    service and remote tool. Results are cached for ``cache_ttl`` seconds.

    One lock guards the definitions, bindings and deadline. Network I/O is
    done without it; the new state is swapped in whole.
    """

    def __init__(
        self,
        directory: ServiceDirectory,
        client: MCPClient,
        cache_ttl: float = DEFAULT_CACHE_TTL,
        timeout: Optional[float] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        """
        Args:
            directory: Source of service definitions and tool enable flags.
            client: Protocol client used for discovery and calls.
            cache_ttl: Seconds a refreshed tool list stays valid.
            timeout: Per-RPC deadline; the client's default when None.
            clock: Monotonic clock, replaceable in tests.
        """
        self._directory = directory
        self._client = client
        self._cache_ttl = cache_ttl if cache_ttl and cache_ttl > 0 else DEFAULT_CACHE_TTL
        self._timeout = timeout
        self._clock = clock

        self._lock = threading.Lock()
        self._tools: List[ToolDefinition] = []
        self._bindings: Dict[str, Binding] = {}
        self._cache_until = float("-inf")

    # ── Tool listing ──────────────────────────────────────────────────────

    def list_tools(self) -> List[ToolDefinition]:
        """Cached definitions while fresh, otherwise a full refresh."""
        with self._lock:
            if self._tools and self._clock() < self._cache_until:
                return list(self._tools)
        return self.refresh_tools()

    def refresh_tools(self) -> List[ToolDefinition]:
        """Rediscover tools on every enabled service and replace the cache."""
        definitions: List[ToolDefinition] = []
        bindings: Dict[str, Binding] = {}

        for service in self._directory.list_enabled_services():
            try:
                tools = self._client.list_tools(service, timeout=self._timeout)
            except MCPError as exc:
                logger.warning("Skipping MCP service %r: %s", service.id, exc)
                continue

            for tool in tools:
                if not service.is_tool_enabled(tool.name):
                    continue
                definition, binding = to_tool_definition(service, tool)
                base = name = definition.function.name
                suffix = 2
                while name in bindings:
                    name = f"{base}_{suffix}"
                    suffix += 1
                definition.function.name = name
                bindings[name] = binding
                definitions.append(definition)

        definitions.sort(key=lambda d: d.name)

        with self._lock:
            self._tools = definitions
            self._bindings = bindings
            self._cache_until = self._clock() + self._cache_ttl

        logger.debug("Refreshed MCP tools: %d definitions", len(definitions))
        return list(definitions)

    def invalidate_cache(self) -> None:
        """Make the next ``list_tools()`` refresh."""
        with self._lock:
            self._cache_until = float("-inf")

    # ── Tool calls ────────────────────────────────────────────────────────

    def resolve(self, name: str) -> Binding:
        """
        Map an exposed name to its binding.

        A miss forces one refresh before giving up.

        Raises:
            UnknownToolError: If the name is still unbound after the refresh.
        """
        binding = self._lookup(name)
        if binding is None:
            self.refresh_tools()
            binding = self._lookup(name)
            if binding is None:
                raise UnknownToolError(f"unknown tool {name!r}")
        return binding

    def call_tool(self, call: ToolCall) -> str:
        """
        Execute a tool call and return its rendered output.

        Raises:
            ToolError: The tool is unknown, its service or the tool itself is
                missing or disabled, the arguments are invalid, or the result
                is flagged as an error.
            MCPError: The service could not be reached or answered badly.
        """
        name = call.function.name
        binding = self.resolve(name)

        # Configuration may have changed since the bindings were built.
        service = self._directory.get_service(binding.service_id)
        if service is None:
            raise ServiceNotFoundError(f"mcp service {binding.service_id!r} not found")
        if not service.enabled:
            raise ServiceDisabledError(f"mcp service {binding.service_id!r} is disabled")
        if not service.is_tool_enabled(binding.tool_name):
            raise ToolDisabledError(
                f"mcp service {binding.service_id!r} tool {binding.tool_name!r} is disabled"
            )

        try:
            args = parse_tool_arguments(call.function.arguments)
        except InvalidArgumentsError as exc:
            raise InvalidArgumentsError(f"invalid tool arguments for {name!r}: {exc}")

        result = self._client.call_tool(service, binding.tool_name, args, timeout=self._timeout)
        output = render_tool_result(result)
        if result.is_error:
            raise ToolExecutionError(output.strip())
        return output

    def _lookup(self, name: str) -> Optional[Binding]:
        with self._lock:
            return self._bindings.get(name)

    # ── Reporting ─────────────────────────────────────────────────────────

    def list_service_statuses(self) -> List[ServiceStatus]:
        """Probe every configured service. Never cached."""
        statuses: List[ServiceStatus] = []

        for service in self._directory.list_services():
            if not service.enabled:
                statuses.append(ServiceStatus(service=service, error="disabled"))
                continue

            try:
                tools = self._client.list_tools(service, timeout=self._timeout)
            except MCPError as exc:
                statuses.append(ServiceStatus(service=service, error=str(exc)))
                continue

            tool_statuses = sorted(
                (
                    ServiceToolStatus(
                        name=tool.name,
                        description=tool.description.strip(),
                        enabled=service.is_tool_enabled(tool.name),
                    )
                    for tool in tools
                ),
                key=lambda t: t.name,
            )
            statuses.append(
                ServiceStatus(
                    service=service,
                    connected=True,
                    tool_count=sum(1 for t in tool_statuses if t.enabled),
                    tools=tool_statuses,
                )
            )

        statuses.sort(key=lambda s: s.service.id)
        return statuses
