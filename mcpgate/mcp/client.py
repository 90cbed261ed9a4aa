"""MCP protocol client: tool discovery and invocation over any transport."""

from __future__ import annotations

import itertools
import logging
import threading
from typing import Any, Dict, List, Optional

import httpx
from pydantic import ValidationError

from mcpgate import __version__
from mcpgate.mcp.codec import build_notification, build_request
from mcpgate.mcp.errors import DecodeError, MCPError, SessionError, TransportError
from mcpgate.mcp.schema import RemoteTool, ToolCallResult
from mcpgate.mcp.session import SessionStore
from mcpgate.mcp.transport import Channel, Deadline, Transport, build_transports
from mcpgate.validation.config import (
    DEFAULT_PROTOCOL_VERSION,
    DEFAULT_TIMEOUT,
    ClientSettings,
    ServiceConfig,
)

logger = logging.getLogger(__name__)

CLIENT_NAME = "mcpgate"


class MCPClient:
    """
    Calls ``tools/list`` and ``tools/call`` on configured MCP services.

    HTTP services get a session that is established lazily with an
    ``initialize`` handshake and reused until an RPC made with it fails; the
    failed call is then retried once on a fresh session. Stdio services run a
    fresh subprocess, handshake included, for every call.

    Example:
        >>> with MCPClient(timeout=10) as client:
        ...     tools = client.list_tools(service)
        ...     result = client.call_tool(service, "forecast", {"city": "Oslo"})
    """

    def __init__(
        self,
        timeout: Optional[float] = DEFAULT_TIMEOUT,
        protocol_version: Optional[str] = DEFAULT_PROTOCOL_VERSION,
        http: Optional[httpx.Client] = None,
        transports: Optional[Dict[Any, Transport]] = None,
    ):
        """
        Initialize the client.

        Args:
            timeout: Default per-call deadline in seconds.
            protocol_version: MCP protocol version sent on every request.
            http: Shared HTTP client; one is created (and owned) if omitted.
            transports: Transport handlers by kind; mainly for tests.
        """
        self.timeout = timeout if timeout and timeout > 0 else DEFAULT_TIMEOUT
        self.protocol_version = (protocol_version or "").strip() or DEFAULT_PROTOCOL_VERSION

        self._owns_http = http is None
        self._http = http if http is not None else httpx.Client(follow_redirects=True)
        self._transports = transports or build_transports(self._http, self.protocol_version)
        self._sessions = SessionStore()

        self._ids = itertools.count(1)
        self._id_lock = threading.Lock()

    @classmethod
    def from_settings(cls, settings: ClientSettings, http: Optional[httpx.Client] = None) -> "MCPClient":
        return cls(timeout=settings.timeout, protocol_version=settings.protocol_version, http=http)

    @property
    def sessions(self) -> SessionStore:
        return self._sessions

    # ── Public API ────────────────────────────────────────────────────────

    def list_tools(self, service: ServiceConfig, timeout: Optional[float] = None) -> List[RemoteTool]:
        """Fetch the tools ``service`` exposes, in the order it reports them."""
        result = self.call_rpc(service, "tools/list", {}, timeout=timeout)
        if result is None:
            result = {}
        if not isinstance(result, dict):
            raise DecodeError("decode tools/list: result is not an object", service_id=service.id)
        try:
            return [RemoteTool.model_validate(raw) for raw in result.get("tools") or []]
        except ValidationError as exc:
            raise DecodeError(f"decode tools/list: {exc}", service_id=service.id)

    def call_tool(
        self,
        service: ServiceConfig,
        tool_name: str,
        arguments: Optional[Dict[str, Any]] = None,
        timeout: Optional[float] = None,
    ) -> ToolCallResult:
        """Invoke ``tool_name`` on ``service``."""
        result = self.call_rpc(
            service,
            "tools/call",
            {"name": tool_name, "arguments": arguments or {}},
            timeout=timeout,
        )
        if result is None:
            result = {}
        try:
            return ToolCallResult.model_validate(result)
        except ValidationError as exc:
            raise DecodeError(f"decode tools/call: {exc}", service_id=service.id)

    def call_rpc(
        self,
        service: ServiceConfig,
        method: str,
        params: Dict[str, Any],
        timeout: Optional[float] = None,
    ) -> Any:
        """
        Send one JSON-RPC request to ``service`` and return its ``result``.

        Raises:
            MCPError: Any transport, status, RPC, decode or session failure,
                annotated with the service id, method and transport.
        """
        kind = service.transport_kind
        if kind is None or kind not in self._transports:
            raise TransportError(
                f"unsupported transport {service.transport!r}",
                service_id=service.id,
                method=method,
            )
        transport = self._transports[kind]
        deadline = Deadline(timeout if timeout and timeout > 0 else self.timeout)

        try:
            with transport.open(service, deadline) as channel:
                if not transport.keeps_session:
                    self._handshake(channel, service)
                    return channel.send(self._request(method, params)).result
                return self._call_with_session(channel, service, method, params)
        except MCPError as exc:
            raise exc.with_context(service.id, method, kind.value)

    def close(self) -> None:
        if self._owns_http:
            self._http.close()

    def __enter__(self) -> "MCPClient":
        return self

    def __exit__(self, *exc_info) -> None:
        self.close()

    # ── Sessions ──────────────────────────────────────────────────────────

    def _call_with_session(
        self,
        channel: Channel,
        service: ServiceConfig,
        method: str,
        params: Dict[str, Any],
    ) -> Any:
        lock = self._sessions.lock(service.id)

        with lock:
            session_id = self._sessions.get(service.id) or self._handshake(channel, service, store=True)

        try:
            return self._send(channel, service, session_id, method, params)
        except MCPError as exc:
            if not session_id:
                raise
            first_error = exc

        logger.info(
            "MCP %s on %r failed with session %s (%s); reinitializing",
            method,
            service.id,
            session_id,
            first_error,
        )
        with lock:
            self._sessions.clear(service.id, stale=session_id)
            try:
                # Another caller may already have renewed the session.
                session_id = self._sessions.get(service.id) or self._handshake(
                    channel, service, store=True
                )
            except MCPError as exc:
                raise SessionError(f"rpc failed: {first_error}; reinitialize failed: {exc}") from exc

        return self._send(channel, service, session_id, method, params)

    def _send(
        self,
        channel: Channel,
        service: ServiceConfig,
        session_id: Optional[str],
        method: str,
        params: Dict[str, Any],
    ) -> Any:
        reply = channel.send(self._request(method, params), session_id)
        if reply.session_id and reply.session_id != session_id:
            self._sessions.replace(service.id, session_id, reply.session_id)
        return reply.result

    def _handshake(self, channel: Channel, service: ServiceConfig, store: bool = False) -> Optional[str]:
        """
        Run ``initialize`` followed by ``notifications/initialized``.

        Returns the session id the server assigned, if any; with ``store``
        it is also cached for later calls.
        """
        try:
            reply = channel.send(self._request("initialize", self._initialize_params()))
        except MCPError as exc:
            raise exc.with_context(method="initialize")

        session_id = reply.session_id
        if store and session_id:
            self._sessions.set(service.id, session_id)
            logger.debug("MCP session %s established for %r", session_id, service.id)

        try:
            channel.send(
                build_notification("notifications/initialized"),
                session_id,
                expect_response=False,
            )
        except MCPError as exc:
            raise exc.with_context(method="notifications/initialized")
        return session_id

    def _initialize_params(self) -> Dict[str, Any]:
        return {
            "protocolVersion": self.protocol_version,
            "capabilities": {"tools": {}},
            "clientInfo": {"name": CLIENT_NAME, "version": __version__},
        }

    def _request(self, method: str, params: Dict[str, Any]) -> Dict[str, Any]:
        with self._id_lock:
            request_id = next(self._ids)
        return build_request(request_id, method, params)
