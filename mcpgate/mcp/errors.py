"""Error taxonomy for MCP protocol failures."""

from __future__ import annotations

from typing import Optional


class MCPError(Exception):
    """
    Base class for every protocol-level failure.

    Carries optional context (service id, method, transport) that the client
    fills in as the error propagates, so a message read on its own is enough
    to diagnose which service and call failed.
    """

    def __init__(
        self,
        message: str,
        *,
        service_id: Optional[str] = None,
        method: Optional[str] = None,
        transport: Optional[str] = None,
    ):
        super().__init__(message)
        self.message = message
        self.service_id = service_id
        self.method = method
        self.transport = transport

    def with_context(
        self,
        service_id: Optional[str] = None,
        method: Optional[str] = None,
        transport: Optional[str] = None,
    ) -> "MCPError":
        """Fill in context fields that are still unset and return ``self``."""
        if self.service_id is None:
            self.service_id = service_id
        if self.method is None:
            self.method = method
        if self.transport is None:
            self.transport = transport
        return self

    def __str__(self) -> str:
        parts = []
        if self.service_id:
            where = f"mcp service {self.service_id!r}"
            if self.transport:
                where += f" ({self.transport})"
            parts.append(where)
        if self.method:
            parts.append(self.method)
        if not parts:
            return self.message
        return f"{' '.join(parts)}: {self.message}"


class TransportError(MCPError):
    """Connection or process failure before any response was received."""


class StatusError(MCPError):
    """Non-success HTTP status; carries the status code and raw body."""

    def __init__(self, status_code: int, body: str, **context):
        super().__init__(f"mcp status {status_code}: {body}", **context)
        self.status_code = status_code
        self.body = body


class RPCError(MCPError):
    """A well-formed JSON-RPC error object returned by the server."""

    def __init__(self, code: int, rpc_message: str, **context):
        super().__init__(f"rpc error {code}: {rpc_message}", **context)
        self.code = code
        self.rpc_message = rpc_message


class DecodeError(MCPError):
    """Malformed or empty response body."""


class StreamExhaustedError(DecodeError):
    """The event or subprocess stream ended before a matching response."""


class SessionError(MCPError):
    """The reinitialize-and-retry path after a session failure was exhausted."""
