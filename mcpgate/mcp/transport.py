"""
MCP wire transports.

Every transport hands out a ``Channel`` for one service and one deadline.
A channel sends one JSON-RPC message at a time and, when asked, waits for the
matching response, so the client's session and retry logic never needs to
know which wire it is talking over.

- ``StreamableHTTPTransport``: one POST per message; JSON or event-stream reply
- ``SSETransport``: GET an event stream, POST to the endpoint it announces,
  read the reply inline or from the stream
- ``StdioTransport``: a subprocess per channel, newline-delimited JSON on its
  stdin/stdout
"""

from __future__ import annotations

import logging
import os
import subprocess
import threading
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Dict, Iterable, Iterator, Optional
from urllib.parse import urljoin

import httpx

from mcpgate.mcp.codec import (
    decode_response,
    encode_line,
    iter_sse_events,
    same_rpc_id,
    wait_for_line_reply,
    wait_for_sse_reply,
)
from mcpgate.mcp.errors import DecodeError, MCPError, StatusError, TransportError
from mcpgate.validation.config import ServiceConfig, TransportKind

logger = logging.getLogger(__name__)

SESSION_HEADER = "Mcp-Session-Id"
PROTOCOL_VERSION_HEADER = "MCP-Protocol-Version"

_STDERR_LIMIT = 64 * 1024


class Deadline:
    """Absolute point in time by which a call must finish."""

    def __init__(self, timeout: float):
        self.timeout = timeout
        self._at = time.monotonic() + timeout

    def remaining(self) -> float:
        return max(0.0, self._at - time.monotonic())

    @property
    def expired(self) -> bool:
        return time.monotonic() >= self._at

    def check(self, what: str) -> None:
        if self.expired:
            raise TransportError(f"{what}: deadline of {self.timeout:g}s exceeded")


@dataclass
class Reply:
    """Result of one RPC plus the session id the server sent back, if any."""

    result: Any = None
    session_id: Optional[str] = None


class Channel(ABC):
    """A connection to one service, valid until closed."""

    @abstractmethod
    def send(
        self,
        message: Dict[str, Any],
        session_id: Optional[str] = None,
        expect_response: bool = True,
    ) -> Reply:
        """
        Send one JSON-RPC message.

        With ``expect_response`` false (notifications) only delivery is
        checked and ``Reply.result`` is None.
        """

    def close(self) -> None:
        pass

    def __enter__(self) -> "Channel":
        return self

    def __exit__(self, *exc_info) -> None:
        self.close()


class Transport(ABC):
    """Factory for channels of one transport kind."""

    kind: TransportKind
    # Whether the client should cache a session id across channels.
    keeps_session: bool = True

    @abstractmethod
    def open(self, service: ServiceConfig, deadline: Deadline) -> Channel:
        """Open a channel to ``service``; the channel must honour ``deadline``."""


# ── HTTP ──────────────────────────────────────────────────────────────────


class _HTTPTransport(Transport):
    def __init__(self, http: httpx.Client, protocol_version: str):
        self.http = http
        self.protocol_version = protocol_version

    def headers(self, service: ServiceConfig, session_id: Optional[str], accept: str) -> Dict[str, str]:
        headers = {
            "Accept": accept,
            PROTOCOL_VERSION_HEADER: self.protocol_version,
        }
        if service.auth_token:
            headers["Authorization"] = f"Bearer {service.auth_token}"
        if session_id:
            headers[SESSION_HEADER] = session_id
        return headers

    def post(
        self,
        url: str,
        service: ServiceConfig,
        session_id: Optional[str],
        message: Dict[str, Any],
        deadline: Deadline,
    ) -> httpx.Response:
        deadline.check("send rpc request")
        headers = self.headers(service, session_id, "application/json, text/event-stream")
        headers["Content-Type"] = "application/json"
        response = self.http.post(
            url,
            json=message,
            headers=headers,
            timeout=deadline.remaining(),
        )
        raise_for_status(response)
        return response


def raise_for_status(response: httpx.Response) -> None:
    if response.status_code >= 400:
        raise StatusError(response.status_code, response.text.strip())


def response_session_id(*responses: httpx.Response) -> Optional[str]:
    """First non-blank session header among ``responses``."""
    for response in responses:
        session_id = (response.headers.get(SESSION_HEADER) or "").strip()
        if session_id:
            return session_id
    return None


def _wrap_http_errors(what: str, exc: Exception) -> TransportError:
    if isinstance(exc, httpx.TimeoutException):
        return TransportError(f"{what}: timed out ({exc})")
    return TransportError(f"{what}: {exc}")


class _StreamableHTTPChannel(Channel):
    def __init__(self, transport: "StreamableHTTPTransport", service: ServiceConfig, deadline: Deadline):
        self.transport = transport
        self.service = service
        self.deadline = deadline

    def send(self, message, session_id=None, expect_response=True) -> Reply:
        try:
            response = self.transport.post(
                self.service.endpoint, self.service, session_id, message, self.deadline
            )
        except (httpx.HTTPError, httpx.InvalidURL) as exc:
            raise _wrap_http_errors("send rpc request", exc)

        reply = Reply(session_id=response_session_id(response))
        if not expect_response:
            return reply

        rpc = decode_response(
            response.content,
            response.headers.get("Content-Type", ""),
            expect_id=message.get("id"),
        )
        reply.result = rpc.unwrap()
        return reply


class StreamableHTTPTransport(_HTTPTransport):
    """Direct request/response over HTTP POST."""

    kind = TransportKind.STREAMABLE_HTTP

    def open(self, service: ServiceConfig, deadline: Deadline) -> Channel:
        return _StreamableHTTPChannel(self, service, deadline)


def resolve_sse_endpoint(base: str, event_data: str) -> str:
    """Resolve the ``endpoint`` event's data against the stream URL."""
    if not event_data:
        raise TransportError("empty sse endpoint event")
    try:
        return urljoin(base, event_data)
    except ValueError as exc:
        raise TransportError(f"invalid sse endpoint {event_data!r}: {exc}")


class _SSEChannel(Channel):
    def __init__(self, transport: "SSETransport", service: ServiceConfig, deadline: Deadline):
        self.transport = transport
        self.service = service
        self.deadline = deadline

    def _lines(self, stream: httpx.Response) -> Iterator[str]:
        for line in stream.iter_lines():
            self.deadline.check("read sse event")
            yield line

    def send(self, message, session_id=None, expect_response=True) -> Reply:
        try:
            return self._send(message, session_id, expect_response)
        except (httpx.HTTPError, httpx.InvalidURL) as exc:
            raise _wrap_http_errors("sse rpc", exc)

    def _send(self, message: Dict[str, Any], session_id: Optional[str], expect_response: bool) -> Reply:
        transport = self.transport
        endpoint = self.service.endpoint

        self.deadline.check("open sse stream")
        with transport.http.stream(
            "GET",
            endpoint,
            headers=transport.headers(self.service, session_id, "text/event-stream"),
            timeout=self.deadline.remaining(),
        ) as stream:
            if stream.status_code >= 400:
                stream.read()
                raise_for_status(stream)

            events = iter_sse_events(self._lines(stream))
            post_url = endpoint
            for event in events:
                if event.name.strip().lower() == "endpoint":
                    post_url = resolve_sse_endpoint(endpoint, event.data.strip())
                    break

            response = transport.post(post_url, self.service, session_id, message, self.deadline)
            reply = Reply(session_id=response_session_id(response, stream))
            if not expect_response:
                return reply

            request_id = message.get("id")
            if response.content.strip():
                try:
                    rpc = decode_response(
                        response.content,
                        response.headers.get("Content-Type", ""),
                        expect_id=request_id,
                    )
                except DecodeError:
                    rpc = None
                if rpc is not None and (request_id is None or same_rpc_id(request_id, rpc.id)):
                    reply.result = rpc.unwrap()
                    return reply

            rpc = wait_for_sse_reply(events, request_id)
            reply.result = rpc.unwrap()
            return reply


class SSETransport(_HTTPTransport):
    """HTTP+SSE: replies may arrive on a separate, long-lived event stream."""

    kind = TransportKind.SSE

    def open(self, service: ServiceConfig, deadline: Deadline) -> Channel:
        return _SSEChannel(self, service, deadline)


# ── stdio ─────────────────────────────────────────────────────────────────


class _StdioChannel(Channel):
    """
    One MCP server subprocess.

    A watchdog kills the process when the deadline passes, which unblocks any
    pending read. ``close()`` always kills and reaps the process.
    """

    def __init__(self, service: ServiceConfig, deadline: Deadline):
        self.service = service
        self.deadline = deadline
        self._expired = False
        self._stderr = bytearray()

        command = service.command.strip()
        if not command:
            raise TransportError("stdio command is required")

        merged_env = {**os.environ, **service.env}
        try:
            self._process = subprocess.Popen(
                [command] + list(service.args),
                stdin=subprocess.PIPE,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                env=merged_env,
            )
        except OSError as exc:
            raise TransportError(f"start stdio command {command!r}: {exc}")
        logger.debug("Started MCP server %r (pid %s)", command, self._process.pid)

        self._stderr_reader = threading.Thread(target=self._drain_stderr, daemon=True)
        self._stderr_reader.start()
        self._watchdog = threading.Timer(deadline.remaining(), self._expire)
        self._watchdog.daemon = True
        self._watchdog.start()

    def _drain_stderr(self) -> None:
        try:
            for chunk in iter(lambda: self._process.stderr.read1(4096), b""):
                self._stderr.extend(chunk)
                if len(self._stderr) > _STDERR_LIMIT:
                    del self._stderr[:-_STDERR_LIMIT]
        except (OSError, ValueError):
            # Pipe closed underneath us during teardown.
            return

    def _expire(self) -> None:
        if self._process.poll() is None:
            logger.warning(
                "MCP server %r exceeded its %gs deadline; killing it",
                self.service.command,
                self.deadline.timeout,
            )
            self._expired = True
            self._process.kill()

    def stderr_tail(self) -> str:
        try:
            self._process.wait(timeout=0.5)
        except subprocess.TimeoutExpired:
            pass
        else:
            self._stderr_reader.join(timeout=1)
        return bytes(self._stderr).decode("utf-8", errors="replace").strip()

    def _fail(self, exc: MCPError, what: str) -> MCPError:
        if self._expired:
            return TransportError(f"{what}: deadline of {self.deadline.timeout:g}s exceeded")
        exc.message = f"{what}: {exc.message}"
        tail = self.stderr_tail()
        if tail:
            exc.message = f"{exc.message}; stderr: {tail}"
        return exc

    def send(self, message, session_id=None, expect_response=True) -> Reply:
        method = message.get("method", "rpc")
        try:
            self._process.stdin.write(encode_line(message))
            self._process.stdin.flush()
        except (BrokenPipeError, OSError, ValueError) as exc:
            raise self._fail(TransportError(str(exc)), f"write {method} request")

        if not expect_response:
            return Reply()

        try:
            rpc = wait_for_line_reply(self._process.stdout.readline, message.get("id"))
        except DecodeError as exc:
            raise self._fail(exc, f"read {method} response")
        return Reply(result=rpc.unwrap())

    def close(self) -> None:
        self._watchdog.cancel()
        try:
            self._process.stdin.close()
        except OSError:
            pass
        if self._process.poll() is None:
            self._process.kill()
        self._process.wait()
        self._stderr_reader.join(timeout=1)
        self._process.stdout.close()
        self._process.stderr.close()


class StdioTransport(Transport):
    """Spawns the service's command for every channel; no session survives it."""

    kind = TransportKind.STDIO
    keeps_session = False

    def open(self, service: ServiceConfig, deadline: Deadline) -> Channel:
        deadline.check("start stdio command")
        return _StdioChannel(service, deadline)


def build_transports(http: httpx.Client, protocol_version: str) -> Dict[TransportKind, Transport]:
    return {
        TransportKind.STREAMABLE_HTTP: StreamableHTTPTransport(http, protocol_version),
        TransportKind.SSE: SSETransport(http, protocol_version),
        TransportKind.STDIO: StdioTransport(),
    }
