"""
JSON-RPC 2.0 framing for the three MCP wire formats.

- a single JSON body (direct request/response)
- a text event-stream (``event:``/``data:`` records separated by blank lines)
- newline-delimited JSON over subprocess pipes
"""

from __future__ import annotations

import json
from dataclasses import dataclass
from typing import Any, Callable, Dict, Iterable, Iterator, Optional, Union

from pydantic import BaseModel, ConfigDict, ValidationError

from mcpgate.mcp.errors import DecodeError, RPCError, StreamExhaustedError

JSONRPC_VERSION = "2.0"


class RPCErrorObject(BaseModel):
    """The ``error`` member of a JSON-RPC response."""

    model_config = ConfigDict(extra="ignore")

    code: int = 0
    message: str = ""


class RPCResponse(BaseModel):
    """A decoded JSON-RPC response message."""

    model_config = ConfigDict(extra="ignore")

    jsonrpc: str = JSONRPC_VERSION
    id: Any = None
    result: Any = None
    error: Optional[RPCErrorObject] = None

    def unwrap(self) -> Any:
        """Return ``result`` or raise the server's error as an ``RPCError``."""
        if self.error is not None:
            raise RPCError(self.error.code, self.error.message)
        return self.result


def build_request(request_id: int, method: str, params: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
    return {
        "jsonrpc": JSONRPC_VERSION,
        "id": request_id,
        "method": method,
        "params": params if params is not None else {},
    }


def build_notification(method: str, params: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
    """Notifications carry no ``id`` and get no response."""
    return {
        "jsonrpc": JSONRPC_VERSION,
        "method": method,
        "params": params if params is not None else {},
    }


def encode_line(message: Dict[str, Any]) -> bytes:
    """Encode one message for a newline-delimited JSON stream."""
    return json.dumps(message, ensure_ascii=False).encode("utf-8") + b"\n"


def same_rpc_id(a: Any, b: Any) -> bool:
    """Compare ids by string form so ``1`` and ``"1"`` match."""
    return str(a).strip() == str(b).strip()


# ── Event stream ──────────────────────────────────────────────────────────


@dataclass
class SSEEvent:
    """One server-sent event."""

    name: str = ""
    data: str = ""


def iter_sse_events(lines: Iterable[str]) -> Iterator[SSEEvent]:
    """
    Parse server-sent events from an iterable of lines.

    Lines are expected without their terminators (a trailing ``\\r`` is
    tolerated). ``:`` lines are heartbeats and ignored. Several ``data:``
    lines within one event are joined with ``\\n``. An event still in
    progress when the input ends is emitted once.
    """
    event = SSEEvent()
    has_data = False

    for line in lines:
        line = line.rstrip("\r\n")

        if line == "":
            if has_data:
                yield event
                event = SSEEvent()
                has_data = False
        elif line.startswith(":"):
            continue
        elif line.startswith("event:"):
            event.name = line[len("event:"):].strip()
            has_data = True
        elif line.startswith("data:"):
            part = line[len("data:"):].strip()
            event.data = part if event.data == "" else f"{event.data}\n{part}"
            has_data = True

    if has_data:
        yield event


def _load_message(text: Union[str, bytes]) -> Dict[str, Any]:
    try:
        message = json.loads(text)
    except ValueError as exc:
        raise DecodeError(f"decode rpc response: {exc}")
    if not isinstance(message, dict):
        raise DecodeError("decode rpc response: expected a JSON object")
    return message


def _to_response(message: Dict[str, Any]) -> RPCResponse:
    try:
        return RPCResponse.model_validate(message)
    except ValidationError as exc:
        raise DecodeError(f"decode rpc response: {exc}")


def _is_reply(message: Dict[str, Any], expect_id: Any) -> bool:
    """True when ``message`` is the response to the request ``expect_id``."""
    method = message.get("method")
    if isinstance(method, str) and method.strip():
        # Server-originated request or notification.
        return False
    if expect_id is None:
        return True
    if "id" not in message or message["id"] is None:
        return False
    return same_rpc_id(expect_id, message["id"])


def wait_for_sse_reply(events: Iterable[SSEEvent], expect_id: Any = None) -> RPCResponse:
    """
    Read events until one decodes to the reply for ``expect_id``.

    Events without data, undecodable events and messages for other ids are
    skipped. Running out of events raises ``StreamExhaustedError``.
    """
    for event in events:
        data = event.data.strip()
        if not data:
            continue
        try:
            message = _load_message(data)
            if not _is_reply(message, expect_id):
                continue
            return _to_response(message)
        except DecodeError:
            continue
    raise StreamExhaustedError("decode rpc response: no rpc message in sse stream")


def wait_for_line_reply(readline: Callable[[], bytes], expect_id: Any) -> RPCResponse:
    """
    Read newline-delimited JSON until the reply for ``expect_id`` arrives.

    ``readline`` returns ``b""`` at end of stream. Unlike the event-stream
    case a line that is not JSON is an error, since stdout carries nothing
    but protocol messages.
    """
    while True:
        raw = readline()
        if not raw:
            raise StreamExhaustedError("decode rpc response: eof")
        line = raw.strip()
        if not line:
            continue
        message = _load_message(line)
        if not _is_reply(message, expect_id):
            continue
        return _to_response(message)


def decode_response(
    body: Union[str, bytes],
    content_type: str = "",
    expect_id: Any = None,
) -> RPCResponse:
    """
    Decode a complete response body.

    The body is treated as an event stream when the content type says so or
    when it starts with an ``event:`` or ``data:`` field; otherwise it must be
    a single JSON object.
    """
    text = body.decode("utf-8", errors="replace") if isinstance(body, bytes) else body
    trimmed = text.strip()
    if not trimmed:
        raise DecodeError("decode rpc response: empty response")

    if (
        "text/event-stream" in (content_type or "").lower()
        or trimmed.startswith("event:")
        or trimmed.startswith("data:")
    ):
        return wait_for_sse_reply(iter_sse_events(trimmed.splitlines()), expect_id)

    message = _load_message(trimmed)
    return _to_response(message)
