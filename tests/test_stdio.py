"""Tests for the stdio transport against a real subprocess."""

import subprocess
import sys
import textwrap
import time

import pytest

from mcpgate.mcp import transport as transport_module
from mcpgate.mcp.client import MCPClient
from mcpgate.mcp.errors import MCPError, RPCError, TransportError
from mcpgate.validation.config import ServiceConfig

FAKE_SERVER = textwrap.dedent(
    """
    import json
    import os
    import sys
    import time

    mode = sys.argv[1] if len(sys.argv) > 1 else "ok"
    sys.stderr.write("fake server starting\\n")
    sys.stderr.flush()

    if mode == "crash":
        sys.stderr.write("fatal: missing API key\\n")
        sys.stderr.flush()
        sys.exit(3)


    def send(message):
        sys.stdout.write(json.dumps(message) + "\\n")
        sys.stdout.flush()


    for line in sys.stdin:
        line = line.strip()
        if not line:
            continue
        message = json.loads(line)
        if "id" not in message:
            continue
        method = message["method"]
        if method == "initialize":
            result = {"protocolVersion": message["params"]["protocolVersion"], "capabilities": {}}
        elif method == "tools/list":
            if mode == "slow":
                time.sleep(30)
            send({"jsonrpc": "2.0", "method": "notifications/message", "params": {"level": "info"}})
            result = {"tools": [
                {"name": "echo", "description": "Echo text", "inputSchema": {"type": "object"}},
                {"name": "greet"},
            ]}
        elif method == "tools/call":
            name = message["params"]["name"]
            args = message["params"]["arguments"]
            if name == "fail":
                send({"jsonrpc": "2.0", "id": message["id"],
                      "error": {"code": -32000, "message": "tool exploded"}})
                continue
            text = os.environ.get("FAKE_GREETING", "echo") + ": " + str(args.get("text", ""))
            result = {"content": [{"type": "text", "text": text}]}
        else:
            send({"jsonrpc": "2.0", "id": message["id"],
                  "error": {"code": -32601, "message": "method not found"}})
            continue
        send({"jsonrpc": "2.0", "id": message["id"], "result": result})
    """
)


@pytest.fixture
def server_script(tmp_path):
    path = tmp_path / "fake_mcp_server.py"
    path.write_text(FAKE_SERVER)
    return path


@pytest.fixture
def client():
    with MCPClient(timeout=10) as c:
        yield c


@pytest.fixture
def spawned(monkeypatch):
    """Record every process the stdio transport starts."""
    processes = []
    real_popen = subprocess.Popen

    def recording_popen(*args, **kwargs):
        process = real_popen(*args, **kwargs)
        processes.append(process)
        return process

    monkeypatch.setattr(transport_module.subprocess, "Popen", recording_popen)
    return processes


def stdio_service(script, mode="ok", **kwargs):
    return ServiceConfig(
        id="local",
        name="Local",
        command=sys.executable,
        args=[str(script), mode],
        **kwargs,
    )


class TestStdioTransport:
    def test_transport_defaults_to_stdio_for_commands(self, server_script):
        assert stdio_service(server_script).transport == "stdio"

    def test_list_tools_skips_notifications(self, client, server_script):
        tools = client.list_tools(stdio_service(server_script))

        assert [t.name for t in tools] == ["echo", "greet"]
        assert tools[1].input_schema is None

    def test_call_tool_with_env(self, client, server_script):
        service = stdio_service(server_script, env={"FAKE_GREETING": "hola"})

        result = client.call_tool(service, "echo", {"text": "mundo"})
        assert result.text_parts() == ["hola: mundo"]

    def test_rpc_error(self, client, server_script):
        with pytest.raises(RPCError) as info:
            client.call_tool(stdio_service(server_script), "fail", {})
        assert info.value.code == -32000
        assert info.value.method == "tools/call"
        assert info.value.transport == "stdio"

    def test_every_call_spawns_and_reaps_a_process(self, client, server_script, spawned):
        service = stdio_service(server_script)
        client.list_tools(service)
        client.call_tool(service, "echo", {"text": "x"})

        assert len(spawned) == 2
        assert all(p.returncode is not None for p in spawned)
        assert len(client.sessions) == 0

    def test_crash_surfaces_stderr(self, client, server_script, spawned):
        with pytest.raises(MCPError) as info:
            client.list_tools(stdio_service(server_script, mode="crash"))

        assert "missing API key" in str(info.value)
        assert info.value.method == "initialize"
        assert all(p.returncode is not None for p in spawned)

    def test_deadline_kills_process(self, client, server_script, spawned):
        started = time.monotonic()
        with pytest.raises(TransportError, match="deadline of 1s exceeded"):
            client.list_tools(stdio_service(server_script, mode="slow"), timeout=1)

        assert time.monotonic() - started < 10
        assert all(p.returncode is not None for p in spawned)

    def test_missing_command(self, client):
        service = ServiceConfig(id="ghost", command="/nonexistent/mcp-server-binary")

        with pytest.raises(TransportError) as info:
            client.list_tools(service)
        assert "/nonexistent/mcp-server-binary" in str(info.value)
        assert "start stdio command" in str(info.value)
