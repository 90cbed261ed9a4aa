"""Tests for tool discovery, naming, caching and call routing."""

import json
import logging
import threading

import pytest

from mcpgate.mcp.errors import TransportError
from mcpgate.mcp.registry import (
    InvalidArgumentsError,
    ServiceDisabledError,
    ServiceNotFoundError,
    ToolDisabledError,
    ToolExecutionError,
    ToolRegistry,
    UnknownToolError,
    parse_tool_arguments,
    render_tool_result,
    sanitize_name,
)
from mcpgate.mcp.schema import RemoteTool, ToolCall, ToolCallResult
from mcpgate.validation.config import ServiceConfig, ToolState
from mcpgate.validation.directory import ServiceDirectory


class FakeClient:
    """Stands in for MCPClient; records every request."""

    def __init__(self, tools=None):
        self.tools = tools or {}
        self.failures = {}
        self.results = {}
        self.list_calls = []
        self.calls = []

    def list_tools(self, service, timeout=None):
        self.list_calls.append(service.id)
        if service.id in self.failures:
            raise self.failures[service.id]
        return [RemoteTool.model_validate(t) for t in self.tools.get(service.id, [])]

    def call_tool(self, service, tool_name, arguments=None, timeout=None):
        self.calls.append((service.id, tool_name, arguments))
        result = self.results.get(
            (service.id, tool_name), {"content": [{"type": "text", "text": "ok"}]}
        )
        return ToolCallResult.model_validate(result)


class FakeClock:
    def __init__(self):
        self.now = 1000.0

    def __call__(self):
        return self.now


def http_service(service_id, **kwargs):
    kwargs.setdefault("name", service_id.upper())
    return ServiceConfig(id=service_id, endpoint=f"http://{service_id}.test/mcp", **kwargs)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def client():
    return FakeClient(
        {
            "a": [
                {"name": "x", "description": "Tool X", "inputSchema": {"type": "object", "required": ["q"]}},
                {"name": "y"},
            ],
            "b": [{"name": "x", "description": " Other X "}],
        }
    )


@pytest.fixture
def directory():
    return ServiceDirectory([http_service("a"), http_service("b")])


@pytest.fixture
def registry(directory, client, clock):
    return ToolRegistry(directory, client, cache_ttl=30, clock=clock)


class TestNaming:
    def test_sanitize_name(self):
        assert sanitize_name(" get weather! ") == "get_weather"
        assert sanitize_name("read.file") == "read_file"
        assert sanitize_name("ok-name_1") == "ok-name_1"
        assert sanitize_name("   ") == "tool"
        assert sanitize_name("!!!") == ""

    def test_definitions_are_prefixed_and_sorted(self, registry):
        tools = registry.list_tools()

        assert [t.name for t in tools] == ["a__x", "a__y", "b__x"]
        assert tools[0].type == "function"
        assert tools[0].function.description == "[MCP A] Tool X"
        assert tools[0].function.parameters == {"type": "object", "required": ["q"]}
        assert tools[1].function.description == "[MCP A] MCP tool"
        assert tools[1].function.parameters == {"type": "object", "properties": {}}
        assert tools[2].function.description == "[MCP B] Other X"

    def test_colliding_names_get_suffixes(self, client):
        client.tools = {"a": [{"name": "get.x"}, {"name": "get x"}, {"name": "get/x"}]}
        registry = ToolRegistry(ServiceDirectory([http_service("a")]), client)

        names = [t.name for t in registry.list_tools()]
        assert names == ["a__get_x", "a__get_x_2", "a__get_x_3"]
        assert registry.resolve("a__get_x").tool_name == "get.x"
        assert registry.resolve("a__get_x_2").tool_name == "get x"
        assert registry.resolve("a__get_x_3").tool_name == "get/x"

    def test_unsanitizable_tool_name(self, client):
        client.tools = {"a": [{"name": "???"}]}
        registry = ToolRegistry(ServiceDirectory([http_service("a")]), client)

        assert [t.name for t in registry.list_tools()] == ["a__tool"]
        assert registry.resolve("a__tool").tool_name == "???"


class TestDiscovery:
    def test_failing_service_is_skipped(self, registry, client, caplog):
        client.failures["b"] = TransportError("connection refused")

        with caplog.at_level(logging.WARNING, logger="mcpgate"):
            tools = registry.list_tools()

        assert [t.name for t in tools] == ["a__x", "a__y"]
        assert "Skipping MCP service 'b'" in caplog.text

    def test_disabled_service_is_not_contacted(self, client, clock):
        directory = ServiceDirectory([http_service("a"), http_service("b", enabled=False)])
        registry = ToolRegistry(directory, client, clock=clock)

        assert [t.name for t in registry.list_tools()] == ["a__x", "a__y"]
        assert client.list_calls == ["a"]

    def test_disabled_tool_is_hidden(self, client, clock):
        directory = ServiceDirectory([http_service("a", tool_states=[ToolState(name="y")])])
        registry = ToolRegistry(directory, client, clock=clock)

        assert [t.name for t in registry.list_tools()] == ["a__x"]

    def test_cache_respects_ttl(self, registry, client, clock):
        registry.list_tools()
        registry.list_tools()
        assert client.list_calls == ["a", "b"]

        clock.now += 29
        registry.list_tools()
        assert len(client.list_calls) == 2

        clock.now += 2
        registry.list_tools()
        assert len(client.list_calls) == 4

    def test_invalidate_cache(self, registry, client):
        registry.list_tools()
        registry.invalidate_cache()
        registry.list_tools()
        assert len(client.list_calls) == 4

    def test_directory_changes_invalidate_cache(self, registry, directory, client):
        directory.add_listener(registry.invalidate_cache)
        assert "a__y" in [t.name for t in registry.list_tools()]

        directory.set_tool_enabled("a", "y", False)

        assert "a__y" not in [t.name for t in registry.list_tools()]
        assert len(client.list_calls) == 4

    def test_refresh_replaces_bindings(self, registry, client):
        registry.list_tools()
        client.tools["a"] = [{"name": "z"}]

        names = [t.name for t in registry.refresh_tools()]
        assert names == ["a__z", "b__x"]
        with pytest.raises(UnknownToolError):
            registry.resolve("a__x")


class TestCalls:
    def test_call_routes_to_remote_tool(self, registry, client):
        registry.list_tools()

        output = registry.call_tool(ToolCall.create("b__x", '{"q": "oslo"}'))

        assert output == "ok"
        assert client.calls == [("b", "x", {"q": "oslo"})]

    def test_call_without_prior_listing_refreshes(self, registry, client):
        registry.call_tool(ToolCall.create("a__y"))
        assert client.calls == [("a", "y", {})]
        assert client.list_calls == ["a", "b"]

    def test_unknown_tool_refreshes_exactly_once(self, registry, client):
        registry.list_tools()

        with pytest.raises(UnknownToolError, match="nope__x"):
            registry.call_tool(ToolCall.create("nope__x"))

        assert client.list_calls == ["a", "b", "a", "b"]
        assert client.calls == []

    def test_disabled_service_rechecked_at_call_time(self, registry, directory, client):
        registry.list_tools()
        directory.set_enabled("a", False)

        with pytest.raises(ServiceDisabledError):
            registry.call_tool(ToolCall.create("a__x"))
        assert client.calls == []

    def test_disabled_tool_rechecked_at_call_time(self, registry, directory, client):
        registry.list_tools()
        directory.set_tool_enabled("a", "x", False)

        with pytest.raises(ToolDisabledError):
            registry.call_tool(ToolCall.create("a__x"))
        assert client.calls == []

    def test_deleted_service(self, registry, directory, client):
        registry.list_tools()
        directory.delete_service("b")

        with pytest.raises(ServiceNotFoundError):
            registry.call_tool(ToolCall.create("b__x"))

    @pytest.mark.parametrize("arguments", ["[1, 2]", "{bad json", '"text"'])
    def test_invalid_arguments(self, registry, client, arguments):
        registry.list_tools()

        with pytest.raises(InvalidArgumentsError, match="invalid tool arguments for 'a__x'"):
            registry.call_tool(ToolCall.create("a__x", arguments))
        assert client.calls == []

    def test_error_result_raises(self, registry, client):
        client.results[("a", "x")] = {
            "content": [{"type": "text", "text": "city not found\n"}],
            "isError": True,
        }

        with pytest.raises(ToolExecutionError, match="city not found"):
            registry.call_tool(ToolCall.create("a__x", '{"q": "atlantis"}'))


class TestArguments:
    def test_blank_and_null_mean_empty(self):
        assert parse_tool_arguments("") == {}
        assert parse_tool_arguments("  ") == {}
        assert parse_tool_arguments(None) == {}
        assert parse_tool_arguments("null") == {}

    def test_object(self):
        assert parse_tool_arguments('{"a": [1, 2]}') == {"a": [1, 2]}

    def test_array_rejected(self):
        with pytest.raises(InvalidArgumentsError, match="expected a JSON object"):
            parse_tool_arguments("[]")


class TestRendering:
    def test_text_parts_joined(self):
        result = ToolCallResult.model_validate(
            {
                "content": [
                    {"type": "text", "text": "line one"},
                    {"type": "image", "data": "aGk=", "mimeType": "image/png"},
                    {"type": "text", "text": "  "},
                    {"type": "TEXT", "text": "line two"},
                ],
                "structuredContent": {"ignored": True},
            }
        )
        assert render_tool_result(result) == "line one\nline two"

    def test_structured_content_when_no_text(self):
        result = ToolCallResult.model_validate(
            {"content": [], "structuredContent": {"temp": 21, "city": "Zürich"}}
        )
        rendered = render_tool_result(result)
        assert json.loads(rendered) == {"temp": 21, "city": "Zürich"}
        assert "Zürich" in rendered

    def test_raw_result_fallback(self):
        result = ToolCallResult.model_validate(
            {"content": [{"type": "image", "data": "aGk="}], "meta": {"page": 2}}
        )
        assert json.loads(render_tool_result(result)) == {
            "content": [{"type": "image", "data": "aGk="}],
            "meta": {"page": 2},
        }

    def test_empty_result(self):
        assert render_tool_result(ToolCallResult()) == "{}"


class TestStatuses:
    def test_statuses_sorted_with_errors(self, client):
        directory = ServiceDirectory(
            [
                http_service("c", enabled=False),
                http_service("b"),
                http_service("a", tool_states=[ToolState(name="y")]),
            ]
        )
        client.failures["b"] = TransportError("connection refused")
        registry = ToolRegistry(directory, client)

        statuses = registry.list_service_statuses()

        assert [s.service.id for s in statuses] == ["a", "b", "c"]
        a, b, c = statuses
        assert a.connected and a.error is None
        assert a.tool_count == 1
        assert [(t.name, t.enabled) for t in a.tools] == [("x", True), ("y", False)]
        assert not b.connected and b.error == "connection refused"
        assert not c.connected and c.error == "disabled"
        assert "c" not in client.list_calls

    def test_statuses_are_never_cached(self, registry, client):
        registry.list_service_statuses()
        registry.list_service_statuses()
        assert len(client.list_calls) == 4


class PausingClient(FakeClient):
    """Blocks discovery of one service until released."""

    def __init__(self, tools, pause_on):
        super().__init__(tools)
        self.pause_on = pause_on
        self.pause_on_next = False
        self.paused = threading.Event()
        self.release = threading.Event()

    def list_tools(self, service, timeout=None):
        if service.id == self.pause_on and self.pause_on_next:
            self.pause_on_next = False
            self.paused.set()
            assert self.release.wait(timeout=5)
        return super().list_tools(service, timeout)


class TestConcurrency:
    def test_readers_see_old_snapshot_during_refresh(self):
        client = PausingClient({"a": [{"name": "x"}], "b": [{"name": "x"}]}, pause_on="b")
        registry = ToolRegistry(ServiceDirectory([http_service("a"), http_service("b")]), client)
        registry.refresh_tools()

        client.tools = {"a": [{"name": "x"}, {"name": "y"}], "b": [{"name": "z"}]}
        client.pause_on_next = True
        refreshed = []
        refresher = threading.Thread(target=lambda: refreshed.append(registry.refresh_tools()))
        refresher.start()
        assert client.paused.wait(timeout=5)

        # Service "a" has already been rediscovered, but nothing is swapped in yet.
        assert registry.call_tool(ToolCall.create("b__x")) == "ok"
        assert registry.resolve("a__x").tool_name == "x"
        with registry._lock:
            assert sorted(registry._bindings) == ["a__x", "b__x"]
            assert [t.name for t in registry._tools] == ["a__x", "b__x"]

        client.release.set()
        refresher.join(timeout=5)

        assert [t.name for t in refreshed[0]] == ["a__x", "a__y", "b__z"]
        assert registry.resolve("b__z").tool_name == "z"
        assert [t.name for t in registry.list_tools()] == ["a__x", "a__y", "b__z"]

    def test_parallel_calls_and_refreshes(self, client):
        registry = ToolRegistry(ServiceDirectory([http_service("a"), http_service("b")]), client)
        registry.refresh_tools()
        expected = {"a__x", "a__y", "b__x"}
        start = threading.Barrier(8)
        errors = []

        def caller():
            try:
                start.wait(timeout=5)
                for _ in range(20):
                    assert registry.call_tool(ToolCall.create("a__y")) == "ok"
                    assert {t.name for t in registry.list_tools()} == expected
            except Exception as exc:
                errors.append(exc)

        def refresher():
            try:
                start.wait(timeout=5)
                for _ in range(20):
                    assert {t.name for t in registry.refresh_tools()} == expected
            except Exception as exc:
                errors.append(exc)

        threads = [threading.Thread(target=caller) for _ in range(4)]
        threads += [threading.Thread(target=refresher) for _ in range(4)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join(timeout=10)

        assert errors == []
        assert len(client.calls) == 80
