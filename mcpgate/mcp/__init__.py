"""
MCP client and tool registry for mcpgate.

The client speaks JSON-RPC to MCP services over streamable HTTP, HTTP+SSE or
subprocess stdio. The registry turns their tools into uniquely named
definitions an LLM can call, and routes those calls back to the right service.

    ServiceDirectory --> ToolRegistry --> MCPClient --> Transport --> service
"""

from mcpgate.mcp.client import MCPClient
from mcpgate.mcp.errors import (
    DecodeError,
    MCPError,
    RPCError,
    SessionError,
    StatusError,
    StreamExhaustedError,
    TransportError,
)
from mcpgate.mcp.executor import ToolExecutor
from mcpgate.mcp.registry import (
    InvalidArgumentsError,
    ServiceDisabledError,
    ServiceNotFoundError,
    ToolDisabledError,
    ToolError,
    ToolExecutionError,
    ToolRegistry,
    UnknownToolError,
)
from mcpgate.mcp.schema import (
    RemoteTool,
    ServiceStatus,
    ToolCall,
    ToolCallResult,
    ToolDefinition,
    ToolResult,
)

__all__ = [
    "MCPClient",
    "ToolRegistry",
    "ToolExecutor",
    "RemoteTool",
    "ServiceStatus",
    "ToolCall",
    "ToolCallResult",
    "ToolDefinition",
    "ToolResult",
    "MCPError",
    "TransportError",
    "StatusError",
    "RPCError",
    "DecodeError",
    "StreamExhaustedError",
    "SessionError",
    "ToolError",
    "UnknownToolError",
    "ServiceNotFoundError",
    "ServiceDisabledError",
    "ToolDisabledError",
    "InvalidArgumentsError",
    "ToolExecutionError",
]
