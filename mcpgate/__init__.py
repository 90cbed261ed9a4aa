"""
mcpgate - MCP tool gateway for LLM agents.

Discovers the tools exposed by Model Context Protocol services and invokes
them on behalf of a planner, over three transports:

- Streamable HTTP (one POST per request)
- HTTP + server-sent events
- Subprocess stdio

Architecture:
- Services are configured in YAML (~/.mcpgate/config.yaml, .mcpgate/config.yaml)
- The tool registry caches uniquely named tool definitions with a TTL
- Tool calls are routed back to the owning service, re-checking its config first
- Sessions live in memory only and are re-established on demand
"""

__version__ = "1.0.0"
__license__ = "Apache-2.0"

from mcpgate.mcp import MCPClient, ToolExecutor, ToolRegistry
from mcpgate.validation import Config, ConfigError, ServiceDirectory

__all__ = [
    "MCPClient",
    "ToolRegistry",
    "ToolExecutor",
    "Config",
    "ConfigError",
    "ServiceDirectory",
    "__version__",
]
