"""Tool executor: runs registry tool calls and reports failures as results."""

from __future__ import annotations

import logging
import time

from mcpgate.mcp.errors import MCPError
from mcpgate.mcp.registry import ToolError, ToolRegistry
from mcpgate.mcp.schema import ToolCall, ToolResult

logger = logging.getLogger(__name__)


class ToolExecutor:
    """
    Executes tool calls for the conversation loop.

    Failures never escape as exceptions: a bad tool call becomes a
    ``ToolResult`` with ``success=False`` and the error message, which the
    loop hands back to the model like any other tool output.
    """

    def __init__(self, registry: ToolRegistry, summary_chars: int = 500):
        self._registry = registry
        self._summary_chars = summary_chars

    def execute(self, call: ToolCall) -> ToolResult:
        """Execute one tool call."""
        tool_name = call.function.name
        t0 = time.perf_counter()
        try:
            output = self._registry.call_tool(call)
        except (ToolError, MCPError) as exc:
            elapsed_ms = int((time.perf_counter() - t0) * 1000)
            logger.info("Tool call %s (%s) failed: %s", call.id, tool_name, exc)
            return ToolResult(
                call_id=call.id,
                tool_name=tool_name,
                success=False,
                error=str(exc),
                duration_ms=elapsed_ms,
            )

        elapsed_ms = int((time.perf_counter() - t0) * 1000)
        return ToolResult(
            call_id=call.id,
            tool_name=tool_name,
            success=True,
            output=output,
            summary=self.summarize(output, self._summary_chars),
            duration_ms=elapsed_ms,
        )

    @staticmethod
    def summarize(output: str, max_chars: int = 500) -> str:
        """Create a short summary of tool output."""
        if not output:
            return "(empty output)"
        if len(output) <= max_chars:
            return output
        # Take first and last portion
        head = output[: max_chars // 2]
        tail = output[-(max_chars // 2) :]
        omitted = len(output) - max_chars
        return f"{head}\n... [{omitted} chars omitted] ...\n{tail}"
