"""Data models for MCP tools, tool definitions, calls, and results."""

from __future__ import annotations

import hashlib
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field

from mcpgate.validation.config import ServiceConfig


def empty_object_schema() -> Dict[str, Any]:
    return {"type": "object", "properties": {}}


class RemoteTool(BaseModel):
    """A tool as reported by a service's ``tools/list`` response."""

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    name: str
    description: str = ""
    input_schema: Optional[Dict[str, Any]] = Field(default=None, alias="inputSchema")


class ContentPart(BaseModel):
    """One entry of a ``tools/call`` result's ``content`` list."""

    model_config = ConfigDict(extra="allow")

    type: str = ""
    text: Optional[str] = None


class ToolCallResult(BaseModel):
    """Normalized ``tools/call`` result. Unknown fields are kept for rendering."""

    model_config = ConfigDict(populate_by_name=True, extra="allow")

    content: List[ContentPart] = Field(default_factory=list)
    structured_content: Any = Field(default=None, alias="structuredContent")
    is_error: bool = Field(default=False, alias="isError")

    def text_parts(self) -> List[str]:
        return [
            part.text
            for part in self.content
            if part.type.lower() == "text" and (part.text or "").strip()
        ]


class ToolFunction(BaseModel):
    name: str
    description: str = ""
    parameters: Dict[str, Any] = Field(default_factory=empty_object_schema)


class ToolDefinition(BaseModel):
    """Tool definition advertised to the LLM (function-calling shape)."""

    type: str = "function"
    function: ToolFunction

    @property
    def name(self) -> str:
        """Exposed name, e.g. ``weather__forecast``."""
        return self.function.name


class FunctionCall(BaseModel):
    name: str
    arguments: str = ""  # JSON-encoded object, as emitted by the model


class ToolCall(BaseModel):
    """A tool invocation requested by the LLM."""

    id: str = ""
    type: str = "function"
    function: FunctionCall

    def model_post_init(self, __context: Any) -> None:
        if not self.id:
            raw = f"{self.function.name}:{self.function.arguments}:{datetime.now(timezone.utc).isoformat()}"
            self.id = hashlib.sha256(raw.encode()).hexdigest()[:12]

    @classmethod
    def create(cls, name: str, arguments: str = "") -> "ToolCall":
        return cls(function=FunctionCall(name=name, arguments=arguments))


@dataclass(frozen=True)
class Binding:
    """Where an exposed tool name actually lives."""

    service_id: str
    tool_name: str


class ServiceToolStatus(BaseModel):
    name: str
    description: str = ""
    enabled: bool = True


class ServiceStatus(BaseModel):
    """Discovery status of one service, built on demand."""

    service: ServiceConfig
    connected: bool = False
    tool_count: int = 0
    tools: List[ServiceToolStatus] = Field(default_factory=list)
    error: Optional[str] = None


class ToolResult(BaseModel):
    """Outcome of one tool execution, success or failure."""

    call_id: str = ""
    tool_name: str = ""
    success: bool = False
    output: str = ""
    summary: str = ""
    error: Optional[str] = None
    duration_ms: int = 0
