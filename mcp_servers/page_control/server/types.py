"""
Type definitions for MCP tool responses.
"""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from typing import Any


def _dumps(data: Any) -> str:
    return json.dumps(data, ensure_ascii=False, default=repr)


@dataclass(slots=True)
class ToolContent:
    """Single content item in tool response."""

    type: str
    text: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {"type": self.type, "text": self.text}


@dataclass(slots=True)
class ToolResult:
    """Result of a tool execution."""

    content: list[ToolContent] = field(default_factory=list)
    is_error: bool = False
    # Raw payload, not part of the wire format.
    data: Any | None = None

    @classmethod
    def json(cls, data: Any) -> ToolResult:
        """Page payloads are returned verbatim as JSON text."""
        return cls(content=[ToolContent(type="text", text=_dumps(data))], data=data)

    @classmethod
    def error(
        cls,
        message: str,
        *,
        tool: str | None = None,
        details: dict[str, Any] | None = None,
    ) -> ToolResult:
        payload: dict[str, Any] = {"ok": False, "error": message}
        if tool:
            payload["tool"] = tool
        if details:
            payload["details"] = details
        return cls(content=[ToolContent(type="text", text=_dumps(payload))], is_error=True, data=payload)

    def to_content_list(self) -> list[dict[str, Any]]:
        return [c.to_dict() for c in self.content]

    def to_mcp(self) -> dict[str, Any]:
        return {"content": self.to_content_list(), "isError": self.is_error}
