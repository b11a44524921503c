"""Protocol and tool contract definitions.

This is the single source of truth for:
- supported MCP protocol versions
- server identity
- capabilities advertised by initialize
- the tool list (names are a stable contract)
"""

from __future__ import annotations

from typing import Any

SERVER_INFO: dict[str, str] = {"name": "page-control-mcp", "version": "1.0.0"}

SUPPORTED_PROTOCOL_VERSIONS = ["2025-06-18", "2024-11-05"]
LATEST_PROTOCOL_VERSION = SUPPORTED_PROTOCOL_VERSIONS[0]
DEFAULT_PROTOCOL_VERSION = "2024-11-05"

CAPABILITIES: dict[str, Any] = {
    "logging": {},
    "prompts": {"listChanged": False},
    "resources": {"subscribe": False, "listChanged": False},
    "tools": {"listChanged": False},
}

TOOL_DEFINITIONS: list[dict[str, Any]] = [
    {
        "name": "query_page",
        "description": "Query elements on a web page using CSS selector",
        "inputSchema": {
            "type": "object",
            "properties": {
                "pageId": {"type": "string", "description": "ID of the connected page"},
                "selector": {"type": "string", "description": "CSS selector to query elements"},
            },
            "required": ["pageId", "selector"],
        },
    },
    {
        "name": "modify_page",
        "description": "Modify elements on a web page",
        "inputSchema": {
            "type": "object",
            "properties": {
                "targetPage": {"type": "string", "description": "ID of the page to modify"},
                "modification": {
                    "type": "object",
                    "properties": {
                        "selector": {"type": "string", "description": "CSS selector for target elements"},
                        "operation": {
                            "type": "string",
                            "description": "Type of modification (setAttribute, setProperty, setInnerHTML, setTextContent)",
                        },
                        "value": {"type": "string", "description": "New value to set"},
                    },
                    "required": ["selector", "operation", "value"],
                },
            },
            "required": ["targetPage", "modification"],
        },
    },
    {
        "name": "run_snippet",
        "description": "Execute a JavaScript code snippet in the context of the page",
        "inputSchema": {
            "type": "object",
            "properties": {
                "pageId": {"type": "string", "description": "ID of the page to execute the snippet on"},
                "code": {"type": "string", "description": "JavaScript code to execute"},
            },
            "required": ["pageId", "code"],
        },
    },
    {
        "name": "list_pages",
        "description": "List all connected pages",
        "inputSchema": {"type": "object", "properties": {}, "required": []},
    },
    {
        "name": "page_control_status",
        "description": "Get the status of the page control service",
        "inputSchema": {
            "type": "object",
            "properties": {
                "detail_level": {
                    "type": "string",
                    "description": "Level of detail to include (basic or detailed)",
                    "enum": ["basic", "detailed"],
                }
            },
            "required": [],
        },
    },
]

TOOL_NAMES = frozenset(t["name"] for t in TOOL_DEFINITIONS)


def select_protocol(requested: Any) -> str:
    if isinstance(requested, str) and requested in SUPPORTED_PROTOCOL_VERSIONS:
        return requested
    return DEFAULT_PROTOCOL_VERSION


def initialize_result(protocol: str) -> dict[str, Any]:
    return {
        "protocolVersion": protocol,
        "serverInfo": SERVER_INFO,
        "capabilities": CAPABILITIES,
    }


def tools_list() -> list[dict[str, Any]]:
    return TOOL_DEFINITIONS


def has_tool(name: str) -> bool:
    return name in TOOL_NAMES
