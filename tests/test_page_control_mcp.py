from __future__ import annotations

import concurrent.futures
import json
from typing import Any

import pytest

from mcp_servers.page_control.config import PageControlConfig
from mcp_servers.page_control.errors import PageNotConnected, RequestTimeoutError
from mcp_servers.page_control.main import McpServer
from mcp_servers.page_control.relay import PageRelay
from mcp_servers.page_control.server.contract import (
    DEFAULT_PROTOCOL_VERSION,
    SERVER_INFO,
    TOOL_NAMES,
    select_protocol,
    tools_list,
)
from mcp_servers.page_control.server.redaction import redact_jsonrpc_for_log, redact_tool_arguments


class _StubGateway:
    def __init__(self, outcomes: dict[str, Any]) -> None:
        self.relay = PageRelay(PageControlConfig(mode="stdio"))
        self.outcomes = outcomes
        self.calls: list[tuple[str, dict[str, Any]]] = []

    def submit(self, method: str, args: dict[str, Any] | None = None, **_: Any) -> concurrent.futures.Future:
        self.calls.append((method, dict(args or {})))
        fut: concurrent.futures.Future = concurrent.futures.Future()
        outcome = self.outcomes[method]
        if isinstance(outcome, BaseException):
            fut.set_exception(outcome)
        else:
            fut.set_result(outcome)
        return fut


def _server(outcomes: dict[str, Any] | None = None) -> tuple[McpServer, list[dict[str, Any]], _StubGateway]:
    out: list[dict[str, Any]] = []
    gw = _StubGateway(outcomes or {})
    return McpServer(gw, write=out.append), out, gw  # type: ignore[arg-type]


def test_tool_names_are_stable() -> None:
    assert [t["name"] for t in tools_list()] == [
        "query_page",
        "modify_page",
        "run_snippet",
        "list_pages",
        "page_control_status",
    ]
    assert TOOL_NAMES == {t["name"] for t in tools_list()}
    for tool in tools_list():
        assert tool["inputSchema"]["type"] == "object"


def test_protocol_negotiation() -> None:
    assert select_protocol("2025-06-18") == "2025-06-18"
    assert select_protocol("1999-01-01") == DEFAULT_PROTOCOL_VERSION
    assert select_protocol(None) == DEFAULT_PROTOCOL_VERSION


def test_initialize_and_list_tools() -> None:
    server, out, _ = _server()
    server.dispatch({"jsonrpc": "2.0", "id": 1, "method": "initialize", "params": {"protocolVersion": "2025-06-18"}})
    server.dispatch({"jsonrpc": "2.0", "method": "notifications/initialized"})
    server.dispatch({"jsonrpc": "2.0", "id": 2, "method": "tools/list"})

    assert len(out) == 2
    assert out[0]["result"]["protocolVersion"] == "2025-06-18"
    assert out[0]["result"]["serverInfo"] == SERVER_INFO
    assert len(out[1]["result"]["tools"]) == 5


def test_tools_call_success_returns_json_text() -> None:
    server, out, gw = _server({"query_page": {"elements": []}})
    server.dispatch(
        {
            "jsonrpc": "2.0",
            "id": 3,
            "method": "tools/call",
            "params": {"name": "query_page", "arguments": {"pageId": "p1", "selector": "h1"}},
        }
    )
    assert gw.calls == [("query_page", {"pageId": "p1", "selector": "h1"})]
    result = out[0]["result"]
    assert result["isError"] is False
    assert json.loads(result["content"][0]["text"]) == {"elements": []}


@pytest.mark.parametrize(
    ("exc", "needle"),
    [
        (PageNotConnected("ghost"), "Currently connected pages: none"),
        (RequestTimeoutError(30000), "Request timed out after 30000ms"),
    ],
)
def test_tools_call_failures_become_error_results(exc: Exception, needle: str) -> None:
    server, out, gw = _server({"modify_page": exc})
    server.dispatch(
        {"jsonrpc": "2.0", "id": 4, "method": "tools/call", "params": {"name": "modify_page", "arguments": {}}}
    )
    result = out[0]["result"]
    assert result["isError"] is True
    payload = json.loads(result["content"][0]["text"])
    assert payload["ok"] is False
    assert needle in payload["error"]
    assert gw.relay.health.last_error is not None


def test_unexpected_failure_degrades_health() -> None:
    server, out, gw = _server({"list_pages": RuntimeError("loop died")})
    server.dispatch({"jsonrpc": "2.0", "id": 8, "method": "tools/call", "params": {"name": "list_pages"}})
    result = out[0]["result"]
    assert result["isError"] is True
    assert "loop died" in json.loads(result["content"][0]["text"])["error"]
    assert gw.relay.status()["status"] == "degraded"


def test_unknown_tool_and_method() -> None:
    server, out, gw = _server()
    server.dispatch({"jsonrpc": "2.0", "id": 5, "method": "tools/call", "params": {"name": "nope"}})
    server.dispatch({"jsonrpc": "2.0", "id": 6, "method": "resources/list"})
    server.dispatch({"jsonrpc": "2.0", "method": "notifications/whatever"})
    server.dispatch({"jsonrpc": "2.0", "id": 7, "method": "ping"})
    server.dispatch({})

    assert gw.calls == []
    assert out[0]["result"]["isError"] is True
    assert "Unknown tool: nope" in out[0]["result"]["content"][0]["text"]
    assert out[1]["error"] == {"code": -32601, "message": "Method not found: resources/list"}
    assert out[2] == {"jsonrpc": "2.0", "id": 7, "result": {}}
    assert len(out) == 3


def test_redaction_hides_snippet_bodies() -> None:
    args = {"pageId": "p1", "code": "document.cookie"}
    assert redact_tool_arguments("run_snippet", args) == {"pageId": "p1", "code": "<omitted str len=15>"}

    msg = {
        "jsonrpc": "2.0",
        "id": 1,
        "method": "tools/call",
        "params": {"name": "run_snippet", "arguments": args},
    }
    redacted = redact_jsonrpc_for_log(msg)
    assert "document.cookie" not in json.dumps(redacted)
    assert msg["params"]["arguments"]["code"] == "document.cookie"

    long = redact_tool_arguments("query_page", {"selector": "x" * 500})["selector"]
    assert len(long) < 500


def test_config_from_env(monkeypatch: pytest.MonkeyPatch) -> None:
    for name in ("PAGE_CONTROL_MODE", "PAGE_CONTROL_WS_PORT", "PAGE_CONTROL_REQUEST_TIMEOUT", "DEBUG", "MCP_TRACE"):
        monkeypatch.delenv(name, raising=False)
    cfg = PageControlConfig.from_env([])
    assert (cfg.mode, cfg.ws_port, cfg.http_port) == ("sse", 3001, 4000)
    assert cfg.request_timeout_ms == 30000
    assert cfg.debug is False

    monkeypatch.setenv("PAGE_CONTROL_WS_PORT", "4555")
    monkeypatch.setenv("PAGE_CONTROL_REQUEST_TIMEOUT", "-3")
    monkeypatch.setenv("DEBUG", "1")
    cfg = PageControlConfig.from_env(["--stdio-only"])
    assert cfg.mode == "stdio"
    assert cfg.ws_port == 4555
    assert cfg.request_timeout == 30.0
    assert cfg.debug is True

    monkeypatch.setenv("PAGE_CONTROL_MODE", "stdio")
    assert PageControlConfig.from_env().mode == "stdio"
