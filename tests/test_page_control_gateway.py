from __future__ import annotations

import asyncio
import json
import socket
import threading
import time
import urllib.error
import urllib.request
from typing import Any

import pytest

from mcp_servers.page_control.config import PageControlConfig
from mcp_servers.page_control.errors import GatewayNotRunning, PageNotConnected, RemoteError, RequestTimeoutError


def _free_port() -> int:
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as s:
        s.bind(("127.0.0.1", 0))
        return int(s.getsockname()[1])


def _wait_for(predicate, timeout: float = 3.0) -> bool:  # type: ignore[no-untyped-def]
    deadline = time.time() + timeout
    while time.time() < deadline:
        if predicate():
            return True
        time.sleep(0.02)
    return False


def _start_page_stub(port: int, page_id: str, stop: threading.Event, seen: list[dict[str, Any]]) -> threading.Thread:
    """A fake browser page: registers, answers commands, ignores selector ``#slow``."""
    import websockets  # type: ignore[import-not-found]

    async def _main() -> None:
        async with websockets.connect(f"ws://127.0.0.1:{port}", ping_interval=None) as ws:
            await ws.send(
                json.dumps({"type": "page_connected", "pageId": page_id, "url": "https://example.test", "title": "T"})
            )
            await ws.send(json.dumps({"type": "ping"}))
            while not stop.is_set():
                try:
                    raw = await asyncio.wait_for(ws.recv(), timeout=0.1)
                except asyncio.TimeoutError:
                    continue
                msg = json.loads(raw)
                seen.append(msg)
                if "command" not in msg:
                    continue
                params = msg.get("params") or {}
                reply: dict[str, Any] = {"type": "response", "requestId": msg["id"], "pageId": page_id}
                if msg["command"] == "query_page":
                    if params.get("selector") == "#slow":
                        continue
                    reply["result"] = {"elements": [{"tagName": "H1", "textContent": "Hello"}]}
                elif msg["command"] == "run_snippet":
                    reply["error"] = "ReferenceError: nope is not defined"
                else:
                    reply["result"] = {"success": True, "count": 1}
                await ws.send(json.dumps(reply))

    t = threading.Thread(target=lambda: asyncio.run(_main()), daemon=True)
    t.start()
    return t


def test_gateway_call_requires_running_loop() -> None:
    from mcp_servers.page_control.gateway import PageGateway

    gw = PageGateway(config=PageControlConfig(ws_port=_free_port()))
    assert gw.is_running() is False
    with pytest.raises(GatewayNotRunning):
        gw.call("list_pages")


def test_gateway_page_roundtrip_over_websocket() -> None:
    try:
        import websockets  # type: ignore[import-not-found]  # noqa: F401
    except Exception:  # noqa: BLE001
        pytest.skip("websockets not installed")

    from mcp_servers.page_control.gateway import PageGateway

    port = _free_port()
    cfg = PageControlConfig(ws_port=port, request_timeout=0.3, reap_interval=0.05)
    gw = PageGateway(config=cfg)
    gw.start()

    stop = threading.Event()
    seen: list[dict[str, Any]] = []
    stub = _start_page_stub(port, "p1", stop, seen)
    try:
        assert _wait_for(lambda: gw.status().get("registeredPages") == 1)

        assert gw.call("list_pages") == {"pages": ["p1"], "count": 1}
        assert gw.call("query_page", {"pageId": "p1", "selector": "h1"}) == {
            "elements": [{"tagName": "H1", "textContent": "Hello"}]
        }
        assert gw.call(
            "modify_page",
            {"targetPage": "p1", "modification": {"selector": "h1", "operation": "setTextContent", "value": "Hi"}},
        ) == {"success": True, "count": 1}

        with pytest.raises(RemoteError, match="ReferenceError"):
            gw.call("run_snippet", {"pageId": "p1", "code": "nope()"})
        with pytest.raises(PageNotConnected):
            gw.call("query_page", {"pageId": "ghost", "selector": "h1"})
        with pytest.raises(RequestTimeoutError):
            gw.call("query_page", {"pageId": "p1", "selector": "#slow"})

        assert gw.status()["pendingRequests"] == 0
        assert any(m.get("type") == "pong" for m in seen)
        assert any(m.get("type") == "activity" and "Query executed on p1: h1" in m["message"] for m in seen)
    finally:
        stop.set()
        stub.join(timeout=2.0)

    try:
        assert _wait_for(lambda: gw.status().get("registeredPages") == 0)
    finally:
        gw.stop(timeout=2.0)
    assert gw.is_running() is False


def test_gateway_well_known_status_endpoint() -> None:
    try:
        import websockets  # type: ignore[import-not-found]  # noqa: F401
    except Exception:  # noqa: BLE001
        pytest.skip("websockets not installed")

    from mcp_servers.page_control.gateway import PAGE_CONTROL_WELL_KNOWN_PATH, PageGateway

    port = _free_port()
    gw = PageGateway(config=PageControlConfig(ws_port=port))
    gw.start()
    try:
        with urllib.request.urlopen(f"http://127.0.0.1:{port}{PAGE_CONTROL_WELL_KNOWN_PATH}", timeout=2.0) as resp:
            data = json.loads(resp.read().decode("utf-8"))
        assert data["type"] == "pageControlGateway"
        assert data["port"] == port
        assert data["connectedPages"] == 0

        with pytest.raises(urllib.error.HTTPError) as ei:
            urllib.request.urlopen(f"http://127.0.0.1:{port}/nope", timeout=2.0)
        assert ei.value.code == 404
    finally:
        gw.stop(timeout=2.0)


def test_gateway_start_fail_soft_then_recovers() -> None:
    try:
        import websockets  # type: ignore[import-not-found]  # noqa: F401
    except Exception:  # noqa: BLE001
        pytest.skip("websockets not installed")

    from mcp_servers.page_control.gateway import PageGateway

    port = _free_port()
    blocker = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
    blocker.bind(("127.0.0.1", port))
    blocker.listen(1)

    gw = PageGateway(config=PageControlConfig(ws_port=port))
    try:
        gw.start(wait_timeout=0.3, require_listening=False)
        st = gw.status()
        assert st.get("listening") is False
        assert st.get("threadAlive") is True
        assert st.get("bindError")
        assert gw.relay.status()["websocket_status"] == "error"

        blocker.close()
        assert _wait_for(lambda: gw.status().get("listening") is True, timeout=8.0)
        assert gw.relay.status()["websocket_status"] == "ok"
    finally:
        blocker.close()
        gw.stop(timeout=2.0)


def test_stdio_calls_to_different_pages_are_independent(page_socket) -> None:
    try:
        import websockets  # type: ignore[import-not-found]  # noqa: F401
    except Exception:  # noqa: BLE001
        pytest.skip("websockets not installed")

    from mcp_servers.page_control.gateway import PageGateway
    from mcp_servers.page_control.main import McpServer

    cfg = PageControlConfig(mode="stdio", ws_port=_free_port(), request_timeout=2.0, reap_interval=0.2)
    gw = PageGateway(config=cfg)
    gw.start()
    out: list[dict[str, Any]] = []
    server = McpServer(gw, write=out.append)

    def _answered(rpc_id: int) -> dict[str, Any] | None:
        return next((m for m in list(out) if m.get("id") == rpc_id), None)

    def _query_silent(rpc_id: int) -> dict[str, Any]:
        return {
            "jsonrpc": "2.0",
            "id": rpc_id,
            "method": "tools/call",
            "params": {"name": "query_page", "arguments": {"pageId": "silent", "selector": "h1"}},
        }

    try:
        silent = page_socket()
        gw.run_coroutine(gw.relay.page_connected("silent", silent)).result(timeout=2.0)
        gw.run_coroutine(gw.relay.page_connected("fast", page_socket())).result(timeout=2.0)

        started = time.monotonic()
        server.dispatch(_query_silent(1))
        server.dispatch({"jsonrpc": "2.0", "id": 2, "method": "tools/call", "params": {"name": "list_pages"}})

        assert _wait_for(lambda: _answered(2) is not None, timeout=1.0)
        assert time.monotonic() - started < 1.0
        listed = json.loads(_answered(2)["result"]["content"][0]["text"])
        assert listed == {"pages": ["silent", "fast"], "count": 2}
        assert _answered(1) is None
        assert len(silent.commands()) == 1
        assert server.inflight_count() == 1
        assert gw.status()["pendingRequests"] == 1

        server.dispatch({"jsonrpc": "2.0", "method": "notifications/cancelled", "params": {"requestId": 1}})
        assert _wait_for(lambda: gw.status()["pendingRequests"] == 0, timeout=1.0)
        assert server.inflight_count() == 0

        # An uncancelled call to the silent page is answered once the reaper fires.
        server.dispatch(_query_silent(3))
        assert _wait_for(lambda: _answered(3) is not None, timeout=4.0)
        timed_out = _answered(3)["result"]
        assert timed_out["isError"] is True
        assert "Request timed out after 2000ms" in timed_out["content"][0]["text"]
        assert _answered(1) is None
        assert gw.relay.reaper.reaped_total == 1
    finally:
        gw.stop(timeout=2.0)
