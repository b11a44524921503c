"""
MCP server that relays page commands to browser pages over WebSocket.

This module provides the entry point and the STDIO protocol handling.
The SSE transport lives in sse.py; both call into the same PageRelay.
"""

from __future__ import annotations

import concurrent.futures
import json
import logging
import os
import signal
import sys
import threading
from typing import Any

from .config import PageControlConfig
from .errors import PageControlError
from .gateway import PageGateway
from .server.contract import has_tool, initialize_result, select_protocol, tools_list
from .server.redaction import redact_jsonrpc_for_log, redact_tool_arguments
from .server.types import ToolResult

logger = logging.getLogger("mcp.page_control")

__all__ = ["McpServer", "configure_logging", "main"]


def configure_logging(config: PageControlConfig) -> None:
    # stdout carries the STDIO transport; everything else goes to stderr.
    if config.debug:
        level = logging.DEBUG
    elif config.mode == "stdio":
        level = logging.WARNING
    else:
        level = logging.INFO
    logging.basicConfig(
        stream=sys.stderr,
        level=level,
        format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
        force=True,
    )
    if not config.debug:
        # websockets logs every failed handshake at INFO/ERROR; keep it quiet.
        logging.getLogger("websockets").setLevel(logging.WARNING)


def _write_message(payload: dict[str, Any]) -> None:
    """Write JSON-RPC message to stdout."""
    data = json.dumps(payload, ensure_ascii=False, default=repr)
    if os.environ.get("MCP_TRACE"):
        logger.info("send %s", redact_jsonrpc_for_log(payload))
    sys.stdout.buffer.write((data + "\n").encode())
    sys.stdout.buffer.flush()


def _read_message() -> dict[str, Any] | None:
    """Read one JSON-RPC message from stdin.

    Returns ``None`` at EOF and an empty dict for blank or unparsable lines.
    """
    line = sys.stdin.buffer.readline()
    if not line:
        return None
    line = line.strip()
    if not line:
        return {}
    try:
        msg = json.loads(line.decode())
    except Exception as exc:  # noqa: BLE001
        logger.warning("invalid JSON on stdin: %s (%s)", exc, line[:100])
        return {}
    if not isinstance(msg, dict):
        return {}
    if os.environ.get("MCP_TRACE"):
        logger.info("recv %s", redact_jsonrpc_for_log(msg))
    return msg


class McpServer:
    """STDIO MCP server: line-delimited JSON-RPC.

    ``tools/call`` is scheduled on the gateway loop and answered from its
    done-callback, so the read loop never waits on a page. Writes from both
    threads go through one lock.
    """

    def __init__(self, gateway: PageGateway, *, write=_write_message) -> None:  # type: ignore[no-untyped-def]
        self.gateway = gateway
        self._write_raw = write
        self._write_lock = threading.Lock()
        self._inflight_lock = threading.Lock()
        # client rpc id -> future running PageRelay.submit
        self._inflight: dict[Any, concurrent.futures.Future] = {}

    @property
    def health(self):  # type: ignore[no-untyped-def]
        return self.gateway.relay.health

    def _write(self, payload: dict[str, Any]) -> None:
        with self._write_lock:
            self._write_raw(payload)

    def inflight_count(self) -> int:
        with self._inflight_lock:
            return len(self._inflight)

    def handle_initialize(self, request_id: Any, params: dict[str, Any] | None = None) -> None:
        requested = (params or {}).get("protocolVersion") if isinstance(params, dict) else None
        protocol = select_protocol(requested)
        self._write({"jsonrpc": "2.0", "id": request_id, "result": initialize_result(protocol)})

    def handle_list_tools(self, request_id: Any) -> None:
        self._write({"jsonrpc": "2.0", "id": request_id, "result": {"tools": tools_list()}})

    def tool_error(self, name: str, exc: BaseException) -> ToolResult:
        if isinstance(exc, PageControlError):
            logger.info("tool_error tool=%s reason=%s", name, exc)
            self.health.record_error(f"Tool execution error: {exc}")
            return ToolResult.error(str(exc), tool=name)
        logger.error("tool_call_failed tool=%s", name, exc_info=exc)
        self.health.record_error(f"Tool execution error: {exc}", status="degraded")
        return ToolResult.error(f"Tool execution failed: {exc}", tool=name)

    def handle_call_tool(self, request_id: Any, name: str, arguments: dict[str, Any]) -> None:
        logger.info("tool=%s args=%s", name, redact_tool_arguments(name, arguments))
        if not name:
            self._respond(request_id, ToolResult.error("Missing tool name"))
            return
        if not has_tool(name):
            self._respond(request_id, ToolResult.error(f"Unknown tool: {name}", tool=name))
            return
        try:
            fut = self.gateway.submit(name, arguments)
        except Exception as exc:  # noqa: BLE001
            self._respond(request_id, self.tool_error(name, exc))
            return

        tracked = isinstance(request_id, (str, int))
        if tracked:
            with self._inflight_lock:
                self._inflight[request_id] = fut

        def _done(f: concurrent.futures.Future) -> None:
            if tracked:
                with self._inflight_lock:
                    if self._inflight.get(request_id) is f:
                        del self._inflight[request_id]
            if f.cancelled():
                # The client cancelled; it expects no response.
                logger.debug("tool call %r cancelled", request_id)
                return
            exc = f.exception()
            result = ToolResult.json(f.result()) if exc is None else self.tool_error(name, exc)
            self._respond(request_id, result)

        fut.add_done_callback(_done)

    def handle_cancelled(self, params: dict[str, Any]) -> None:
        rpc_id = params.get("requestId") if isinstance(params, dict) else None
        fut = None
        if isinstance(rpc_id, (str, int)):
            with self._inflight_lock:
                fut = self._inflight.pop(rpc_id, None)
        if fut is None:
            logger.debug("cancel notice for %r ignored (not in flight)", rpc_id)
            return
        # Cancelling the task drops the pending request on the gateway loop.
        fut.cancel()
        logger.debug("tool call %r cancelled by client", rpc_id)

    def _respond(self, request_id: Any, result: ToolResult) -> None:
        if request_id is None:
            return
        self._write({"jsonrpc": "2.0", "id": request_id, "result": result.to_mcp()})

    def dispatch(self, message: dict[str, Any]) -> None:
        """Dispatch incoming JSON-RPC message to appropriate handler."""
        if not message:
            return

        method = message.get("method")
        request_id = message.get("id")
        params = message.get("params") or {}

        if method == "initialize":
            self.handle_initialize(request_id, params)
        elif method == "notifications/initialized":
            return
        elif method == "notifications/cancelled":
            self.handle_cancelled(params)
        elif method == "tools/list":
            self.handle_list_tools(request_id)
        elif method == "tools/call":
            name = params.get("name")
            arguments = params.get("arguments") or {}
            if not isinstance(arguments, dict):
                arguments = {}
            self.handle_call_tool(request_id, name or "", arguments)
        elif method == "ping":
            self._write({"jsonrpc": "2.0", "id": request_id, "result": {}})
        elif request_id is None:
            logger.debug("ignoring notification %s", method)
        else:
            self._write(
                {
                    "jsonrpc": "2.0",
                    "id": request_id,
                    "error": {"code": -32601, "message": f"Method not found: {method}"},
                }
            )


def _install_signal_handlers(stop: threading.Event) -> None:
    def _handler(signum, _frame):  # type: ignore[no-untyped-def]
        logger.warning("received %s, shutting down", signal.Signals(signum).name)
        stop.set()
        # Unblocks a pending stdin read as well.
        raise SystemExit(0)

    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            signal.signal(sig, _handler)
        except (ValueError, OSError):
            # Not the main thread, or unsupported on this platform.
            pass


def _run_stdio(gateway: PageGateway, stop: threading.Event) -> None:
    server = McpServer(gateway)
    while not stop.is_set():
        message = _read_message()
        if message is None:
            break
        server.dispatch(message)


def _run_sse(gateway: PageGateway, config: PageControlConfig, stop: threading.Event) -> None:
    from .sse import SseServer

    sse = SseServer(gateway.relay, host=config.http_host, port=config.http_port)
    # Fail-soft like the page gateway: a busy HTTP port is retried in the background.
    started = gateway.run_coroutine(sse.start(retry=True))
    try:
        started.result(timeout=2.0)
    except concurrent.futures.TimeoutError:
        logger.error("SSE transport is not listening yet: %s", sse.bind_error)
    except OSError as exc:
        logger.error("SSE transport failed to start: %s", exc)
    else:
        logger.info("SSE endpoint: http://%s:%s/page-control", config.http_host, config.http_port)
    try:
        while not stop.wait(0.5):
            pass
    finally:
        try:
            gateway.run_coroutine(sse.stop()).result(timeout=5.0)
        except Exception as exc:  # noqa: BLE001
            logger.debug("SSE shutdown: %s", exc)


def main(argv: list[str] | None = None) -> None:
    """Main entry point for the page control MCP server."""
    argv = list(sys.argv[1:] if argv is None else argv)
    config = PageControlConfig.from_env(argv)
    configure_logging(config)

    gateway = PageGateway(config=config)
    # Fail-soft: a busy WebSocket port must not break the MCP handshake.
    gateway.start(wait_timeout=2.0, require_listening=False)
    if not gateway.status().get("listening"):
        logger.error("page gateway is not listening yet: %s", gateway.status().get("bindError"))

    stop = threading.Event()
    _install_signal_handlers(stop)
    try:
        if config.mode == "stdio":
            _run_stdio(gateway, stop)
        else:
            _run_sse(gateway, config, stop)
    finally:
        gateway.stop(timeout=2.0)


if __name__ == "__main__":
    main()
