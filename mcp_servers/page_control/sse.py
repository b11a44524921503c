"""Legacy SSE transport.

``GET /page-control`` opens an event stream and announces a per-session POST
endpoint; ``POST /message?sessionId=...`` acknowledges each JSON-RPC request
over HTTP and delivers the real response later as an ``event: message`` on
the stream. Runs on the page gateway's event loop and awaits
``PageRelay.submit`` directly.
"""

from __future__ import annotations

import asyncio
import contextlib
import errno
import json
import logging
import time
import uuid
from dataclasses import dataclass, field
from typing import Any

from aiohttp import web

from .errors import PageControlError, RequestTimeoutError
from .relay import PageRelay
from .server.contract import SERVER_INFO, has_tool, tools_list

logger = logging.getLogger("mcp.page_control.sse")

SSE_PATH = "/page-control"
MESSAGE_PATH = "/message"

# The legacy transport has always answered initialize with this version.
SSE_PROTOCOL_VERSION = "2024-11-05"

ERR_INVALID_REQUEST = -32600
ERR_METHOD_NOT_FOUND = -32601
ERR_TOOL_FAILED = -32000
ERR_TIMEOUT = -32001


def _rpc_error(rpc_id: Any, code: int, message: str) -> dict[str, Any]:
    return {"jsonrpc": "2.0", "id": rpc_id, "error": {"code": code, "message": message}}


def _rpc_result(rpc_id: Any, result: Any) -> dict[str, Any]:
    return {"jsonrpc": "2.0", "id": rpc_id, "result": result}


@dataclass
class SseSession:
    session_id: str
    response: web.StreamResponse
    initialized: bool = False
    # client rpc id -> page request id / task awaiting it
    inflight: dict[Any, int] = field(default_factory=dict)
    tasks: dict[Any, asyncio.Task] = field(default_factory=dict)
    write_lock: asyncio.Lock = field(default_factory=asyncio.Lock)
    closed: bool = False

    async def send_event(self, event: str, data: str) -> bool:
        if self.closed:
            return False
        async with self.write_lock:
            try:
                await self.response.write(f"event: {event}\ndata: {data}\n\n".encode())
            except (ConnectionResetError, RuntimeError) as exc:
                logger.debug("SSE session %s write failed: %s", self.session_id, exc)
                self.closed = True
                return False
        return True

    async def send_message(self, payload: dict[str, Any]) -> bool:
        return await self.send_event("message", json.dumps(payload, ensure_ascii=False, default=repr))


@web.middleware
async def _cors_middleware(request: web.Request, handler):  # type: ignore[no-untyped-def]
    if request.method == "OPTIONS":
        resp: web.StreamResponse = web.Response(status=204)
        resp.headers["Access-Control-Allow-Methods"] = "GET, POST, OPTIONS"
        resp.headers["Access-Control-Allow-Headers"] = "Content-Type"
    else:
        resp = await handler(request)
    if not resp.prepared:
        resp.headers["Access-Control-Allow-Origin"] = "*"
    return resp


class SseServer:
    def __init__(
        self,
        relay: PageRelay,
        *,
        host: str | None = None,
        port: int | None = None,
        heartbeat_interval: float | None = None,
    ) -> None:
        self.relay = relay
        self.host = host or relay.config.http_host
        self.port = int(port or relay.config.http_port)
        self.heartbeat_interval = float(heartbeat_interval or relay.config.heartbeat_interval)
        self.sessions: dict[str, SseSession] = {}
        self._runner: web.AppRunner | None = None
        self._closing: asyncio.Event | None = None
        self._background: set[asyncio.Task] = set()
        self.listening = False
        self.bind_error: str | None = None

        self.app = web.Application(middlewares=[_cors_middleware])
        self.app.router.add_get(SSE_PATH, self.handle_stream)
        self.app.router.add_post(MESSAGE_PATH, self.handle_message)

    async def start(self, *, retry: bool = False) -> None:
        """Bind the HTTP listener.

        With ``retry`` a busy or forbidden port is retried with backoff until
        it binds or ``stop()`` is called; the failure is recorded in health.
        """
        self._closing = asyncio.Event()
        runner = web.AppRunner(self.app, access_log=None)
        await runner.setup()
        self._runner = runner

        backoff_s = 0.25
        max_backoff_s = 5.0
        while True:
            site = web.TCPSite(runner, self.host, self.port)
            try:
                await site.start()
            except OSError as exc:
                with contextlib.suppress(Exception):
                    await site.stop()
                self.bind_error = str(exc)
                self.relay.health.record_error(f"SSE server error: {exc}", status="error")
                logger.warning("SSE transport bind failed on %s:%s: %s", self.host, self.port, exc)
                retryable = getattr(exc, "errno", None) in {errno.EADDRINUSE, errno.EACCES}
                if not (retry and retryable):
                    self._runner = None
                    await runner.cleanup()
                    raise
                with contextlib.suppress(asyncio.TimeoutError):
                    await asyncio.wait_for(self._closing.wait(), timeout=backoff_s)
                if self._closing.is_set():
                    return
                backoff_s = min(backoff_s * 1.6, max_backoff_s)
                continue
            break

        self.bind_error = None
        self.listening = True
        self.relay.health.mark_ok()
        logger.info("SSE transport listening on http://%s:%s%s", self.host, self.port, SSE_PATH)

    async def stop(self) -> None:
        self.listening = False
        if self._closing is not None:
            self._closing.set()
        for session in list(self.sessions.values()):
            for task in list(session.tasks.values()):
                task.cancel()
        runner = self._runner
        self._runner = None
        if runner is not None:
            await runner.cleanup()

    # ─────────────────────────────────────────────────────────────────────────
    # HTTP handlers
    # ─────────────────────────────────────────────────────────────────────────

    async def handle_stream(self, request: web.Request) -> web.StreamResponse:
        resp = web.StreamResponse(
            headers={
                "Content-Type": "text/event-stream",
                "Cache-Control": "no-cache",
                "Connection": "keep-alive",
                "Access-Control-Allow-Origin": "*",
            }
        )
        await resp.prepare(request)

        session_id = str(uuid.uuid4())
        session = SseSession(session_id=session_id, response=resp)
        self.sessions[session_id] = session
        logger.info("new SSE connection, sessionId=%s", session_id)

        try:
            if not await session.send_event("endpoint", f"{MESSAGE_PATH}?sessionId={session_id}"):
                return resp
            closing = self._closing or asyncio.Event()
            while not session.closed:
                with contextlib.suppress(asyncio.TimeoutError):
                    await asyncio.wait_for(closing.wait(), timeout=self.heartbeat_interval)
                if closing.is_set():
                    break
                transport = request.transport
                if transport is None or transport.is_closing():
                    break
                if not await session.send_event("heartbeat", str(int(time.time() * 1000))):
                    break
        finally:
            session.closed = True
            self.sessions.pop(session_id, None)
            for rpc_id, request_id in list(session.inflight.items()):
                self.relay.cancel(request_id)
                task = session.tasks.get(rpc_id)
                if task is not None:
                    task.cancel()
            logger.info("SSE connection closed, sessionId=%s", session_id)
        return resp

    async def handle_message(self, request: web.Request) -> web.Response:
        session_id = request.query.get("sessionId")
        if not session_id:
            return web.json_response({"error": "Missing sessionId in query"}, status=400)
        session = self.sessions.get(session_id)
        if session is None:
            return web.json_response({"error": "No SSE session found for sessionId"}, status=404)

        try:
            rpc = await request.json()
        except Exception:  # noqa: BLE001
            return web.json_response({"error": "Invalid JSON"}, status=400)

        if not isinstance(rpc, dict) or rpc.get("jsonrpc") != "2.0" or not rpc.get("method"):
            rpc_id = rpc.get("id") if isinstance(rpc, dict) else None
            return web.json_response(_rpc_error(rpc_id, ERR_INVALID_REQUEST, "Invalid JSON-RPC request"))

        method = str(rpc.get("method"))
        self._process(session, rpc)
        return web.json_response(_rpc_result(rpc.get("id"), {"ack": f"Received {method}"}))

    # ─────────────────────────────────────────────────────────────────────────
    # JSON-RPC over the stream
    # ─────────────────────────────────────────────────────────────────────────

    def _process(self, session: SseSession, rpc: dict[str, Any]) -> None:
        method = rpc.get("method")
        rpc_id = rpc.get("id")
        params = rpc.get("params") if isinstance(rpc.get("params"), dict) else {}
        logger.debug("processing SSE message: %s", method)

        if method == "initialize":
            session.initialized = True
            result = {
                "protocolVersion": SSE_PROTOCOL_VERSION,
                "capabilities": {"tools": {"listChanged": True}, "logging": {}},
                "serverInfo": SERVER_INFO,
            }
            self._spawn(session, None, session.send_message(_rpc_result(rpc_id, result)))
        elif method == "tools/list":
            tools = tools_list()
            payload = _rpc_result(rpc_id, {"tools": tools, "count": len(tools)})
            self._spawn(session, None, session.send_message(payload))
        elif method == "tools/call":
            name = str(params.get("name") or "")
            args = params.get("arguments") if isinstance(params.get("arguments"), dict) else {}
            self._spawn(session, rpc_id, self._call_tool(session, rpc_id, name, args))
        elif method == "notifications/initialized":
            logger.debug("client initialized via SSE")
        elif method == "notifications/cancelled":
            self._cancel(session, params.get("requestId"))
        elif method == "ping":
            self._spawn(session, None, session.send_message(_rpc_result(rpc_id, {})))
        else:
            payload = _rpc_error(rpc_id, ERR_METHOD_NOT_FOUND, f"Method not found: {method}")
            self._spawn(session, None, session.send_message(payload))

    def _spawn(self, session: SseSession, rpc_id: Any, coro) -> None:  # type: ignore[no-untyped-def]
        task = asyncio.get_running_loop().create_task(coro)
        self._background.add(task)
        task.add_done_callback(self._background.discard)
        if rpc_id is None:
            return
        session.tasks[rpc_id] = task

        def _done(t: asyncio.Task) -> None:
            if session.tasks.get(rpc_id) is t:
                session.tasks.pop(rpc_id, None)

        task.add_done_callback(_done)

    def _cancel(self, session: SseSession, rpc_id: Any) -> None:
        if rpc_id is None:
            return
        request_id = session.inflight.pop(rpc_id, None)
        if request_id is not None:
            self.relay.cancel(request_id)
            logger.debug("removed cancelled request %s (client id %r)", request_id, rpc_id)
        task = session.tasks.pop(rpc_id, None)
        if task is not None:
            task.cancel()

    async def _call_tool(self, session: SseSession, rpc_id: Any, name: str, args: dict[str, Any]) -> None:
        if not has_tool(name):
            await session.send_message(_rpc_error(rpc_id, ERR_METHOD_NOT_FOUND, f"Unknown tool: {name}"))
            return

        def _track(call) -> None:  # type: ignore[no-untyped-def]
            session.inflight[rpc_id] = call.request_id

        try:
            result = await self.relay.submit(name, args, on_dispatched=_track)
        except RequestTimeoutError as exc:
            self.relay.health.record_error(str(exc))
            await session.send_message(_rpc_error(rpc_id, ERR_TIMEOUT, str(exc)))
        except PageControlError as exc:
            self.relay.health.record_error(f"Tool execution error: {exc}")
            await session.send_message(_rpc_error(rpc_id, ERR_TOOL_FAILED, str(exc)))
        except Exception as exc:  # noqa: BLE001
            logger.exception("SSE tool call failed: %s", name)
            self.relay.health.record_error(f"Tool execution error: {exc}", status="degraded")
            await session.send_message(_rpc_error(rpc_id, ERR_TOOL_FAILED, f"Tool execution failed: {exc}"))
        else:
            text = json.dumps(result, ensure_ascii=False, default=repr)
            await session.send_message(_rpc_result(rpc_id, {"content": [{"type": "text", "text": text}]}))
        finally:
            session.inflight.pop(rpc_id, None)


__all__ = ["MESSAGE_PATH", "SSE_PATH", "SseServer", "SseSession"]
