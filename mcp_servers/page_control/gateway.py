from __future__ import annotations

import asyncio
import concurrent.futures
import contextlib
import errno
import json
import logging
import os
import threading
import time
from collections.abc import Callable, Coroutine
from typing import Any

from .config import PageControlConfig
from .dispatcher import PendingCall
from .errors import GatewayNotRunning, RequestTimeoutError
from .relay import PageRelay

PAGE_CONTROL_WELL_KNOWN_PATH = "/.well-known/page-control"

logger = logging.getLogger("mcp.page_control.gateway")


def _now_ms() -> int:
    return int(time.time() * 1000)


def _import_websockets():
    try:
        import websockets  # type: ignore[import-not-found]

        return websockets
    except Exception as exc:  # noqa: BLE001
        raise RuntimeError(
            "The page gateway requires the 'websockets' Python package. Install it (pip install websockets)."
        ) from exc


class PageGateway:
    """Local WebSocket server that browser pages connect to.

    Design goals:
    - Async server internally (runs in a dedicated daemon thread); every relay
      operation happens on that one loop, so the correlation table never sees
      two handlers interleave.
    - Sync API for blocking callers (``call``), async callers schedule onto ``loop``.
    - Fail-soft bind: keep retrying with backoff if the port is busy.
    """

    def __init__(
        self,
        relay: PageRelay | None = None,
        *,
        config: PageControlConfig | None = None,
        host: str | None = None,
        port: int | None = None,
    ) -> None:
        self.relay = relay or PageRelay(config)
        cfg = self.relay.config
        self.host = (host or cfg.ws_host or "127.0.0.1").strip() or "127.0.0.1"
        self.port = int(port or cfg.ws_port)
        self.max_message_bytes = int(cfg.max_message_bytes)
        self._server_started_at_ms = _now_ms()

        self._lock = threading.Lock()
        self._loop: asyncio.AbstractEventLoop | None = None
        self._thread: threading.Thread | None = None
        self._stop = threading.Event()

        self._server: Any | None = None
        self._bind_error: str | None = None
        self._socket_count = 0

    @property
    def loop(self) -> asyncio.AbstractEventLoop | None:
        return self._loop

    # ─────────────────────────────────────────────────────────────────────────
    # Lifecycle
    # ─────────────────────────────────────────────────────────────────────────

    def start(self, *, wait_timeout: float = 5.0, require_listening: bool = True) -> None:
        if self._thread is not None and self._thread.is_alive():
            return

        self._stop.clear()
        with self._lock:
            self._bind_error = None

        t = threading.Thread(target=self._run_thread, name="page-control-gateway", daemon=True)
        self._thread = t
        t.start()

        # Wait for the listener to actually bind, not just for the thread to start.
        deadline = time.time() + max(0.05, float(wait_timeout))
        while time.time() < deadline:
            with self._lock:
                server = self._server
            if server is not None:
                return
            if not t.is_alive():
                break
            time.sleep(0.05)

        with self._lock:
            bind_error = self._bind_error
            server = self._server
        if server is not None:
            return
        if not t.is_alive():
            raise RuntimeError(f"Page gateway thread died during startup on {self.host}:{self.port}")
        if require_listening:
            if bind_error:
                raise RuntimeError(f"Page gateway bind failed on {self.host}:{self.port}: {bind_error}")
            raise RuntimeError(f"Page gateway failed to start on {self.host}:{self.port}")
        # Fail-soft: the gateway thread keeps retrying to bind.

    def stop(self, *, timeout: float = 2.0) -> None:
        self._stop.set()
        loop = self._loop
        if loop is not None and loop.is_running():
            with contextlib.suppress(Exception):
                asyncio.run_coroutine_threadsafe(self._shutdown_async(), loop).result(timeout=timeout)

        t = self._thread
        if t is not None:
            t.join(timeout=timeout)

    def is_running(self) -> bool:
        loop = self._loop
        t = self._thread
        return bool(loop is not None and loop.is_running() and t is not None and t.is_alive())

    def status(self) -> dict[str, Any]:
        with self._lock:
            server = self._server
            bind_error = self._bind_error
            sockets = self._socket_count
        thread_alive = bool(self._thread is not None and self._thread.is_alive())
        return {
            "listening": server is not None,
            "host": self.host,
            "port": self.port,
            "sockets": sockets,
            # len() on the owned structures is safe off-loop.
            "registeredPages": len(self.relay.registry),
            "pendingRequests": len(self.relay.table),
            **({"threadAlive": True} if thread_alive else {}),
            **({"bindError": bind_error} if bind_error else {}),
            "serverStartedAtMs": int(self._server_started_at_ms),
        }

    # ─────────────────────────────────────────────────────────────────────────
    # Sync facade
    # ─────────────────────────────────────────────────────────────────────────

    def run_coroutine(self, coro: Coroutine[Any, Any, Any]) -> concurrent.futures.Future:
        loop = self._loop
        if loop is None or not loop.is_running():
            coro.close()
            raise GatewayNotRunning("Page gateway is not running")
        return asyncio.run_coroutine_threadsafe(coro, loop)

    def submit(
        self,
        method: str,
        args: dict[str, Any] | None = None,
        *,
        on_dispatched: Callable[[PendingCall], None] | None = None,
    ) -> concurrent.futures.Future:
        """Schedule ``PageRelay.submit`` on the gateway loop without waiting.

        Cancelling the returned future drops the pending request.
        """
        return self.run_coroutine(self.relay.submit(method, args, on_dispatched=on_dispatched))

    def call(self, method: str, args: dict[str, Any] | None = None, *, timeout: float | None = None) -> Any:
        """Blocking ``PageRelay.submit`` for callers outside the gateway loop."""
        fut = self.submit(method, args)
        cfg = self.relay.config
        # The reaper settles the request within timeout + interval; wait a bit longer than that.
        wait = timeout if timeout is not None else cfg.request_timeout + cfg.reap_interval + 5.0
        try:
            return fut.result(timeout=max(0.1, float(wait)))
        except RequestTimeoutError:
            raise
        except concurrent.futures.TimeoutError as exc:
            fut.cancel()
            raise RequestTimeoutError(int(wait * 1000)) from exc

    # ─────────────────────────────────────────────────────────────────────────
    # Internals (async)
    # ─────────────────────────────────────────────────────────────────────────

    def _run_thread(self) -> None:
        asyncio.run(self._run_async())

    async def _handle_socket(self, ws) -> None:  # type: ignore[no-untyped-def]
        relay = self.relay
        page_id: str | None = None
        with self._lock:
            self._socket_count += 1
        logger.debug("new WebSocket connection from browser page")
        try:
            async for raw in ws:
                try:
                    msg = json.loads(raw)
                except Exception as exc:  # noqa: BLE001
                    logger.debug("invalid JSON from page socket: %s", exc)
                    continue

                if isinstance(msg, dict) and msg.get("type") == "ping":
                    with contextlib.suppress(Exception):
                        await ws.send(json.dumps({"type": "pong", "ts": _now_ms()}))
                    continue

                try:
                    registered = await relay.handle_page_message(msg, ws)
                except Exception as exc:  # noqa: BLE001
                    logger.debug("error processing page frame: %s", exc)
                    continue
                if registered is not None:
                    if page_id is not None and page_id != registered:
                        await relay.page_disconnected(page_id, ws)
                    page_id = registered
        except Exception as exc:  # noqa: BLE001
            logger.debug("page socket error: %s", exc)
            relay.health.record_error(
                f"WebSocket connection error: {exc}", status="degraded", websocket_status="degraded"
            )
        finally:
            with self._lock:
                self._socket_count = max(0, self._socket_count - 1)
            if page_id is not None:
                await relay.page_disconnected(page_id, ws)
            else:
                logger.debug("unregistered WebSocket connection closed")

    def _status_response(self, request):  # type: ignore[no-untyped-def]
        """Serve a tiny JSON status document on the WS port (plain HTTP GET)."""
        from websockets.datastructures import Headers as WsHeaders  # type: ignore[import-not-found]
        from websockets.http11 import Response as WsResponse  # type: ignore[import-not-found]

        path = str(getattr(request, "path", "") or "")
        headers = WsHeaders()
        headers["Cache-Control"] = "no-store"
        headers["Access-Control-Allow-Origin"] = "*"
        if path != PAGE_CONTROL_WELL_KNOWN_PATH:
            headers["Content-Type"] = "text/plain"
            return WsResponse(404, "Not Found", headers, b"not found")

        payload = {
            "type": "pageControlGateway",
            "pid": int(os.getpid()),
            "port": int(self.port),
            "serverStartedAtMs": int(self._server_started_at_ms),
            "connectedPages": len(self.relay.registry),
            "pendingRequests": len(self.relay.table),
        }
        body = json.dumps(payload, separators=(",", ":"), ensure_ascii=False).encode("utf-8")
        headers["Content-Type"] = "application/json"
        return WsResponse(200, "OK", headers, body)

    async def _process_request(self, _conn, request):  # type: ignore[no-untyped-def]
        try:
            upgrade = str(request.headers.get("Upgrade") or "").lower()
        except Exception:  # noqa: BLE001
            upgrade = ""
        if upgrade == "websocket":
            return None
        try:
            return self._status_response(request)
        except Exception:  # noqa: BLE001
            # Never wedge WS handshakes on a broken status page.
            return None

    async def _run_async(self) -> None:
        websockets = _import_websockets()
        self._loop = asyncio.get_running_loop()
        self.relay.start()

        backoff_s = 0.25
        max_backoff_s = 5.0
        try:
            while not self._stop.is_set():
                with self._lock:
                    has_server = self._server is not None
                if has_server:
                    await asyncio.sleep(0.25)
                    continue

                try:
                    server = await websockets.serve(
                        self._handle_socket,
                        self.host,
                        int(self.port),
                        process_request=self._process_request,
                        max_size=self.max_message_bytes,
                        ping_interval=None,
                    )
                except OSError as exc:
                    retryable = getattr(exc, "errno", None) in {errno.EADDRINUSE, errno.EACCES}
                    with self._lock:
                        self._bind_error = str(exc)
                    self.relay.health.record_error(
                        f"WebSocket server error: {exc}", status="error", websocket_status="error"
                    )
                    logger.warning("page gateway bind failed on %s:%s: %s", self.host, self.port, exc)
                    if not retryable:
                        return
                    await asyncio.sleep(backoff_s)
                    backoff_s = min(backoff_s * 1.6, max_backoff_s)
                    continue

                with self._lock:
                    self._server = server
                    self._bind_error = None
                self.relay.health.mark_websocket_ok()
                logger.info("page gateway listening on ws://%s:%s", self.host, self.port)
                backoff_s = 0.25
        finally:
            await self._shutdown_async()

    async def _shutdown_async(self) -> None:
        with self._lock:
            srv = self._server
            self._server = None
        if srv is not None:
            with contextlib.suppress(Exception):
                srv.close()
                await srv.wait_closed()
        await self.relay.close()


__all__ = ["PAGE_CONTROL_WELL_KNOWN_PATH", "PageGateway"]
