"""Page relay: the correlation core wired together.

``PageRelay`` owns one registry and one correlation table and injects them
into the dispatcher, reply router, reaper and broadcaster. Transport adapters
talk to it through ``submit(method, args)``; the page gateway feeds it page
lifecycle events and inbound frames.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Callable
from typing import Any

from .broadcaster import Broadcaster
from .config import PageControlConfig
from .correlation import CorrelationTable
from .dispatcher import MODIFY_PAGE, QUERY_PAGE, RUN_SNIPPET, Dispatcher, PendingCall
from .errors import InvalidArguments, PageControlError
from .health import ServiceHealth
from .reaper import Reaper
from .registry import PageConnection, PageRegistry
from .router import ReplyRouter

logger = logging.getLogger("mcp.page_control.relay")

LIST_PAGES = "list_pages"
STATUS = "page_control_status"


def _require_str(args: dict[str, Any], key: str) -> str:
    value = args.get(key)
    if not isinstance(value, str) or not value.strip():
        raise InvalidArguments(f"{key} is required and must be a non-empty string")
    return value


class PageRelay:
    def __init__(
        self,
        config: PageControlConfig | None = None,
        *,
        clock: Callable[[], float] = time.monotonic,
        health: ServiceHealth | None = None,
    ) -> None:
        self.config = config or PageControlConfig()
        self.health = health or ServiceHealth()
        self.server_type = "STDIO" if self.config.mode == "stdio" else "SSE"

        self.registry = PageRegistry()
        self.table = CorrelationTable()
        self.broadcaster = Broadcaster(self.registry)
        self.dispatcher = Dispatcher(self.registry, self.table, self.broadcaster, clock=clock)
        self.router = ReplyRouter(self.table, self.broadcaster)
        self.reaper = Reaper(
            self.table,
            timeout=self.config.request_timeout,
            interval=self.config.reap_interval,
            clock=clock,
        )

    # ─────────────────────────────────────────────────────────────────────────
    # Lifecycle (must run on the event loop)
    # ─────────────────────────────────────────────────────────────────────────

    def start(self) -> None:
        self.reaper.start()

    async def close(self) -> None:
        await self.reaper.stop()
        dropped = self.table.drain()
        for record in dropped:
            record.reject(PageControlError("Page relay is shutting down"))
        if dropped:
            logger.info("rejected %d pending requests on shutdown", len(dropped))

    # ─────────────────────────────────────────────────────────────────────────
    # Page side
    # ─────────────────────────────────────────────────────────────────────────

    async def page_connected(
        self,
        page_id: str,
        transport: Any,
        *,
        url: str | None = None,
        title: str | None = None,
    ) -> PageConnection:
        conn = PageConnection(page_id=page_id, transport=transport, url=url, title=title)
        self.registry.register(page_id, conn)
        logger.info("page %s connected (%s)", page_id, url or "no url")
        await self.broadcaster.broadcast(f"New page connected: {page_id} ({title or 'Untitled'}) - {url or 'No URL'}")
        return conn

    async def page_disconnected(self, page_id: str, transport: Any | None = None) -> bool:
        removed = self.registry.unregister(page_id, transport)
        if removed:
            logger.info("page %s disconnected", page_id)
            await self.broadcaster.broadcast(f"Page disconnected: {page_id}")
        return removed

    async def handle_page_message(self, msg: Any, transport: Any) -> str | None:
        """Process one decoded frame from a page socket.

        Returns the page id when the frame registered the socket, else ``None``.
        """
        if not isinstance(msg, dict):
            logger.debug("ignoring non-object page frame")
            return None
        mtype = msg.get("type")
        if mtype == "page_connected":
            page_id = str(msg.get("pageId") or "").strip()
            if not page_id:
                logger.debug("page_connected without pageId ignored")
                return None
            url = msg.get("url") if isinstance(msg.get("url"), str) else None
            title = msg.get("title") if isinstance(msg.get("title"), str) else None
            await self.page_connected(page_id, transport, url=url, title=title)
            return page_id
        if mtype == "response":
            await self.router.route(msg)
            return None
        logger.debug("unknown page message type: %r", mtype)
        return None

    # ─────────────────────────────────────────────────────────────────────────
    # Caller side
    # ─────────────────────────────────────────────────────────────────────────

    async def dispatch_tool(self, method: str, args: dict[str, Any]) -> PendingCall:
        if method == QUERY_PAGE:
            return await self.dispatcher.query_page(_require_str(args, "pageId"), args.get("selector"))
        if method == MODIFY_PAGE:
            return await self.dispatcher.modify_page(_require_str(args, "targetPage"), args.get("modification"))
        if method == RUN_SNIPPET:
            return await self.dispatcher.run_snippet(_require_str(args, "pageId"), args.get("code"))
        raise InvalidArguments(f"Unknown tool: {method}")

    async def submit(
        self,
        method: str,
        args: dict[str, Any] | None = None,
        *,
        on_dispatched: Callable[[PendingCall], None] | None = None,
    ) -> Any:
        """Run one caller-facing tool to completion and return the page's payload."""
        args = args if isinstance(args, dict) else {}
        if method == LIST_PAGES:
            return await self.dispatcher.list_pages()
        if method == STATUS:
            return self.status(detail_level=str(args.get("detail_level") or "basic"))
        call = await self.dispatch_tool(method, args)
        if on_dispatched is not None:
            on_dispatched(call)
        try:
            return await call
        except asyncio.CancelledError:
            self.cancel(call.request_id)
            raise

    def cancel(self, request_id: int) -> bool:
        """Drop a pending request without settling it (the caller already gave up)."""
        record = self.table.take(request_id)
        if record is None:
            return False
        logger.debug("request %s cancelled, remaining: %d", request_id, len(self.table))
        return True

    def status(self, *, detail_level: str = "basic") -> dict[str, Any]:
        return self.health.snapshot(
            connected_pages=len(self.registry.list()),
            pending_requests=len(self.table),
            server_type=self.server_type,
            websocket_port=self.config.ws_port,
            detailed=detail_level == "detailed",
        )


__all__ = ["LIST_PAGES", "STATUS", "PageRelay"]
