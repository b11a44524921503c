"""Outbound command dispatch.

``Dispatcher.dispatch`` performs the synchronous half of a page command
(lookup, id allocation, table insert, send, activity notice) and hands back a
``PendingCall`` whose future completes when the reply router, the reaper or a
cancellation removes the entry from the correlation table.
"""

from __future__ import annotations

import asyncio
import itertools
import json
import logging
import time
from collections.abc import Callable, Generator, Iterator
from dataclasses import dataclass
from typing import Any

from .broadcaster import Broadcaster
from .correlation import CorrelationTable, PendingRequest
from .errors import DuplicateRequestId, InvalidArguments, PageNotConnected, SendFailed, format_page_list
from .registry import PageRegistry

logger = logging.getLogger("mcp.page_control.dispatch")

QUERY_PAGE = "query_page"
MODIFY_PAGE = "modify_page"
RUN_SNIPPET = "run_snippet"
PAGE_METHODS = (QUERY_PAGE, MODIFY_PAGE, RUN_SNIPPET)

MODIFY_OPERATIONS = ("setAttribute", "setProperty", "setInnerHTML", "setTextContent")

_FAILURE_LABELS = {
    QUERY_PAGE: "Query",
    MODIFY_PAGE: "Modification",
    RUN_SNIPPET: "Snippet execution",
}

_MAX_ID_ATTEMPTS = 8


def activity_notice(method: str, page_id: str, params: dict[str, Any]) -> str:
    """Human-readable notice for a dispatched command (snippet bodies are never included)."""
    if method == QUERY_PAGE:
        return f"Query executed on {page_id}: {params.get('selector')}"
    if method == MODIFY_PAGE:
        return f"Page {page_id} modified: {params.get('operation')} on {params.get('selector')}"
    if method == RUN_SNIPPET:
        code = params.get("code")
        length = len(code) if isinstance(code, str) else 0
        return f"Executing code snippet on {page_id} ({length} characters)"
    return f"Command {method} sent to {page_id}"


def failure_notice(method: str, page_id: str, connected: list[str]) -> str:
    label = _FAILURE_LABELS.get(method, "Command")
    return f'{label} failed: Page "{page_id}" is not connected. Available pages: {format_page_list(connected)}'


@dataclass
class PendingCall:
    """Caller-side handle for one in-flight command. Awaitable."""

    request_id: int
    page_id: str
    method: str
    future: asyncio.Future

    def __await__(self) -> Generator[Any, None, Any]:
        return self.future.__await__()

    def done(self) -> bool:
        return self.future.done()


class Dispatcher:
    def __init__(
        self,
        registry: PageRegistry,
        table: CorrelationTable,
        broadcaster: Broadcaster,
        *,
        clock: Callable[[], float] = time.monotonic,
        id_source: Iterator[int] | None = None,
    ) -> None:
        self._registry = registry
        self._table = table
        self._broadcaster = broadcaster
        self._clock = clock
        self._ids = id_source if id_source is not None else itertools.count(1)

    async def dispatch(self, method: str, page_id: str, params: dict[str, Any]) -> PendingCall:
        conn = self._registry.get(page_id)
        if conn is None:
            connected = self._registry.list()
            logger.debug("page %r not found, available pages: %s", page_id, format_page_list(connected))
            await self._broadcaster.broadcast(failure_notice(method, page_id, connected))
            raise PageNotConnected(page_id, connected)

        loop = asyncio.get_running_loop()
        fut: asyncio.Future = loop.create_future()

        def _resolve(value: Any) -> None:
            if not fut.done():
                fut.set_result(value)

        def _reject(exc: BaseException) -> None:
            if not fut.done():
                fut.set_exception(exc)

        request_id = self._register(method, page_id, _resolve, _reject)

        envelope = json.dumps({"command": method, "params": params, "id": request_id}, ensure_ascii=False)
        try:
            await conn.transport.send(envelope)
        except Exception as exc:  # noqa: BLE001
            self._table.take(request_id)
            logger.debug("send of request %s to page %s failed: %s", request_id, page_id, exc)
            raise SendFailed(page_id, str(exc) or type(exc).__name__) from exc
        except BaseException:
            # Cancelled mid-send: nobody will await this request.
            self._table.take(request_id)
            raise

        logger.debug("sent %s to page %s (request %s)", method, page_id, request_id)
        try:
            await self._broadcaster.broadcast(activity_notice(method, page_id, params))
        except BaseException:
            self._table.take(request_id)
            raise
        return PendingCall(request_id=request_id, page_id=page_id, method=method, future=fut)

    def _register(
        self,
        method: str,
        page_id: str,
        resolve: Callable[[Any], None],
        reject: Callable[[BaseException], None],
    ) -> int:
        attempt = 0
        while True:
            attempt += 1
            request_id = int(next(self._ids))
            record = PendingRequest(
                request_id=request_id,
                method=method,
                page_id=page_id,
                created_at=self._clock(),
                resolve=resolve,
                reject=reject,
            )
            try:
                self._table.put(request_id, record)
            except DuplicateRequestId:
                if attempt >= _MAX_ID_ATTEMPTS:
                    raise
                logger.warning("request id %s collided with a pending request; regenerating", request_id)
                continue
            return request_id

    # Method-specific entry points ------------------------------------------------

    async def query_page(self, page_id: str, selector: str) -> PendingCall:
        if not isinstance(selector, str) or not selector.strip():
            raise InvalidArguments("selector must be a non-empty string")
        return await self.dispatch(QUERY_PAGE, page_id, {"selector": selector})

    async def modify_page(self, target_page: str, modification: dict[str, Any]) -> PendingCall:
        if not isinstance(modification, dict):
            raise InvalidArguments("modification must be an object with selector, operation and value")
        missing = [key for key in ("selector", "operation", "value") if modification.get(key) is None]
        if missing:
            raise InvalidArguments(f"modification is missing: {', '.join(missing)}")
        # operation is validated by the page, not here
        params = {
            "selector": modification["selector"],
            "operation": modification["operation"],
            "value": modification["value"],
        }
        return await self.dispatch(MODIFY_PAGE, target_page, params)

    async def run_snippet(self, page_id: str, code: str) -> PendingCall:
        if not isinstance(code, str):
            raise InvalidArguments("code must be a string")
        return await self.dispatch(RUN_SNIPPET, page_id, {"code": code})

    async def list_pages(self) -> dict[str, Any]:
        pages = self._registry.list()
        logger.debug("listing connected pages: %s", format_page_list(pages))
        await self._broadcaster.broadcast(f"Listed {len(pages)} connected pages")
        return {"pages": pages, "count": len(pages)}


__all__ = [
    "MODIFY_OPERATIONS",
    "MODIFY_PAGE",
    "PAGE_METHODS",
    "QUERY_PAGE",
    "RUN_SNIPPET",
    "Dispatcher",
    "PendingCall",
    "activity_notice",
    "failure_notice",
]
