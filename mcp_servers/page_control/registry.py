"""Registry of browser pages currently connected to the relay."""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from typing import Any

logger = logging.getLogger("mcp.page_control.registry")


def _now_ms() -> int:
    return int(time.time() * 1000)


def transport_is_open(transport: Any) -> bool:
    """Best-effort liveness check for a websockets connection.

    websockets >= 13 exposes ``state`` (a ``State`` enum); older protocol objects
    expose an ``open`` bool. Anything else counts as closed.
    """
    if transport is None:
        return False
    state = getattr(transport, "state", None)
    if state is not None:
        return getattr(state, "name", str(state)) == "OPEN"
    return bool(getattr(transport, "open", False))


@dataclass
class PageConnection:
    page_id: str
    transport: Any
    url: str | None = None
    title: str | None = None
    connected_at_ms: int = field(default_factory=_now_ms)

    @property
    def is_open(self) -> bool:
        return transport_is_open(self.transport)

    def describe(self) -> dict[str, Any]:
        return {
            "pageId": self.page_id,
            **({"url": self.url} if self.url else {}),
            **({"title": self.title} if self.title else {}),
            "connectedAtMs": self.connected_at_ms,
        }


class PageRegistry:
    """page id -> PageConnection.

    Stale entries (socket no longer open) are dropped lazily by ``list()`` and
    ``get()``; nothing prunes them proactively.
    """

    def __init__(self) -> None:
        self._pages: dict[str, PageConnection] = {}

    def register(self, page_id: str, connection: PageConnection) -> None:
        previous = self._pages.get(page_id)
        self._pages[page_id] = connection
        if previous is not None and previous.transport is not connection.transport:
            logger.debug("page %s re-registered on a new connection", page_id)
        logger.debug("page %s registered, total pages: %d", page_id, len(self._pages))

    def unregister(self, page_id: str, transport: Any | None = None) -> bool:
        """Remove ``page_id``.

        When ``transport`` is given the entry is only removed if it still belongs to
        that transport, so a late close of a replaced socket keeps the new one.
        """
        current = self._pages.get(page_id)
        if current is None:
            return False
        if transport is not None and current.transport is not transport:
            return False
        del self._pages[page_id]
        logger.debug("page %s unregistered, total pages: %d", page_id, len(self._pages))
        return True

    def get(self, page_id: str) -> PageConnection | None:
        conn = self._pages.get(page_id)
        if conn is None:
            return None
        if not conn.is_open:
            self._pages.pop(page_id, None)
            logger.debug("removed stale connection for page %s", page_id)
            return None
        return conn

    def list(self) -> list[str]:
        for page_id, conn in list(self._pages.items()):
            if not conn.is_open:
                self._pages.pop(page_id, None)
                logger.debug("removed stale connection for page %s", page_id)
        return list(self._pages.keys())

    def connections(self) -> list[PageConnection]:
        """Open connections only (no pruning)."""
        return [conn for conn in self._pages.values() if conn.is_open]

    def __len__(self) -> int:
        return len(self._pages)

    def __contains__(self, page_id: object) -> bool:
        return page_id in self._pages


__all__ = ["PageConnection", "PageRegistry", "transport_is_open"]
