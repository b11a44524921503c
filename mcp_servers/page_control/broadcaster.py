from __future__ import annotations

import asyncio
import json
import logging

from .registry import PageConnection, PageRegistry

logger = logging.getLogger("mcp.page_control.broadcast")


class Broadcaster:
    """Best-effort ``activity`` notices to every open page."""

    def __init__(self, registry: PageRegistry) -> None:
        self._registry = registry

    async def broadcast(self, message: str) -> int:
        targets = self._registry.connections()
        if not targets:
            return 0
        logger.debug("broadcasting to %d pages: %s", len(targets), message)
        payload = json.dumps({"type": "activity", "message": message}, ensure_ascii=False)
        results = await asyncio.gather(*[self._send(conn, payload) for conn in targets], return_exceptions=True)
        return sum(1 for ok in results if ok is True)

    async def _send(self, conn: PageConnection, payload: str) -> bool:
        try:
            await conn.transport.send(payload)
        except Exception as exc:  # noqa: BLE001
            logger.debug("activity notice to %s dropped: %s", conn.page_id, exc)
            return False
        return True


__all__ = ["Broadcaster"]
