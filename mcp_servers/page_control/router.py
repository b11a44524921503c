from __future__ import annotations

import logging
from typing import Any

from .broadcaster import Broadcaster
from .correlation import CorrelationTable
from .errors import RemoteError

logger = logging.getLogger("mcp.page_control.router")


def coerce_request_id(raw: Any) -> int | None:
    if isinstance(raw, bool):
        return None
    if isinstance(raw, int):
        return raw
    if isinstance(raw, str) and raw.strip().lstrip("-").isdigit():
        return int(raw.strip())
    return None


class ReplyRouter:
    """Matches ``{"type": "response"}`` envelopes to pending requests."""

    def __init__(self, table: CorrelationTable, broadcaster: Broadcaster) -> None:
        self._table = table
        self._broadcaster = broadcaster
        self.orphan_count = 0

    async def route(self, envelope: dict[str, Any]) -> bool:
        if not isinstance(envelope, dict):
            return False
        page_id = envelope.get("pageId")
        request_id = coerce_request_id(envelope.get("requestId"))
        record = self._table.take(request_id) if request_id is not None else None
        if record is None:
            # Already timed out, cancelled, or never ours. Not an error.
            self.orphan_count += 1
            logger.debug(
                "orphan reply from page %s for request %r; pending: %s",
                page_id,
                envelope.get("requestId"),
                self._table.ids(),
            )
            return False

        error = envelope.get("error")
        if error:
            logger.debug("error reply for request %s from page %s: %s", request_id, page_id, error)
            record.reject(RemoteError(str(error)))
            await self._broadcaster.broadcast(f"Error from page {page_id}: {error}")
        else:
            result = envelope.get("result")
            record.resolve(result if result is not None else envelope)
            await self._broadcaster.broadcast(f"Received successful response from page {page_id}")
        logger.debug("request %s settled, remaining: %d", request_id, len(self._table))
        return True


__all__ = ["ReplyRouter", "coerce_request_id"]
