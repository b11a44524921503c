from __future__ import annotations

import asyncio
import contextlib
import logging
import time
from collections.abc import Callable

from .config import DEFAULT_REAP_INTERVAL, DEFAULT_REQUEST_TIMEOUT
from .correlation import CorrelationTable
from .errors import RequestTimeoutError

logger = logging.getLogger("mcp.page_control.reaper")


class Reaper:
    """Periodic sweep that rejects pending requests older than ``timeout`` seconds.

    A request created at t0 is rejected no earlier than ``t0 + timeout`` and no
    later than ``t0 + timeout + interval``.
    """

    def __init__(
        self,
        table: CorrelationTable,
        *,
        timeout: float = DEFAULT_REQUEST_TIMEOUT,
        interval: float = DEFAULT_REAP_INTERVAL,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._table = table
        self.timeout = float(timeout)
        self.interval = max(0.01, float(interval))
        self._clock = clock
        self._task: asyncio.Task | None = None
        self.reaped_total = 0

    @property
    def timeout_ms(self) -> int:
        return int(round(self.timeout * 1000))

    def sweep(self, now: float | None = None) -> int:
        now = self._clock() if now is None else now
        reaped = 0
        for request_id, _ in self._table.scan_expired(now, self.timeout):
            record = self._table.take(request_id)
            if record is None:
                # Lost the race to a reply or a cancellation.
                continue
            logger.debug("request %s (%s on %s) timed out", request_id, record.method, record.page_id)
            record.reject(RequestTimeoutError(self.timeout_ms))
            reaped += 1
        self.reaped_total += reaped
        return reaped

    def start(self) -> None:
        if self._task is not None and not self._task.done():
            return
        self._task = asyncio.get_running_loop().create_task(self._run(), name="page-control-reaper")

    async def stop(self) -> None:
        task = self._task
        self._task = None
        if task is None:
            return
        task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await task

    async def _run(self) -> None:
        while True:
            await asyncio.sleep(self.interval)
            try:
                self.sweep()
            except Exception:  # noqa: BLE001
                logger.exception("reaper sweep failed")


__all__ = ["Reaper"]
