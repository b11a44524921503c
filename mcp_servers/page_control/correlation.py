"""Correlation table: outbound request id -> pending continuation.

Every entry leaves the table through ``take`` exactly once. The reply router,
the reaper and cancellation all race through the same call; whichever takes
the entry first owns its resolution.
"""

from __future__ import annotations

import threading
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any

from .errors import DuplicateRequestId


@dataclass
class PendingRequest:
    request_id: int
    method: str
    page_id: str
    created_at: float
    resolve: Callable[[Any], None]
    reject: Callable[[BaseException], None]

    def age(self, now: float) -> float:
        return now - self.created_at


class CorrelationTable:
    def __init__(self) -> None:
        # All callers live on the gateway loop; the lock keeps take() exactly-once
        # even if something calls in from another thread.
        self._lock = threading.Lock()
        self._entries: dict[int, PendingRequest] = {}

    def put(self, request_id: int, record: PendingRequest) -> None:
        with self._lock:
            if request_id in self._entries:
                raise DuplicateRequestId(request_id)
            self._entries[request_id] = record

    def take(self, request_id: int) -> PendingRequest | None:
        with self._lock:
            return self._entries.pop(request_id, None)

    def scan_expired(self, now: float, timeout: float) -> list[tuple[int, PendingRequest]]:
        with self._lock:
            return [(rid, rec) for rid, rec in self._entries.items() if now - rec.created_at > timeout]

    def drain(self) -> list[PendingRequest]:
        with self._lock:
            records = list(self._entries.values())
            self._entries.clear()
        return records

    def ids(self) -> list[int]:
        with self._lock:
            return list(self._entries.keys())

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    def __contains__(self, request_id: object) -> bool:
        with self._lock:
            return request_id in self._entries


__all__ = ["CorrelationTable", "PendingRequest"]
