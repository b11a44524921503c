from __future__ import annotations

import threading
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any


def _iso(ts_ms: int | None) -> str | None:
    if not ts_ms:
        return None
    return datetime.fromtimestamp(ts_ms / 1000.0, tz=timezone.utc).isoformat().replace("+00:00", "Z")


@dataclass
class ServiceHealth:
    status: str = "ok"
    websocket_status: str = "ok"
    last_error: str | None = None
    last_error_time_ms: int | None = None
    started_at_ms: int = field(default_factory=lambda: int(time.time() * 1000))
    _lock: threading.Lock = field(default_factory=threading.Lock, repr=False, compare=False)

    def record_error(self, message: str, *, status: str | None = None, websocket_status: str | None = None) -> None:
        with self._lock:
            self.last_error = str(message)
            self.last_error_time_ms = int(time.time() * 1000)
            if status:
                self.status = status
            if websocket_status:
                self.websocket_status = websocket_status

    def mark_websocket_ok(self) -> None:
        with self._lock:
            self.websocket_status = "ok"
            if self.status != "ok":
                self.status = "ok"

    def mark_ok(self) -> None:
        """Clear a recorded outage once the failing listener recovers."""
        with self._lock:
            if self.websocket_status == "ok":
                self.status = "ok"

    def uptime_seconds(self) -> int:
        return max(0, int((time.time() * 1000 - self.started_at_ms) // 1000))

    def snapshot(
        self,
        *,
        connected_pages: int,
        pending_requests: int,
        server_type: str,
        websocket_port: int | None = None,
        detailed: bool = False,
    ) -> dict[str, Any]:
        with self._lock:
            out: dict[str, Any] = {
                "status": self.status,
                "uptime_seconds": self.uptime_seconds(),
                "connected_pages": int(connected_pages),
                "pending_requests": int(pending_requests),
                "websocket_status": self.websocket_status,
                "server_type": server_type,
            }
            if detailed:
                out["last_error"] = self.last_error
                out["last_error_time"] = _iso(self.last_error_time_ms)
                out["websocket_port"] = websocket_port
                out["started_at"] = _iso(self.started_at_ms)
        return out


__all__ = ["ServiceHealth"]
