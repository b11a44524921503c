from __future__ import annotations

import os
from collections.abc import Sequence
from dataclasses import dataclass

DEFAULT_REQUEST_TIMEOUT = 30.0
DEFAULT_REAP_INTERVAL = 5.0


def _env_float(name: str, default: float) -> float:
    raw = (os.environ.get(name) or "").strip()
    if not raw:
        return default
    try:
        value = float(raw)
    except Exception:
        return default
    return value if value > 0 else default


def _env_int(name: str, default: int) -> int:
    raw = (os.environ.get(name) or "").strip()
    if not raw:
        return default
    try:
        value = int(raw)
    except Exception:
        return default
    return value if value > 0 else default


def env_flag(name: str) -> bool:
    return (os.environ.get(name) or "").strip().lower() in {"1", "true", "yes", "y", "on"}


@dataclass
class PageControlConfig:
    mode: str = "sse"
    ws_host: str = "127.0.0.1"
    ws_port: int = 3001
    http_host: str = "127.0.0.1"
    http_port: int = 4000
    request_timeout: float = DEFAULT_REQUEST_TIMEOUT
    reap_interval: float = DEFAULT_REAP_INTERVAL
    heartbeat_interval: float = 10.0
    max_message_bytes: int = 2_000_000
    debug: bool = False

    @property
    def request_timeout_ms(self) -> int:
        return int(round(self.request_timeout * 1000))

    @staticmethod
    def normalize_mode(raw: str | None) -> str:
        mode = (raw or "").strip().lower()
        if mode in {"stdio", "stdio-only", "stdio_only"}:
            return "stdio"
        return "sse"

    @classmethod
    def from_env(cls, argv: Sequence[str] | None = None) -> PageControlConfig:
        mode = cls.normalize_mode(os.environ.get("PAGE_CONTROL_MODE"))
        if argv is not None and "--stdio-only" in argv:
            mode = "stdio"
        return cls(
            mode=mode,
            ws_host=(os.environ.get("PAGE_CONTROL_WS_HOST") or "127.0.0.1").strip() or "127.0.0.1",
            ws_port=_env_int("PAGE_CONTROL_WS_PORT", 3001),
            http_host=(os.environ.get("PAGE_CONTROL_HTTP_HOST") or "127.0.0.1").strip() or "127.0.0.1",
            http_port=_env_int("PAGE_CONTROL_HTTP_PORT", 4000),
            request_timeout=_env_float("PAGE_CONTROL_REQUEST_TIMEOUT", DEFAULT_REQUEST_TIMEOUT),
            reap_interval=_env_float("PAGE_CONTROL_REAP_INTERVAL", DEFAULT_REAP_INTERVAL),
            heartbeat_interval=_env_float("PAGE_CONTROL_HEARTBEAT", 10.0),
            max_message_bytes=_env_int("PAGE_CONTROL_MAX_MESSAGE_BYTES", 2_000_000),
            debug=env_flag("DEBUG") or env_flag("MCP_TRACE"),
        )
