"""Redaction utilities for logging.

Snippet bodies never reach the log: ``code`` is replaced by its length. Other
long strings are truncated.
"""

from __future__ import annotations

from typing import Any

_MAX_LOG_STR = 200
_SUMMARIZED_KEYS = {"code"}


def _redacted_summary(value: Any) -> str:
    if isinstance(value, str):
        return f"<omitted str len={len(value)}>"
    return "<omitted>"


def _truncate(value: str, limit: int = _MAX_LOG_STR) -> str:
    if len(value) <= limit:
        return value
    return value[: max(0, limit - 12)] + f"...(+{len(value) - limit + 12})"


def _redact_any(value: Any, *, key: str | None) -> Any:
    if key in _SUMMARIZED_KEYS:
        return _redacted_summary(value)
    if isinstance(value, dict):
        return {k: _redact_any(v, key=str(k)) for k, v in value.items()}
    if isinstance(value, list):
        return [_redact_any(v, key=None) for v in value]
    if isinstance(value, str):
        return _truncate(value)
    return value


def redact_tool_arguments(tool: str, args: dict[str, Any]) -> dict[str, Any]:
    """Redact tool arguments for safe logging."""
    if not isinstance(args, dict):
        return {}
    return _redact_any(args, key=None)


def redact_jsonrpc_for_log(payload: dict[str, Any]) -> dict[str, Any]:
    """Redact a JSON-RPC message before it is traced."""
    if not isinstance(payload, dict):
        return {}
    msg = dict(payload)
    if msg.get("method") == "tools/call" and isinstance(msg.get("params"), dict):
        params = dict(msg["params"])
        args = params.get("arguments")
        if isinstance(args, dict):
            params["arguments"] = redact_tool_arguments(str(params.get("name") or ""), args)
        msg["params"] = params
    result = msg.get("result")
    if isinstance(result, dict) and isinstance(result.get("content"), list):
        content = []
        for item in result["content"]:
            if isinstance(item, dict) and isinstance(item.get("text"), str):
                item = {**item, "text": _truncate(item["text"])}
            content.append(item)
        msg["result"] = {**result, "content": content}
    return msg
