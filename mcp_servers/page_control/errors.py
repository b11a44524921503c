"""Error taxonomy for the page control relay."""

from __future__ import annotations

from collections.abc import Iterable


def format_page_list(pages: Iterable[str]) -> str:
    items = [str(p) for p in pages]
    return ", ".join(items) if items else "none"


class PageControlError(Exception):
    pass


class PageNotConnected(PageControlError):
    """Target page id is not registered (or its socket is no longer open)."""

    def __init__(self, page_id: str, connected: Iterable[str] = ()) -> None:
        self.page_id = page_id
        self.connected = list(connected)
        super().__init__(
            f'Page "{page_id}" is not connected. Currently connected pages: {format_page_list(self.connected)}'
        )


class SendFailed(PageControlError):
    def __init__(self, page_id: str, reason: str) -> None:
        self.page_id = page_id
        self.reason = reason
        super().__init__(f'Failed to send command to page "{page_id}": {reason}')


class DuplicateRequestId(PageControlError):
    def __init__(self, request_id: int) -> None:
        self.request_id = request_id
        super().__init__(f"Request id {request_id} is already pending")


class RemoteError(PageControlError):
    """The page replied with an ``error`` field; the message is kept verbatim."""


class RequestTimeoutError(PageControlError, TimeoutError):
    def __init__(self, timeout_ms: int) -> None:
        self.timeout_ms = int(timeout_ms)
        super().__init__(f"Request timed out after {self.timeout_ms}ms")


class InvalidArguments(PageControlError):
    pass


class GatewayNotRunning(PageControlError):
    pass


__all__ = [
    "DuplicateRequestId",
    "GatewayNotRunning",
    "InvalidArguments",
    "PageControlError",
    "PageNotConnected",
    "RemoteError",
    "RequestTimeoutError",
    "SendFailed",
    "format_page_list",
]
