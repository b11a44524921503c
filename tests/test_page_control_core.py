from __future__ import annotations

import pytest

from mcp_servers.page_control.correlation import CorrelationTable, PendingRequest
from mcp_servers.page_control.errors import DuplicateRequestId, PageNotConnected, format_page_list
from mcp_servers.page_control.registry import PageConnection, PageRegistry


def _record(request_id: int, created_at: float = 0.0, settled: list | None = None) -> PendingRequest:
    sink = settled if settled is not None else []
    return PendingRequest(
        request_id=request_id,
        method="query_page",
        page_id="p1",
        created_at=created_at,
        resolve=lambda value: sink.append(("ok", value)),
        reject=lambda exc: sink.append(("err", exc)),
    )


def test_table_take_is_exactly_once() -> None:
    table = CorrelationTable()
    rec = _record(1)
    table.put(1, rec)
    assert 1 in table and len(table) == 1

    assert table.take(1) is rec
    assert table.take(1) is None
    assert len(table) == 0


def test_table_rejects_duplicate_ids() -> None:
    table = CorrelationTable()
    table.put(7, _record(7))
    with pytest.raises(DuplicateRequestId):
        table.put(7, _record(7))
    assert len(table) == 1


def test_scan_expired_is_strict_and_does_not_remove() -> None:
    table = CorrelationTable()
    table.put(1, _record(1, created_at=100.0))
    table.put(2, _record(2, created_at=110.0))

    assert table.scan_expired(130.0, 30.0) == []
    expired = table.scan_expired(130.5, 30.0)
    assert [rid for rid, _ in expired] == [1]
    assert len(table) == 2


def test_drain_empties_table() -> None:
    table = CorrelationTable()
    for rid in (1, 2, 3):
        table.put(rid, _record(rid))
    assert sorted(r.request_id for r in table.drain()) == [1, 2, 3]
    assert len(table) == 0
    assert table.ids() == []


def test_registry_register_get_list(page_socket) -> None:
    registry = PageRegistry()
    ws = page_socket()
    registry.register("p1", PageConnection(page_id="p1", transport=ws, url="https://example.test"))

    conn = registry.get("p1")
    assert conn is not None and conn.transport is ws
    assert registry.list() == ["p1"]
    assert conn.describe()["url"] == "https://example.test"
    assert registry.get("missing") is None


def test_registry_prunes_closed_sockets_lazily(page_socket) -> None:
    registry = PageRegistry()
    a, b = page_socket(), page_socket()
    registry.register("a", PageConnection(page_id="a", transport=a))
    registry.register("b", PageConnection(page_id="b", transport=b))

    a.close()
    # Still stored until something looks at it.
    assert "a" in registry
    assert [c.page_id for c in registry.connections()] == ["b"]
    assert registry.list() == ["b"]
    assert "a" not in registry

    b.close()
    assert registry.get("b") is None
    assert len(registry) == 0


def test_registry_reregister_replaces_and_stale_close_keeps_new(page_socket) -> None:
    registry = PageRegistry()
    old, new = page_socket(), page_socket()
    registry.register("p1", PageConnection(page_id="p1", transport=old))
    registry.register("p1", PageConnection(page_id="p1", transport=new))

    assert registry.unregister("p1", old) is False
    assert registry.get("p1").transport is new
    assert registry.unregister("p1", new) is True
    assert registry.unregister("p1") is False


def test_not_connected_message_lists_pages() -> None:
    assert format_page_list([]) == "none"
    exc = PageNotConnected("ghost", ["p1", "p2"])
    assert str(exc) == 'Page "ghost" is not connected. Currently connected pages: p1, p2'
    assert "none" in str(PageNotConnected("ghost"))
