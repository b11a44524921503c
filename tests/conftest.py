from __future__ import annotations

import json
from typing import Any

import pytest
from websockets.protocol import State


class FakePageSocket:
    """Records what the relay sends to a page; ``fail=True`` makes every send raise."""

    def __init__(self, *, fail: bool = False) -> None:
        self.state = State.OPEN
        self.fail = fail
        self.sent: list[dict[str, Any]] = []

    async def send(self, raw: str) -> None:
        if self.fail:
            raise ConnectionError("socket is closed")
        self.sent.append(json.loads(raw))

    def close(self) -> None:
        self.state = State.CLOSED

    def commands(self) -> list[dict[str, Any]]:
        return [m for m in self.sent if "command" in m]

    def notices(self) -> list[str]:
        return [m["message"] for m in self.sent if m.get("type") == "activity"]


class FakeClock:
    def __init__(self, start: float = 1000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def page_socket():
    return FakePageSocket


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()
