"""Shared fakes: an in-memory Transport and a factory that records connects."""

from __future__ import annotations

import asyncio
import json
from typing import Any

import pytest

from meterlink.transport import TransportClosed


class FakeTransport:
    """Transport whose inbound frames are fed by the test."""

    def __init__(self, is_open: bool = True) -> None:
        self.is_open = is_open
        self.sent: list[str] = []
        self.closed = False
        self.fail_send: Exception | None = None
        self.send_gate: asyncio.Event | None = None
        self._inbound: asyncio.Queue[Any] = asyncio.Queue()

    async def send(self, data: str) -> None:
        if self.send_gate is not None:
            await self.send_gate.wait()
        if self.fail_send is not None:
            raise self.fail_send
        self.sent.append(data)

    async def recv(self) -> str | bytes:
        item = await self._inbound.get()
        if isinstance(item, BaseException):
            raise item
        return item

    async def close(self) -> None:
        self.closed = True
        self.is_open = False
        self._inbound.put_nowait(TransportClosed(1000, "normal closure"))

    # -- test controls --------------------------------------------------------

    def push(self, frame: str | bytes) -> None:
        self._inbound.put_nowait(frame)

    def push_json(self, message: Any) -> None:
        self.push(json.dumps(message))

    def drop(self, code: int | None) -> None:
        self._inbound.put_nowait(TransportClosed(code))

    def fail(self, error: Exception) -> None:
        self._inbound.put_nowait(error)

    def sent_messages(self) -> list[dict[str, Any]]:
        return [json.loads(s) for s in self.sent]


class FakeServer:
    """TransportFactory that hands out FakeTransports and records each connect."""

    def __init__(self) -> None:
        self.transports: list[FakeTransport] = []
        self.connects: list[tuple[str, dict[str, str]]] = []
        self.connect_errors: list[Exception] = []
        self.next_is_open = True

    async def __call__(self, url: str, headers: dict[str, str]) -> FakeTransport:
        self.connects.append((url, headers))
        if self.connect_errors:
            raise self.connect_errors.pop(0)
        transport = FakeTransport(is_open=self.next_is_open)
        self.transports.append(transport)
        return transport

    @property
    def current(self) -> FakeTransport:
        return self.transports[-1]


@pytest.fixture
def server() -> FakeServer:
    return FakeServer()
