"""Abstract message transport for the billing server connection.

Defines the Transport Protocol that ConnectionChannel depends on.
Concrete implementations (e.g., WebSocketTransport) live in
``meterlink.transports``.
"""

from __future__ import annotations

from collections.abc import Awaitable, Callable
from typing import Protocol, runtime_checkable


class TransportClosed(Exception):
    """The peer (or the local side) closed the connection."""

    def __init__(self, code: int | None = None, reason: str = "") -> None:
        super().__init__(f"connection closed (code={code}, reason={reason!r})")
        self.code = code
        self.reason = reason


@runtime_checkable
class Transport(Protocol):
    """One open bidirectional message connection.

    ``recv()`` raises TransportClosed when the connection ends; any other
    exception is a transport error.
    """

    @property
    def is_open(self) -> bool: ...

    async def send(self, data: str) -> None: ...

    async def recv(self) -> str | bytes: ...

    async def close(self) -> None: ...


# (url, headers) -> open Transport
TransportFactory = Callable[[str, dict[str, str]], Awaitable[Transport]]
