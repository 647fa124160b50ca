"""WebSocketTransport — Transport implementation over the ``websockets`` library.

Presents the service token as an ``Authorization: Bearer`` header at
handshake time and relies on websockets' keepalive pings to detect dead
peers. A handshake refused with HTTP 401/403 is reported as a
policy-violation close so the channel treats it as a rejected token.
"""

from __future__ import annotations

import logging

from websockets.asyncio.client import ClientConnection, connect
from websockets.exceptions import ConnectionClosed, InvalidStatus
from websockets.protocol import State

from meterlink.constants import PING_TIMEOUT_SECS, POLICY_VIOLATION_CLOSE_CODE
from meterlink.transport import TransportClosed

logger = logging.getLogger(__name__)

_AUTH_REJECTED_STATUSES = frozenset({401, 403})


class WebSocketTransport:
    """Adapter from a websockets ClientConnection to the Transport protocol."""

    def __init__(self, connection: ClientConnection) -> None:
        self._connection = connection

    @property
    def is_open(self) -> bool:
        return self._connection.state is State.OPEN

    async def send(self, data: str) -> None:
        try:
            await self._connection.send(data)
        except ConnectionClosed as exc:
            raise TransportClosed(*_close_info(exc)) from exc

    async def recv(self) -> str | bytes:
        try:
            return await self._connection.recv()
        except ConnectionClosed as exc:
            raise TransportClosed(*_close_info(exc)) from exc

    async def close(self) -> None:
        await self._connection.close()


def _close_info(exc: ConnectionClosed) -> tuple[int | None, str]:
    if exc.rcvd is None:
        return None, ""
    return exc.rcvd.code, exc.rcvd.reason


async def connect_websocket(url: str, headers: dict[str, str]) -> WebSocketTransport:
    """Open a websocket to ``url`` and wrap it as a Transport."""
    try:
        connection = await connect(
            url,
            additional_headers=headers,
            ping_timeout=PING_TIMEOUT_SECS,
        )
    except InvalidStatus as exc:
        status = exc.response.status_code
        if status in _AUTH_REJECTED_STATUSES:
            raise TransportClosed(
                POLICY_VIOLATION_CLOSE_CODE, f"handshake rejected with HTTP {status}"
            ) from exc
        raise
    logger.debug("Websocket handshake with %s complete.", url)
    return WebSocketTransport(connection)
