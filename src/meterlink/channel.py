"""Persistent, self-healing connection to the billing server.

The channel owns one Transport at a time and a reader task that pumps
inbound frames to ``on_message``. Status flips to ``connected`` on the
first inbound frame (not on the raw open) and back to ``disconnected``
on close or error. Reconnects use a fixed delay and are cancelled by an
explicit ``close()``.
"""

from __future__ import annotations

import asyncio
import contextlib
import json
import logging
from collections.abc import Callable
from typing import Any

from meterlink.config import ConfigurationError
from meterlink.constants import (
    POLICY_VIOLATION_CLOSE_CODE,
    RECONNECT_DELAY_SECS,
    ChannelStatus,
)
from meterlink.transport import Transport, TransportClosed, TransportFactory

logger = logging.getLogger(__name__)

MessageHandler = Callable[[dict[str, Any]], None]
StatusChangeHandler = Callable[[ChannelStatus, ChannelStatus], None]


# ---------------------------------------------------------------------------
# Exception hierarchy
# ---------------------------------------------------------------------------


class ChannelError(Exception):
    """Base exception for billing channel operations."""


class ChannelNotConnectedError(ChannelError):
    """send() was called while the channel is disconnected."""


class ChannelSendError(ChannelError):
    """The transport failed while delivering a message."""


class ChannelStateError(ChannelError):
    """The transport is not open right after connecting (local defect, not retried)."""


# ---------------------------------------------------------------------------
# Channel
# ---------------------------------------------------------------------------


class ConnectionChannel:
    """Connection lifecycle state machine for the billing server.

    - ``connect()`` enables auto-reconnect and starts the reader task.
    - A close with code 1008 (token rejected) disables auto-reconnect.
    - Any other close reconnects after ``reconnect_delay`` if enabled.
    - A transport error always schedules a reconnect.
    - ``close()`` disables auto-reconnect and cancels a pending reconnect.
    """

    def __init__(
        self,
        url: str | None,
        service_token: str | None,
        *,
        on_message: MessageHandler | None = None,
        on_status_change: StatusChangeHandler | None = None,
        transport_factory: TransportFactory | None = None,
        reconnect_delay: float = RECONNECT_DELAY_SECS,
    ) -> None:
        if not url:
            raise ConfigurationError("url is required")
        if not service_token:
            raise ConfigurationError("service_token is required")
        if transport_factory is None:
            from meterlink.transports.websocket import connect_websocket

            transport_factory = connect_websocket
        self._url = url
        self._service_token = service_token
        self._on_message = on_message
        self._on_status_change = on_status_change
        self._transport_factory = transport_factory
        self._reconnect_delay = reconnect_delay
        self.status = ChannelStatus.DISCONNECTED
        self.auto_reconnect = False
        self._transport: Transport | None = None
        self._reader_task: asyncio.Task[None] | None = None
        self._reconnect_task: asyncio.Task[None] | None = None
        self._total_reconnects = 0
        self.fatal_error: BaseException | None = None

    @property
    def connected(self) -> bool:
        return self.status is ChannelStatus.CONNECTED

    @property
    def reconnect_pending(self) -> bool:
        return self._reconnect_task is not None and not self._reconnect_task.done()

    # -- lifecycle ------------------------------------------------------------

    async def connect(self) -> None:
        """Open the transport in the background. Status changes on first frame."""
        self.auto_reconnect = True
        if self._reader_task is not None and not self._reader_task.done():
            return
        self._reader_task = asyncio.create_task(self._run())
        self._reader_task.add_done_callback(self._on_reader_done)

    async def close(self) -> None:
        """Close the connection for good. No automatic reconnect follows."""
        self.auto_reconnect = False
        if self._reconnect_task is not None:
            self._reconnect_task.cancel()
            self._reconnect_task = None

        transport, self._transport = self._transport, None
        if transport is not None:
            try:
                await transport.close()
            except Exception as exc:
                logger.debug("Ignoring error while closing billing transport: %s", exc)

        reader, self._reader_task = self._reader_task, None
        if reader is not None and not reader.done() and reader is not asyncio.current_task():
            reader.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await reader

        self._change_status(ChannelStatus.DISCONNECTED)

    # -- outbound -------------------------------------------------------------

    async def send(self, message: dict[str, Any]) -> None:
        """Serialize and deliver ``message``.

        Raises ChannelNotConnectedError when disconnected (callers check
        ``connected`` first) and ChannelSendError when the transport fails.
        """
        transport = self._transport
        if not self.connected or transport is None:
            raise ChannelNotConnectedError("billing channel is not connected")
        payload = json.dumps(message)
        try:
            await transport.send(payload)
        except Exception as exc:
            raise ChannelSendError(
                f"failed to send {message.get('type')!r} message: {exc}"
            ) from exc

    # -- reader loop ----------------------------------------------------------

    async def _run(self) -> None:
        headers = {"Authorization": f"Bearer {self._service_token}"}
        try:
            transport = await self._transport_factory(self._url, headers)
        except TransportClosed as exc:
            self._on_closed(exc.code)
            return
        except Exception as exc:
            await self._on_error(exc)
            return

        if not transport.is_open:
            self.auto_reconnect = False
            logger.error("Billing transport is not open after connecting to %s.", self._url)
            try:
                await transport.close()
            except Exception as exc:
                logger.debug("Ignoring error while closing billing transport: %s", exc)
            raise ChannelStateError("transport reported not open right after connect")
        self._transport = transport

        while True:
            try:
                frame = await transport.recv()
            except TransportClosed as exc:
                self._on_closed(exc.code)
                return
            except Exception as exc:
                await self._on_error(exc)
                return
            self._on_frame(frame)

    def _on_reader_done(self, task: asyncio.Task[None]) -> None:
        if task.cancelled():
            return
        error = task.exception()
        if error is not None:
            self.fatal_error = error

    def _on_frame(self, frame: str | bytes) -> None:
        self._change_status(ChannelStatus.CONNECTED)
        if isinstance(frame, (bytes, bytearray)):
            logger.warning(
                "Dropping binary billing frame (%d bytes); only JSON text is supported.",
                len(frame),
            )
            return
        try:
            message = json.loads(frame)
        except json.JSONDecodeError as exc:
            logger.warning("Dropping malformed billing frame: %s", exc)
            return
        if not isinstance(message, dict):
            logger.warning(
                "Dropping billing frame: expected a JSON object, got %s.",
                type(message).__name__,
            )
            return
        if self._on_message is None:
            return
        try:
            self._on_message(message)
        except Exception:
            logger.exception("Billing message handler failed for %r.", message.get("type"))

    def _on_closed(self, code: int | None) -> None:
        self._transport = None
        if code == POLICY_VIOLATION_CLOSE_CODE:
            logger.error(
                "Billing service token rejected by the server; not reconnecting."
            )
            self.auto_reconnect = False
        self._change_status(ChannelStatus.DISCONNECTED)
        if self.auto_reconnect:
            self._schedule_reconnect()

    async def _on_error(self, error: Exception) -> None:
        logger.warning("Billing connection error: %s", error)
        self._change_status(ChannelStatus.DISCONNECTED)
        self.auto_reconnect = False
        transport, self._transport = self._transport, None
        if transport is not None:
            try:
                await transport.close()
            except Exception as exc:
                logger.debug("Ignoring error while closing billing transport: %s", exc)
        self._schedule_reconnect()

    # -- reconnect ------------------------------------------------------------

    def _schedule_reconnect(self) -> None:
        if self.reconnect_pending:
            return
        logger.warning("Reconnecting to billing server in %.1fs.", self._reconnect_delay)
        self._reconnect_task = asyncio.create_task(self._reconnect_after_delay())

    async def _reconnect_after_delay(self) -> None:
        await asyncio.sleep(self._reconnect_delay)
        self._reconnect_task = None
        self._total_reconnects += 1
        await self.connect()

    # -- status ---------------------------------------------------------------

    def _change_status(self, new_status: ChannelStatus) -> None:
        prev_status = self.status
        if prev_status is new_status:
            return
        self.status = new_status
        if self._on_status_change is not None:
            self._on_status_change(new_status, prev_status)

    @property
    def total_reconnects(self) -> int:
        return self._total_reconnects
