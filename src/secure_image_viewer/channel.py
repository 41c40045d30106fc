"""Duplex channel lifecycle: connect, time out, reconnect, dispatch frames.

The manager is independent of any networking toolkit.  It drives a
:class:`Transport` created per connection and arms timers through a
:class:`Scheduler`; :mod:`secure_image_viewer.qt` provides both on top of
``QWebSocket`` and ``QTimer``.  Everything the manager observes is published on
one event queue that a single consumer drains.
"""
from __future__ import annotations

import json
import logging
import queue
from concurrent.futures import Future
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Mapping, Optional, Protocol, Union

from .config import ViewerConfig
from .errors import (
    ChannelClosedUnclean,
    ChannelError,
    ChannelTimeout,
    ChannelTransportError,
)
from .messages import EncryptedPayload, ErrorNote, StatusNote, classify_frame

logger = logging.getLogger(__name__)

NORMAL_CLOSURE = 1000
GOING_AWAY = 1001
ABNORMAL_CLOSURE = 1006


def is_clean_close(code: int, errored: bool = False) -> bool:
    """Return ``True`` when the close handshake completed.

    Any close code the peer actually sent counts, including ``1001`` (going
    away) and application codes.  ``1006`` means no close frame was received,
    and a transport error means the socket dropped.
    """

    return not errored and code != ABNORMAL_CLOSURE


class ConnectionStatus(str, Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    ERROR = "error"


@dataclass(frozen=True, slots=True)
class StatusChanged:
    status: ConnectionStatus


@dataclass(frozen=True, slots=True)
class ChannelFailed:
    """A connection attempt failed; the pending connect future carries the same error."""

    error: ChannelError


@dataclass(frozen=True, slots=True)
class ChannelClosed:
    """The channel is down and no automatic reconnect will follow."""

    clean: bool
    error: Optional[ChannelError] = None


ChannelEvent = Union[
    StatusChanged, ChannelFailed, ChannelClosed, EncryptedPayload, StatusNote, ErrorNote
]


class TransportListener(Protocol):
    def on_open(self) -> None:
        ...

    def on_frame(self, frame: Union[bytes, str]) -> None:
        ...

    def on_error(self, message: str) -> None:
        ...

    def on_close(self, clean: bool, code: int, reason: str) -> None:
        ...


class Transport(Protocol):
    """A single duplex connection attempt."""

    def open(self, endpoint: str, listener: TransportListener) -> None:
        ...

    def send_text(self, text: str) -> None:
        ...

    def close(self, code: int = NORMAL_CLOSURE, reason: str = "") -> None:
        ...


class TimerHandle(Protocol):
    def cancel(self) -> None:
        ...


class Scheduler(Protocol):
    def call_later(self, delay: float, callback: Callable[[], None]) -> TimerHandle:
        ...


TransportFactory = Callable[[], Transport]


class _Listener:
    """Routes callbacks of one transport back to the manager."""

    __slots__ = ("_manager", "_transport")

    def __init__(self, manager: "ChannelManager", transport: Transport):
        self._manager = manager
        self._transport = transport

    def on_open(self) -> None:
        self._manager._handle_open(self._transport)

    def on_frame(self, frame: Union[bytes, str]) -> None:
        self._manager._handle_frame(self._transport, frame)

    def on_error(self, message: str) -> None:
        self._manager._handle_error(self._transport, message)

    def on_close(self, clean: bool, code: int, reason: str) -> None:
        self._manager._handle_close(self._transport, clean, code, reason)


class ChannelManager:
    """Own at most one duplex connection and report on it through :attr:`events`."""

    def __init__(
        self,
        transport_factory: TransportFactory,
        scheduler: Scheduler,
        config: ViewerConfig | None = None,
    ):
        self._transport_factory = transport_factory
        self._scheduler = scheduler
        self._config = config or ViewerConfig()
        self._events: "queue.Queue[ChannelEvent]" = queue.Queue()

        self._status = ConnectionStatus.DISCONNECTED
        self._endpoint: Optional[str] = None
        self._transport: Optional[Transport] = None
        self._pending: Optional[Future] = None
        self._timeout_handle: Optional[TimerHandle] = None
        self._reconnect_handle: Optional[TimerHandle] = None
        self._reconnect_attempts = 0

    # -- observation -------------------------------------------------------

    @property
    def status(self) -> ConnectionStatus:
        return self._status

    @property
    def endpoint(self) -> Optional[str]:
        return self._endpoint

    @property
    def events(self) -> "queue.Queue[ChannelEvent]":
        return self._events

    @property
    def reconnect_attempts(self) -> int:
        return self._reconnect_attempts

    @property
    def reconnect_pending(self) -> bool:
        return self._reconnect_handle is not None

    # -- commands ----------------------------------------------------------

    def connect(self, endpoint: str) -> Future:
        """Start connecting to ``endpoint``.

        The returned future resolves once the channel is open, or fails with a
        :class:`~secure_image_viewer.errors.ChannelError`.  An existing
        connection is closed first.
        """

        self._cancel_reconnect()
        self._reconnect_attempts = 0
        self._endpoint = endpoint
        return self._open()

    def disconnect(self) -> None:
        """Close the channel cleanly and stop any reconnect.  Safe to repeat."""

        self._cancel_reconnect()
        self._cancel_timeout()
        self._reconnect_attempts = 0

        transport, self._transport = self._transport, None
        if transport is not None:
            logger.info("Disconnecting from %s", self._endpoint)
            transport.close(NORMAL_CLOSURE, "Client disconnect")

        if self._pending is not None and not self._pending.done():
            self._pending.cancel()
        self._pending = None
        self._endpoint = None
        self._set_status(ConnectionStatus.DISCONNECTED)

    def send(self, message: Mapping[str, Any]) -> bool:
        """Send ``message`` as a JSON text frame.  Returns ``False`` if not sent."""

        if self._status is not ConnectionStatus.CONNECTED or self._transport is None:
            return False
        try:
            self._transport.send_text(json.dumps(message))
        except (TypeError, ValueError, OSError) as exc:
            logger.warning("Failed to send message: %s", exc)
            return False
        return True

    def close(self) -> None:
        self.disconnect()

    def __enter__(self) -> "ChannelManager":
        return self

    def __exit__(self, *_exc_info: object) -> None:
        self.close()

    # -- internals ---------------------------------------------------------

    def _set_status(self, status: ConnectionStatus) -> None:
        if status is self._status:
            return
        self._status = status
        self._events.put(StatusChanged(status))

    def _open(self, retrying: bool = False) -> Future:
        previous, self._transport = self._transport, None
        if previous is not None:
            previous.close(NORMAL_CLOSURE, "Superseded by a new connection")
        if self._pending is not None and not self._pending.done():
            self._pending.cancel()
        self._cancel_timeout()

        future: Future = Future()
        self._pending = future
        self._set_status(ConnectionStatus.CONNECTING)
        logger.info("Connecting to %s", self._endpoint)

        transport = self._transport_factory()
        self._transport = transport
        self._timeout_handle = self._scheduler.call_later(
            self._config.connect_timeout_s, lambda: self._handle_timeout(transport)
        )
        try:
            transport.open(self._endpoint or "", _Listener(self, transport))
        except (OSError, ValueError) as exc:
            logger.error("Failed to open channel to %s: %s", self._endpoint, exc)
            self._cancel_timeout()
            self._transport = None
            self._set_status(ConnectionStatus.ERROR)
            error = ChannelTransportError(str(exc) or "Connection error")
            if retrying:
                self._handle_unclean(error)
            else:
                self._fail_pending(error)
        return future

    def _fail_pending(self, error: ChannelError) -> None:
        pending, self._pending = self._pending, None
        if pending is None or pending.done():
            return
        pending.set_exception(error)
        self._events.put(ChannelFailed(error))

    def _cancel_timeout(self) -> None:
        handle, self._timeout_handle = self._timeout_handle, None
        if handle is not None:
            handle.cancel()

    def _cancel_reconnect(self) -> None:
        handle, self._reconnect_handle = self._reconnect_handle, None
        if handle is not None:
            handle.cancel()

    def _handle_open(self, transport: Transport) -> None:
        if transport is not self._transport:
            return
        self._cancel_timeout()
        self._reconnect_attempts = 0
        self._set_status(ConnectionStatus.CONNECTED)
        logger.info("Connected to %s", self._endpoint)

        pending, self._pending = self._pending, None
        if pending is not None and not pending.done():
            pending.set_result(None)

    def _handle_frame(self, transport: Transport, frame: Union[bytes, str]) -> None:
        if transport is not self._transport:
            return
        self._events.put(classify_frame(frame))

    def _handle_error(self, transport: Transport, message: str) -> None:
        if transport is not self._transport:
            return
        logger.warning("Channel error on %s: %s", self._endpoint, message)
        self._set_status(ConnectionStatus.ERROR)
        self._fail_pending(ChannelTransportError(message or "Connection error"))

    def _handle_close(
        self, transport: Transport, clean: bool, code: int, reason: str
    ) -> None:
        if transport is not self._transport:
            return
        self._transport = None
        self._cancel_timeout()
        logger.info("Channel closed: code=%s clean=%s reason=%r", code, clean, reason)

        if clean:
            self._fail_pending(ChannelTransportError(f"Connection closed ({code})"))
            self._set_status(ConnectionStatus.DISCONNECTED)
            self._events.put(ChannelClosed(clean=True))
            return
        self._handle_unclean(ChannelClosedUnclean(f"Connection lost ({code})"))

    def _handle_timeout(self, transport: Transport) -> None:
        if transport is not self._transport:
            return
        self._timeout_handle = None
        self._transport = None
        logger.warning(
            "No connection to %s after %.1fs", self._endpoint, self._config.connect_timeout_s
        )
        transport.close(GOING_AWAY, "Connection timeout")

        error = ChannelTimeout("Connection timeout")
        self._set_status(ConnectionStatus.ERROR)
        self._handle_unclean(error)

    def _handle_unclean(self, error: ChannelError) -> None:
        self._fail_pending(error)
        self._set_status(ConnectionStatus.DISCONNECTED)

        if self._reconnect_attempts >= self._config.max_reconnect_attempts:
            logger.warning(
                "Giving up on %s after %d reconnect attempts",
                self._endpoint,
                self._reconnect_attempts,
            )
            self._events.put(ChannelClosed(clean=False, error=error))
            return

        self._reconnect_attempts += 1
        delay = self._config.reconnect_delay(self._reconnect_attempts)
        logger.info(
            "Reconnecting in %.1fs (attempt %d/%d)",
            delay,
            self._reconnect_attempts,
            self._config.max_reconnect_attempts,
        )
        self._reconnect_handle = self._scheduler.call_later(delay, self._reconnect)

    def _reconnect(self) -> None:
        self._reconnect_handle = None
        if self._endpoint is None:
            return
        self._open(retrying=True)


__all__ = [
    "NORMAL_CLOSURE",
    "GOING_AWAY",
    "ABNORMAL_CLOSURE",
    "is_clean_close",
    "ConnectionStatus",
    "StatusChanged",
    "ChannelFailed",
    "ChannelClosed",
    "ChannelEvent",
    "TransportListener",
    "Transport",
    "TimerHandle",
    "Scheduler",
    "TransportFactory",
    "ChannelManager",
]
