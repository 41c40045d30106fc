"""PyQt5 runtime for the delivery pipeline.

``QWebSocket`` carries the duplex channel, ``QTimer`` arms the connection
timeout and the reconnect backoff, and payload jobs run on a ``QThread`` so the
GUI thread keeps servicing the socket while large archives are processed.
"""
from __future__ import annotations

import logging
from concurrent.futures import Executor, Future
from typing import Any, Callable, Dict, Optional, Set

from PyQt5.QtCore import QObject, QThread, QTimer, QUrl, pyqtSignal
from PyQt5.QtWebSockets import QWebSocket, QWebSocketProtocol

from .channel import NORMAL_CLOSURE, ChannelManager, TransportListener, is_clean_close
from .config import ViewerConfig
from .session import ViewerSession

logger = logging.getLogger(__name__)


class QtWebSocketTransport:
    """One ``QWebSocket`` connection attempt."""

    def __init__(self) -> None:
        self._socket = QWebSocket("", QWebSocketProtocol.VersionLatest)
        self._listener: Optional[TransportListener] = None
        self._errored = False

    def open(self, endpoint: str, listener: TransportListener) -> None:
        url = QUrl(endpoint)
        if not url.isValid():
            raise ValueError(f"Invalid channel URL: {endpoint}")

        self._listener = listener
        socket = self._socket
        socket.connected.connect(listener.on_open)
        socket.binaryMessageReceived.connect(self._on_binary)
        socket.textMessageReceived.connect(listener.on_frame)
        socket.error.connect(self._on_error)
        socket.disconnected.connect(self._on_disconnected)
        socket.open(url)

    def send_text(self, text: str) -> None:
        self._socket.sendTextMessage(text)

    def close(self, code: int = NORMAL_CLOSURE, reason: str = "") -> None:
        self._socket.close(QWebSocketProtocol.CloseCode(code), reason)
        self._socket.deleteLater()

    def _on_binary(self, data) -> None:
        if self._listener is not None:
            self._listener.on_frame(bytes(data))

    def _on_error(self, _code) -> None:
        self._errored = True
        if self._listener is not None:
            self._listener.on_error(self._socket.errorString())

    def _on_disconnected(self) -> None:
        if self._listener is None:
            return
        code = int(self._socket.closeCode())
        clean = is_clean_close(code, self._errored)
        self._listener.on_close(clean, code, self._socket.closeReason())
        self._socket.deleteLater()


class _QtTimerHandle:  # pragma: no cover - requires Qt event loop
    def __init__(
        self,
        scheduler: "QtScheduler",
        delay: float,
        callback: Callable[[], None],
    ):
        self._scheduler = scheduler
        self._callback = callback
        self._timer: Optional[QTimer] = QTimer(scheduler.parent)
        self._timer.setSingleShot(True)
        self._timer.timeout.connect(self._fire)
        self._timer.start(max(0, int(delay * 1000)))

    def _fire(self) -> None:
        self._release()
        self._callback()

    def cancel(self) -> None:
        timer = self._timer
        self._release()
        if timer is not None:
            timer.stop()

    def _release(self) -> None:
        timer, self._timer = self._timer, None
        if timer is not None:
            timer.deleteLater()
        self._scheduler._handles.discard(self)


class QtScheduler:  # pragma: no cover - requires Qt event loop
    """Single-shot ``QTimer`` per delayed call."""

    def __init__(self, parent: QObject | None = None):
        self.parent = parent
        self._handles: Set[_QtTimerHandle] = set()

    def call_later(self, delay: float, callback: Callable[[], None]) -> _QtTimerHandle:
        handle = _QtTimerHandle(self, delay, callback)
        self._handles.add(handle)
        return handle


class _PayloadWorker(QObject):  # pragma: no cover - requires Qt event loop
    finished = pyqtSignal()

    def __init__(self, future: Future, fn: Callable[..., Any], args: tuple, kwargs: dict):
        super().__init__()
        self._future = future
        self._fn = fn
        self._args = args
        self._kwargs = kwargs

    def run(self) -> None:
        try:
            if not self._future.set_running_or_notify_cancel():
                return
            try:
                result = self._fn(*self._args, **self._kwargs)
            except Exception as exc:
                self._future.set_exception(exc)
            else:
                self._future.set_result(result)
        finally:
            self.finished.emit()


class QThreadExecutor(Executor):  # pragma: no cover - requires Qt event loop
    """Run each submitted callable on its own ``QThread``."""

    def __init__(self) -> None:
        self._jobs: Dict[_PayloadWorker, QThread] = {}

    def submit(self, fn, /, *args, **kwargs) -> Future:
        future: Future = Future()
        thread = QThread()
        worker = _PayloadWorker(future, fn, args, kwargs)
        worker.moveToThread(thread)

        thread.started.connect(worker.run)
        worker.finished.connect(thread.quit)
        thread.finished.connect(lambda: self._release(worker))
        self._jobs[worker] = thread
        thread.start()
        return future

    def _release(self, worker: _PayloadWorker) -> None:
        thread = self._jobs.pop(worker, None)
        worker.deleteLater()
        if thread is not None:
            thread.deleteLater()

    def shutdown(self, wait: bool = True, *, cancel_futures: bool = False) -> None:
        for worker, thread in list(self._jobs.items()):
            if cancel_futures:
                worker._future.cancel()
            thread.quit()
            if wait and not thread.wait(2000):
                logger.warning("Payload worker did not stop in time; terminating")
                thread.terminate()
                thread.wait()


class QtViewerSession(QObject):  # pragma: no cover - requires Qt event loop
    """A :class:`ViewerSession` wired to Qt, re-publishing its state as signals."""

    stateChanged = pyqtSignal(str)
    statusChanged = pyqtSignal(str)
    imagesReady = pyqtSignal(object)
    notice = pyqtSignal(object)

    def __init__(self, config: ViewerConfig | None = None, parent: QObject | None = None):
        super().__init__(parent)
        self._config = config or ViewerConfig()
        self._executor = QThreadExecutor()
        self._channel = ChannelManager(
            QtWebSocketTransport, QtScheduler(self), self._config
        )
        self._session = ViewerSession(self._channel, self._config, executor=self._executor)

        self._last_state = self._session.state
        self._last_status = self._session.connection_status
        self._last_images = self._session.images

        self._pump_timer = QTimer(self)
        self._pump_timer.timeout.connect(self.pump)
        self._pump_timer.start(self._config.event_poll_interval_ms)

    @property
    def session(self) -> ViewerSession:
        return self._session

    def begin_scan(self) -> None:
        self._session.begin_scan()
        self.pump()

    def submit_scan(self, raw: str) -> bool:
        accepted = self._session.submit_scan(raw)
        self.pump()
        return accepted

    def reset(self) -> None:
        self._session.reset()
        self.pump()

    def pump(self) -> None:
        self._session.process_events()

        status = self._session.connection_status
        if status is not self._last_status:
            self._last_status = status
            self.statusChanged.emit(status.value)

        images = self._session.images
        if images is not self._last_images:
            self._last_images = images
            self.imagesReady.emit(images)

        state = self._session.state
        if state is not self._last_state:
            self._last_state = state
            self.stateChanged.emit(state.value)

        for item in self._session.drain_notices():
            self.notice.emit(item)

    def close(self) -> None:
        self._pump_timer.stop()
        self._session.close()
        self._executor.shutdown(wait=True, cancel_futures=True)
        self.pump()


__all__ = [
    "QtWebSocketTransport",
    "QtScheduler",
    "QThreadExecutor",
    "QtViewerSession",
]
