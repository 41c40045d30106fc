from __future__ import annotations

import io
import zipfile
from concurrent.futures import Executor, Future
from typing import Callable, Dict, List, Optional

import pytest

from secure_image_viewer.channel import ChannelManager
from secure_image_viewer.config import ViewerConfig

PNG_BYTES = b"\x89PNG\r\n\x1a\n" + b"\x00" * 24
JPEG_BYTES = b"\xff\xd8\xff\xe0" + b"\x10" * 24


class FakeTransport:
    """In-memory stand-in for a WebSocket connection."""

    def __init__(self) -> None:
        self.endpoint: Optional[str] = None
        self.listener = None
        self.sent: List[str] = []
        self.closed_with: Optional[tuple] = None

    def open(self, endpoint, listener) -> None:
        self.endpoint = endpoint
        self.listener = listener

    def send_text(self, text: str) -> None:
        self.sent.append(text)

    def close(self, code: int = 1000, reason: str = "") -> None:
        self.closed_with = (code, reason)

    def accept(self) -> None:
        self.listener.on_open()

    def push(self, frame) -> None:
        self.listener.on_frame(frame)

    def fail(self, message: str = "Connection refused") -> None:
        self.listener.on_error(message)

    def drop(self, code: int = 1006) -> None:
        self.listener.on_close(False, code, "")

    def finish(self, code: int = 1000) -> None:
        self.listener.on_close(True, code, "")


class TransportRecorder:
    def __init__(self) -> None:
        self.created: List[FakeTransport] = []

    def __call__(self) -> FakeTransport:
        transport = FakeTransport()
        self.created.append(transport)
        return transport

    @property
    def latest(self) -> FakeTransport:
        return self.created[-1]


class _Timer:
    def __init__(self, due: float, delay: float, callback: Callable[[], None]):
        self.due = due
        self.delay = delay
        self.callback = callback
        self.cancelled = False
        self.fired = False

    def cancel(self) -> None:
        self.cancelled = True


class ManualScheduler:
    """Scheduler driven by an explicit clock."""

    def __init__(self) -> None:
        self.now = 0.0
        self.timers: List[_Timer] = []

    def call_later(self, delay: float, callback: Callable[[], None]) -> _Timer:
        timer = _Timer(self.now + delay, delay, callback)
        self.timers.append(timer)
        return timer

    @property
    def pending(self) -> List[_Timer]:
        return [t for t in self.timers if not t.cancelled and not t.fired]

    def advance(self, seconds: float) -> None:
        target = self.now + seconds
        while True:
            due = [t for t in self.pending if t.due <= target]
            if not due:
                break
            timer = min(due, key=lambda t: t.due)
            self.now = timer.due
            timer.fired = True
            timer.callback()
        self.now = target


class InlineExecutor(Executor):
    """Runs jobs synchronously inside ``submit``."""

    def __init__(self) -> None:
        self.submitted = 0

    def submit(self, fn, /, *args, **kwargs) -> Future:
        self.submitted += 1
        future: Future = Future()
        try:
            result = fn(*args, **kwargs)
        except Exception as exc:
            future.set_exception(exc)
        else:
            future.set_result(result)
        return future


class DeferredExecutor(Executor):
    """Holds jobs until the test runs them."""

    def __init__(self) -> None:
        self.jobs: List[tuple] = []
        self.submitted = 0

    def submit(self, fn, /, *args, **kwargs) -> Future:
        self.submitted += 1
        future: Future = Future()
        self.jobs.append((future, fn, args, kwargs))
        return future

    def start(self) -> None:
        for future, *_ in self.jobs:
            future.set_running_or_notify_cancel()

    def run_all(self) -> None:
        jobs, self.jobs = self.jobs, []
        for future, fn, args, kwargs in jobs:
            if not future.running() and not future.set_running_or_notify_cancel():
                continue
            try:
                result = fn(*args, **kwargs)
            except Exception as exc:
                future.set_exception(exc)
            else:
                future.set_result(result)


def build_archive(
    entries: Dict[str, bytes], compression: int = zipfile.ZIP_DEFLATED
) -> bytes:
    buffer = io.BytesIO()
    with zipfile.ZipFile(buffer, "w", compression=compression) as archive:
        for name, data in entries.items():
            archive.writestr(name, data)
    return buffer.getvalue()


def drain(channel: ChannelManager) -> list:
    events = []
    while not channel.events.empty():
        events.append(channel.events.get_nowait())
    return events


@pytest.fixture()
def config() -> ViewerConfig:
    return ViewerConfig()


@pytest.fixture()
def transports() -> TransportRecorder:
    return TransportRecorder()


@pytest.fixture()
def scheduler() -> ManualScheduler:
    return ManualScheduler()


@pytest.fixture()
def channel(transports, scheduler, config) -> ChannelManager:
    return ChannelManager(transports, scheduler, config)


@pytest.fixture()
def make_archive():
    return build_archive


@pytest.fixture()
def drain_events():
    return drain


@pytest.fixture()
def png_bytes() -> bytes:
    return PNG_BYTES


@pytest.fixture()
def jpeg_bytes() -> bytes:
    return JPEG_BYTES


@pytest.fixture()
def inline_executor() -> InlineExecutor:
    return InlineExecutor()


@pytest.fixture()
def deferred_executor() -> DeferredExecutor:
    return DeferredExecutor()
