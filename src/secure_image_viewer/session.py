"""Pipeline orchestration for one viewing session."""
from __future__ import annotations

import logging
import queue
from collections import deque
from concurrent.futures import Executor, Future, ThreadPoolExecutor
from typing import Deque, List, Optional, Tuple, Union

from .archive import EMPTY_IMAGE_SET, ImageSet, extract_images
from .channel import (
    ChannelClosed,
    ChannelEvent,
    ChannelFailed,
    ChannelManager,
    ConnectionStatus,
    StatusChanged,
)
from .config import ViewerConfig
from .descriptor import ConnectionDescriptor, parse_descriptor
from .errors import DecryptionFailed, DeliveryError, DescriptorInvalid, MissingKeyMaterial
from .messages import EncryptedPayload, ErrorNote, StatusNote
from .security import Failed, default_engine
from .state import Notice, SessionState

logger = logging.getLogger(__name__)

_Completion = Tuple[int, Future]


def open_payload(
    ciphertext: bytes,
    key_material: str,
    iv: Optional[str] = None,
    config: ViewerConfig | None = None,
) -> ImageSet:
    """Decrypt ``ciphertext`` and extract its images.

    Raises :class:`DecryptionFailed` or an
    :class:`~secure_image_viewer.errors.ExtractionError`.
    """

    outcome = default_engine(config, iv=iv).decrypt(ciphertext, key_material)
    if isinstance(outcome, Failed):
        raise DecryptionFailed(outcome.reason)
    return extract_images(outcome.plaintext, config)


class ViewerSession:
    """Sequence scan, connect, decrypt and extract for a single session.

    All inputs reach the session as queued items: channel events from
    :attr:`ChannelManager.events` and finished decrypt jobs.  Calling
    :meth:`process_events` applies them in order on the caller's thread, so
    the published state is only ever written from one place.
    """

    def __init__(
        self,
        channel: ChannelManager,
        config: ViewerConfig | None = None,
        executor: Executor | None = None,
    ):
        self._channel = channel
        self._config = config or ViewerConfig()
        self._owns_executor = executor is None
        self._executor = executor or ThreadPoolExecutor(
            max_workers=1, thread_name_prefix="payload"
        )

        self._state = SessionState.IDLE
        self._descriptor: Optional[ConnectionDescriptor] = None
        self._images: ImageSet = EMPTY_IMAGE_SET
        self._notices: "queue.Queue[Notice]" = queue.Queue()
        self._completions: "queue.Queue[_Completion]" = queue.Queue()
        self._generation = 0
        self._job: Optional[Future] = None
        self._queued: Deque[bytes] = deque(maxlen=1)
        self._channel_lost = False
        self._closed = False

    # -- observation -------------------------------------------------------

    @property
    def state(self) -> SessionState:
        return self._state

    @property
    def descriptor(self) -> Optional[ConnectionDescriptor]:
        return self._descriptor

    @property
    def images(self) -> ImageSet:
        return self._images

    @property
    def connection_status(self) -> ConnectionStatus:
        return self._channel.status

    @property
    def busy(self) -> bool:
        return self._job is not None

    def drain_notices(self) -> List[Notice]:
        """Return and forget every notice produced since the last call."""

        notices: List[Notice] = []
        while True:
            try:
                notices.append(self._notices.get_nowait())
            except queue.Empty:
                return notices

    # -- commands ----------------------------------------------------------

    def begin_scan(self) -> None:
        """Start a new scan, discarding any live session."""

        if self._state is not SessionState.IDLE:
            self.reset()
        self._set_state(SessionState.AWAITING_SCAN)

    def cancel_scan(self) -> None:
        if self._state is SessionState.AWAITING_SCAN:
            self._set_state(SessionState.IDLE)

    def submit_scan(self, raw: str) -> bool:
        """Parse the scanned string and connect.  Returns ``False`` if it is unusable."""

        if self._state not in (SessionState.IDLE, SessionState.AWAITING_SCAN):
            self.reset()

        descriptor = parse_descriptor(raw, self._config)
        if descriptor is None:
            self._notify_error(
                "Invalid QR Code",
                DescriptorInvalid("QR code does not contain valid connection data"),
            )
            self._set_state(SessionState.IDLE)
            return False

        self._descriptor = descriptor
        self._set_state(SessionState.CONNECTING)
        self._channel.connect(descriptor.endpoint)
        return True

    def reset(self) -> None:
        """Drop everything: in-flight work, the channel, the images."""

        self._generation += 1
        if self._job is not None:
            self._job.cancel()
            self._job = None
        self._queued.clear()
        self._channel.disconnect()
        self._discard_channel_events()
        self._images = EMPTY_IMAGE_SET
        self._descriptor = None
        self._channel_lost = False
        self._set_state(SessionState.IDLE)

    def close(self) -> None:
        if self._closed:
            return
        self.reset()
        self._closed = True
        if self._owns_executor:
            self._executor.shutdown(wait=False, cancel_futures=True)

    def __enter__(self) -> "ViewerSession":
        return self

    def __exit__(self, *_exc_info: object) -> None:
        self.close()

    def process_events(self) -> int:
        """Apply every queued channel event and finished job.  Returns the count."""

        handled = 0
        while True:
            item = self._next_item()
            if item is None:
                return handled
            handled += 1
            if isinstance(item, tuple):
                self._handle_completion(*item)
            else:
                self._dispatch(item)

    # -- internals ---------------------------------------------------------

    def _next_item(self) -> Union[_Completion, ChannelEvent, None]:
        try:
            return self._completions.get_nowait()
        except queue.Empty:
            pass
        try:
            return self._channel.events.get_nowait()
        except queue.Empty:
            return None

    def _discard_channel_events(self) -> None:
        events = self._channel.events
        while True:
            try:
                events.get_nowait()
            except queue.Empty:
                return

    def _settled_state(self) -> SessionState:
        # A failed replacement leaves the previous images on screen.
        return SessionState.VIEWING if self._images else SessionState.CONNECTED

    def _set_state(self, state: SessionState) -> None:
        if state is self._state:
            return
        logger.info("Session %s -> %s", self._state.value, state.value)
        self._state = state

    def _notify(self, title: str, message: str) -> None:
        self._notices.put(Notice("info", title, message))

    def _notify_error(self, title: str, error: DeliveryError) -> None:
        logger.warning("%s: %s", title, error)
        self._notices.put(Notice("error", title, str(error), error))

    def _dispatch(self, event: ChannelEvent) -> None:
        if isinstance(event, StatusChanged):
            self._on_status(event.status)
        elif isinstance(event, ChannelFailed):
            self._on_channel_failed(event)
        elif isinstance(event, ChannelClosed):
            self._on_channel_closed(event)
        elif isinstance(event, EncryptedPayload):
            self._on_payload(event.data)
        elif isinstance(event, ErrorNote):
            self._notify_error("Server Error", DeliveryError(event.text or "Unknown server error"))
        elif isinstance(event, StatusNote):
            logger.info("Server status: %s", event.text)

    def _on_status(self, status: ConnectionStatus) -> None:
        if status is ConnectionStatus.CONNECTED and self._state is SessionState.CONNECTING:
            self._set_state(SessionState.CONNECTED)
            self._notify("Connected", "Successfully connected to secure server")

    def _on_channel_failed(self, event: ChannelFailed) -> None:
        if self._state is not SessionState.CONNECTING:
            logger.debug("Reconnect attempt failed: %s", event.error)
            return
        self._notify_error("Connection Failed", event.error)
        self.reset()

    def _on_channel_closed(self, event: ChannelClosed) -> None:
        if self._state in (SessionState.CONNECTING, SessionState.CONNECTED):
            self._notify_error(
                "Connection Lost", event.error or DeliveryError("Server closed the connection")
            )
            self.reset()
        elif self._state is SessionState.DECRYPTING:
            self._channel_lost = True
        else:
            logger.info("Channel closed while %s", self._state.value)

    def _on_payload(self, data: bytes) -> None:
        if self._state is SessionState.DECRYPTING:
            if self._queued:
                logger.warning("Replacing queued payload with a newer one")
            else:
                logger.warning("Payload arrived while decrypting; queued")
            self._queued.append(data)
            return

        if self._state not in (SessionState.CONNECTED, SessionState.VIEWING):
            logger.warning("Ignoring payload received while %s", self._state.value)
            return

        descriptor = self._descriptor
        if descriptor is None or not descriptor.has_key:
            self._notify_error(
                "Missing Decryption Key",
                MissingKeyMaterial("No decryption key found in QR code"),
            )
            return

        self._set_state(SessionState.DECRYPTING)
        generation = self._generation
        job = self._executor.submit(
            open_payload, data, descriptor.key, descriptor.iv, self._config
        )
        self._job = job
        job.add_done_callback(lambda done: self._completions.put((generation, done)))

    def _handle_completion(self, generation: int, job: Future) -> None:
        if generation != self._generation or job is not self._job:
            logger.info("Discarding result of a cancelled payload job")
            return
        self._job = None
        if job.cancelled():
            self._set_state(self._settled_state())
            return

        error = job.exception()
        if error is None:
            images = job.result()
            self._images = images
            self._set_state(SessionState.VIEWING)
            self._notify("Images Loaded", f"Successfully decrypted {len(images)} images")
        else:
            if isinstance(error, DeliveryError):
                self._notify_error("Decryption Failed", error)
            else:
                logger.error("Payload job crashed", exc_info=error)
                self._notify_error(
                    "Decryption Error", DeliveryError("An error occurred during decryption")
                )
            if self._channel_lost:
                self.reset()
                return
            self._set_state(self._settled_state())

        if self._queued and self._state in (SessionState.CONNECTED, SessionState.VIEWING):
            self._on_payload(self._queued.popleft())


__all__ = ["ViewerSession", "open_payload"]
