"""Inbound frame classification for the duplex channel."""
from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from typing import Any, Dict, Optional, Union

logger = logging.getLogger(__name__)

PARSE_FAILURE_TEXT = "Failed to parse message"
"""Reason carried by the :class:`ErrorNote` produced for malformed text frames."""


@dataclass(frozen=True, slots=True)
class EncryptedPayload:
    """A binary frame: the encrypted archive."""

    data: bytes

    def __repr__(self) -> str:
        return f"EncryptedPayload(<{len(self.data)} bytes>)"


@dataclass(frozen=True, slots=True)
class StatusNote:
    """An informational control message from the server."""

    text: str = ""


@dataclass(frozen=True, slots=True)
class ErrorNote:
    """An error control message, or a locally detected malformed frame."""

    text: str = ""


InboundMessage = Union[EncryptedPayload, StatusNote, ErrorNote]


def _optional_str(message: Dict[str, Any], field: str) -> Optional[str]:
    value = message.get(field)
    return value if isinstance(value, str) else None


def parse_control_message(text: str) -> InboundMessage:
    """Decode a text frame into a :class:`StatusNote` or :class:`ErrorNote`.

    Control frames are JSON objects with a ``type`` discriminator of
    ``"status"`` or ``"error"``.  Anything else, including invalid JSON,
    becomes an :class:`ErrorNote` carrying :data:`PARSE_FAILURE_TEXT`.
    """

    try:
        message = json.loads(text)
    except (ValueError, RecursionError):
        logger.warning("Dropping text frame that is not valid JSON")
        return ErrorNote(PARSE_FAILURE_TEXT)

    if not isinstance(message, dict):
        logger.warning("Dropping text frame that is not a JSON object")
        return ErrorNote(PARSE_FAILURE_TEXT)

    kind = message.get("type")
    if kind == "status":
        return StatusNote(_optional_str(message, "message") or "")
    if kind == "error":
        return ErrorNote(_optional_str(message, "error") or "Unknown server error")

    logger.warning("Dropping control message with unknown type %r", kind)
    return ErrorNote(PARSE_FAILURE_TEXT)


def classify_frame(frame: bytes | bytearray | memoryview | str) -> InboundMessage:
    """Map a raw channel frame onto the inbound message union."""

    if isinstance(frame, str):
        return parse_control_message(frame)
    return EncryptedPayload(bytes(frame))


__all__ = [
    "PARSE_FAILURE_TEXT",
    "EncryptedPayload",
    "StatusNote",
    "ErrorNote",
    "InboundMessage",
    "parse_control_message",
    "classify_frame",
]
