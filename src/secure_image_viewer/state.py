"""Runtime state containers shared with the display layer."""
from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Optional

from .errors import DeliveryError


class SessionState(str, Enum):
    """Where a viewing session is in the delivery pipeline."""

    IDLE = "idle"
    AWAITING_SCAN = "awaiting_scan"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    DECRYPTING = "decrypting"
    VIEWING = "viewing"


@dataclass(frozen=True, slots=True)
class Notice:
    """A user-facing message produced by the session."""

    level: str
    title: str
    message: str
    error: Optional[DeliveryError] = None

    @property
    def is_error(self) -> bool:
        return self.level == "error"


__all__ = ["SessionState", "Notice"]
