"""Configuration data structures for the Secure Image Viewer."""
from __future__ import annotations

from dataclasses import dataclass
from typing import Dict, Tuple

IMAGE_MIME_TYPES: Dict[str, str] = {
    ".jpg": "image/jpeg",
    ".jpeg": "image/jpeg",
    ".png": "image/png",
    ".gif": "image/gif",
    ".bmp": "image/bmp",
    ".webp": "image/webp",
    ".svg": "image/svg+xml",
}
"""Recognised image extensions.  The allow-list is the key set of this table."""

DEFAULT_MIME_TYPE = "image/jpeg"


@dataclass(slots=True)
class ViewerConfig:
    """Static configuration options used across the delivery pipeline."""

    connect_timeout_s: float = 10.0
    reconnect_base_delay_s: float = 1.0
    max_reconnect_attempts: int = 3
    channel_schemes: Tuple[str, ...] = ("ws://", "wss://")
    pbkdf2_iterations: int = 1_000
    pbkdf2_hash: str = "sha256"
    salt_size_bytes: int = 8
    derived_key_size_bytes: int = 32
    iv_size_bytes: int = 16
    max_archive_entries: int = 1_000
    max_uncompressed_bytes: int = 256 * 1024 * 1024
    event_poll_interval_ms: int = 50

    def reconnect_delay(self, attempt: int) -> float:
        """Return the wait before reconnect ``attempt`` (1-indexed)."""

        return self.reconnect_base_delay_s * attempt


__all__ = ["DEFAULT_MIME_TYPE", "IMAGE_MIME_TYPES", "ViewerConfig"]
