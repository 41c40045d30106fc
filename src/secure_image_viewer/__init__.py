"""Secure Image Viewer: receive, decrypt and unpack images over a duplex channel."""
from __future__ import annotations

from .archive import ImageFile, ImageSet, extract_images
from .channel import ChannelManager, ConnectionStatus
from .config import ViewerConfig
from .descriptor import ConnectionDescriptor, parse_descriptor
from .errors import DeliveryError
from .messages import EncryptedPayload, ErrorNote, StatusNote
from .security import DecryptionEngine, Failed, Ok, decrypt, default_engine
from .session import ViewerSession
from .state import Notice, SessionState

__all__ = [
    "ViewerConfig",
    "ConnectionDescriptor",
    "parse_descriptor",
    "ChannelManager",
    "ConnectionStatus",
    "EncryptedPayload",
    "StatusNote",
    "ErrorNote",
    "DecryptionEngine",
    "default_engine",
    "decrypt",
    "Ok",
    "Failed",
    "ImageFile",
    "ImageSet",
    "extract_images",
    "ViewerSession",
    "SessionState",
    "Notice",
    "DeliveryError",
]

__version__ = "1.0"
