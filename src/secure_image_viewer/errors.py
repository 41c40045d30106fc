"""Error types raised or reported by the delivery pipeline."""
from __future__ import annotations


class DeliveryError(Exception):
    """Base class for every fault the pipeline surfaces to the user."""


class DescriptorInvalid(DeliveryError, ValueError):
    """The scanned string does not describe a usable connection."""


class ChannelError(DeliveryError):
    """Base class for duplex channel faults."""


class ChannelTimeout(ChannelError):
    """The connection was not established within the configured timeout."""


class ChannelTransportError(ChannelError):
    """The transport reported an error while connecting or connected."""


class ChannelClosedUnclean(ChannelError):
    """The remote end or the network dropped the connection."""


class MissingKeyMaterial(DeliveryError, ValueError):
    """A payload arrived but the descriptor carried no key."""


class DecryptionFailed(DeliveryError, ValueError):
    """Every decryption strategy rejected the payload."""


class ExtractionError(DeliveryError, ValueError):
    """Base class for archive extraction faults."""


class ArchiveCorrupt(ExtractionError):
    """The plaintext is not a readable archive or breaks a safety limit."""


class NoImagesFound(ExtractionError):
    """The archive was readable but held no recognised image entries."""


__all__ = [
    "DeliveryError",
    "DescriptorInvalid",
    "ChannelError",
    "ChannelTimeout",
    "ChannelTransportError",
    "ChannelClosedUnclean",
    "MissingKeyMaterial",
    "DecryptionFailed",
    "ExtractionError",
    "ArchiveCorrupt",
    "NoImagesFound",
]
