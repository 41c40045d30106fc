"""Parsing of scanned connection descriptors."""
from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from typing import Any, Mapping, Optional, Sequence
from urllib.parse import urlsplit

from .config import ViewerConfig

logger = logging.getLogger(__name__)

_ENDPOINT_FIELDS = ("endpoint", "url")


@dataclass(frozen=True, slots=True)
class ConnectionDescriptor:
    """Where to connect and, optionally, which key opens the payload."""

    endpoint: str
    key: Optional[str] = None
    iv: Optional[str] = None

    @property
    def host(self) -> str:
        """Network location of the endpoint, for display."""

        return urlsplit(self.endpoint).netloc

    @property
    def has_key(self) -> bool:
        return bool(self.key)

    def __repr__(self) -> str:
        key = "<redacted>" if self.key else None
        return f"ConnectionDescriptor(endpoint={self.endpoint!r}, key={key})"


def _has_channel_scheme(value: str, schemes: Sequence[str]) -> bool:
    lowered = value.lower()
    if not any(lowered.startswith(scheme) for scheme in schemes):
        return False
    try:
        return bool(urlsplit(value).netloc)
    except ValueError:
        return False


def _optional_text(data: Mapping[str, Any], field: str) -> tuple[bool, Optional[str]]:
    """Return ``(ok, value)`` for an optional string field."""

    value = data.get(field)
    if value is None:
        return True, None
    if not isinstance(value, str):
        return False, None
    return True, value


def _from_mapping(
    data: Mapping[str, Any], schemes: Sequence[str]
) -> Optional[ConnectionDescriptor]:
    endpoint = None
    for field in _ENDPOINT_FIELDS:
        if field in data:
            endpoint = data[field]
            break
    if not isinstance(endpoint, str):
        return None

    if not _has_channel_scheme(endpoint, schemes):
        return None

    key_ok, key = _optional_text(data, "key")
    iv_ok, iv = _optional_text(data, "iv")
    if not (key_ok and iv_ok):
        return None

    return ConnectionDescriptor(endpoint=endpoint, key=key, iv=iv)


def parse_descriptor(
    raw: str, config: ViewerConfig | None = None
) -> Optional[ConnectionDescriptor]:
    """Turn a scanned string into a :class:`ConnectionDescriptor`.

    A JSON object with an ``endpoint`` (or legacy ``url``) field and an optional
    ``key`` is the structured form.  Anything that is not JSON is accepted as a
    bare endpoint when it starts with a duplex channel scheme.  Every other
    input yields ``None``; the function never raises.
    """

    schemes = (config or ViewerConfig()).channel_schemes
    if not isinstance(raw, str):
        return None

    try:
        parsed = json.loads(raw)
    except (ValueError, RecursionError):
        candidate = raw.strip()
        if _has_channel_scheme(candidate, schemes):
            return ConnectionDescriptor(endpoint=candidate)
        logger.debug("Scanned text is neither JSON nor a channel URI")
        return None

    if not isinstance(parsed, dict):
        return None
    return _from_mapping(parsed, schemes)


__all__ = ["ConnectionDescriptor", "parse_descriptor"]
