"""Extraction of image files from decrypted zip archives."""
from __future__ import annotations

import base64
import io
import logging
import zipfile
import zlib
from dataclasses import dataclass
from types import MappingProxyType
from typing import Dict, Mapping

from .config import DEFAULT_MIME_TYPE, IMAGE_MIME_TYPES, ViewerConfig
from .errors import ArchiveCorrupt, NoImagesFound

logger = logging.getLogger(__name__)

NO_IMAGES_FOUND = "no image files found"

_ENTRY_READ_ERRORS = (
    zipfile.BadZipFile,
    NotImplementedError,
    RuntimeError,
    zlib.error,
    EOFError,
    OSError,
    ValueError,
)
"""Faults raised by :meth:`zipfile.ZipFile.read` for a single damaged entry."""


@dataclass(frozen=True, slots=True)
class ImageFile:
    """One image recovered from the archive."""

    name: str
    data: bytes
    mime_type: str

    def data_uri(self) -> str:
        """Return the image as a ``data:`` URI for web-style display layers."""

        encoded = base64.b64encode(self.data).decode("ascii")
        return f"data:{self.mime_type};base64,{encoded}"

    def __repr__(self) -> str:
        return f"ImageFile({self.name!r}, <{len(self.data)} bytes>, {self.mime_type!r})"


ImageSet = Mapping[str, ImageFile]
"""Read-only mapping of archive entry name to :class:`ImageFile`."""

EMPTY_IMAGE_SET: ImageSet = MappingProxyType({})


def _extension(filename: str) -> str:
    _, dot, tail = filename.lower().rpartition(".")
    return f".{tail}" if dot else ""


def is_image_file(filename: str) -> bool:
    """Return ``True`` if ``filename`` carries an allow-listed image extension."""

    return _extension(filename) in IMAGE_MIME_TYPES


def mime_type_for(filename: str) -> str:
    """Return the MIME type inferred from ``filename``'s extension."""

    mime_type = IMAGE_MIME_TYPES.get(_extension(filename))
    if mime_type is None:
        logger.warning("No MIME type known for %r, assuming %s", filename, DEFAULT_MIME_TYPE)
        return DEFAULT_MIME_TYPE
    return mime_type


def _open_archive(plaintext: bytes) -> zipfile.ZipFile:
    try:
        return zipfile.ZipFile(io.BytesIO(plaintext))
    except (zipfile.BadZipFile, zipfile.LargeZipFile, ValueError, OSError) as exc:
        raise ArchiveCorrupt("Decrypted data is not a valid archive") from exc


def extract_images(plaintext: bytes, config: ViewerConfig | None = None) -> ImageSet:
    """Return every allow-listed image in the zip archive ``plaintext``.

    Directory entries and non-image files are skipped silently.  Image entries
    that cannot be read are skipped with a warning.  The result is never empty:
    an archive without readable images raises :class:`NoImagesFound`.
    """

    config = config or ViewerConfig()

    with _open_archive(plaintext) as archive:
        entries = archive.infolist()
        if len(entries) > config.max_archive_entries:
            raise ArchiveCorrupt(
                f"Archive has {len(entries)} entries, limit is {config.max_archive_entries}"
            )

        candidates = [
            info for info in entries if not info.is_dir() and is_image_file(info.filename)
        ]
        declared = sum(info.file_size for info in candidates)
        if declared > config.max_uncompressed_bytes:
            raise ArchiveCorrupt("Archive exceeds the uncompressed size limit")

        files: Dict[str, ImageFile] = {}
        for info in candidates:
            try:
                data = archive.read(info)
            except _ENTRY_READ_ERRORS as exc:
                logger.warning("Failed to process file %s: %s", info.filename, exc)
                continue
            files[info.filename] = ImageFile(
                name=info.filename,
                data=data,
                mime_type=mime_type_for(info.filename),
            )

    skipped = len(entries) - len(files)
    if not files:
        raise NoImagesFound(NO_IMAGES_FOUND)

    logger.info("Extracted %d image(s), skipped %d other entries", len(files), skipped)
    return MappingProxyType(files)


__all__ = [
    "NO_IMAGES_FOUND",
    "EMPTY_IMAGE_SET",
    "ImageFile",
    "ImageSet",
    "is_image_file",
    "mime_type_for",
    "extract_images",
]
