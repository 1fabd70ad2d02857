"""
Content integrity and archive safety checks.

- ``compute_checksum``: SHA-256 over the full content, read once in chunks.
- ``validate_archive_safety``: inspects a zip archive's central directory
  (declared sizes, entry count, entry names) without extracting anything.
  Guards against zip bombs and path-traversal entries.
"""

from __future__ import annotations

import hashlib
import io
import logging
import zipfile
from pathlib import PurePosixPath, PureWindowsPath
from typing import BinaryIO, Union

from pkgregistry.errors import IntegrityError

logger = logging.getLogger(__name__)

MAX_UNCOMPRESSED_BYTES = 100_000_000
MAX_ENTRIES = 1000
CHUNK_SIZE = 1024 * 1024

Content = Union[bytes, bytearray, memoryview, BinaryIO]


def compute_checksum(content: Content) -> str:
    """Return the lowercase hex SHA-256 of ``content``.

    File objects are read from their current position to EOF.
    """
    digest = hashlib.sha256()
    if isinstance(content, (bytes, bytearray, memoryview)):
        digest.update(content)
    else:
        for chunk in iter(lambda: content.read(CHUNK_SIZE), b""):
            digest.update(chunk)
    return digest.hexdigest()


def verify_checksum(content: Content, expected: str, *, name: str = "", version: str = "") -> str:
    """Recompute the digest and raise IntegrityError when it differs from ``expected``."""
    actual = compute_checksum(content)
    if actual != (expected or "").lower():
        raise IntegrityError(name, version, expected, actual)
    return actual


def _is_escaping_entry(entry_name: str) -> bool:
    if ".." in entry_name:
        return True
    if PurePosixPath(entry_name).is_absolute() or entry_name.startswith("\\"):
        return True
    win = PureWindowsPath(entry_name)
    return bool(win.drive or win.root)


def validate_archive_safety(
    content: Content,
    *,
    max_uncompressed_bytes: int = MAX_UNCOMPRESSED_BYTES,
    max_entries: int = MAX_ENTRIES,
) -> bool:
    """Return True when the archive is within resource limits and has no escaping entries.

    Anything that cannot be parsed as a zip archive is rejected.
    """
    source: BinaryIO
    if isinstance(content, (bytes, bytearray, memoryview)):
        source = io.BytesIO(bytes(content))
    else:
        source = content
    try:
        with zipfile.ZipFile(source, "r") as archive:
            total_size = 0
            entry_count = 0
            for info in archive.infolist():
                entry_count += 1
                total_size += info.file_size
                if total_size > max_uncompressed_bytes or entry_count > max_entries:
                    logger.warning(
                        "Archive rejected: entries=%d uncompressed_bytes=%d exceeds limits", entry_count, total_size
                    )
                    return False
                if _is_escaping_entry(info.filename):
                    logger.warning("Archive rejected: path-escaping entry %r", info.filename)
                    return False
    except (zipfile.BadZipFile, zipfile.LargeZipFile, OSError, EOFError, ValueError, NotImplementedError) as exc:
        logger.warning("Archive rejected: unreadable zip (%s)", exc)
        return False
    return True
