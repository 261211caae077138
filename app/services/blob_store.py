# =============================================================================
# Blob Store — Raw Uploaded Sources
# =============================================================================
#
# Holds the original bytes of an upload between "client submitted it" and
# "extraction consumed it". A source_reference is a path relative to the
# store root, e.g. "3f2a9c.../lecture-notes.pdf".
#
# DESIGN DECISION: Local filesystem under settings.upload_dir, the same
# place uploads have always been written. Anything exposing download() /
# remove() can replace it.
# =============================================================================

from __future__ import annotations

import logging
import uuid
from pathlib import Path
from typing import Protocol

logger = logging.getLogger(__name__)


class BlobStore(Protocol):
    def download(self, source_reference: str) -> bytes:
        """Raises FileNotFoundError if the reference does not exist."""
        ...

    def remove(self, source_reference: str) -> None:
        ...


class LocalBlobStore:
    """Stores blobs as files below a root directory."""

    def __init__(self, root: str | Path) -> None:
        self._root = Path(root).resolve()

    def _path(self, source_reference: str) -> Path:
        path = (self._root / source_reference).resolve()
        # Reject "../" escapes out of the upload directory
        if not path.is_relative_to(self._root):
            raise ValueError(f"Invalid source reference: {source_reference!r}")
        return path

    def save(self, data: bytes, filename: str) -> str:
        """
        Write an upload and return its source reference.

        Each upload gets its own UUID directory so identical filenames
        never collide.
        """
        safe_name = Path(filename).name or "upload"
        source_reference = f"{uuid.uuid4()}/{safe_name}"
        path = self._path(source_reference)
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_bytes(data)
        logger.info("Saved upload %s (%d bytes)", source_reference, len(data))
        return source_reference

    def download(self, source_reference: str) -> bytes:
        return self._path(source_reference).read_bytes()

    def remove(self, source_reference: str) -> None:
        path = self._path(source_reference)
        path.unlink(missing_ok=True)
        # Drop the per-upload directory once it is empty
        parent = path.parent
        if parent != self._root and parent.is_dir() and not any(parent.iterdir()):
            parent.rmdir()
