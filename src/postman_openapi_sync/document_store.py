"""
Filesystem persistence for the Postman collection and the generated OpenAPI document.

The store performs no locking of its own. Writes go through a temporary
sibling file followed by an atomic rename, so readers always see a complete
document. Serializing writers to the OpenAPI document is the job of the
conversion pipeline's coordination lock.
"""

from __future__ import annotations

import logging
from pathlib import Path

from .errors import DocumentNotFoundError, StorageError
from .models import DocumentKind
from .utils import atomic_write_bytes, ensure_directory

logger = logging.getLogger(__name__)

PLACEHOLDER = b"{}"


class DocumentStore:
    """Reads and writes the source and derived documents at fixed paths."""

    def __init__(self, source_path: Path, derived_path: Path) -> None:
        self.source_path = Path(source_path)
        self.derived_path = Path(derived_path)
        ensure_directory(self.source_path.parent)
        ensure_directory(self.derived_path.parent)

    def path_for(self, kind: DocumentKind) -> Path:
        return self.source_path if kind is DocumentKind.SOURCE else self.derived_path

    def exists(self, kind: DocumentKind) -> bool:
        return self.path_for(kind).is_file()

    def read(self, kind: DocumentKind) -> bytes:
        path = self.path_for(kind)
        try:
            return path.read_bytes()
        except FileNotFoundError as exc:
            raise DocumentNotFoundError(f"{kind.value} document not found at {path}") from exc
        except OSError as exc:
            raise StorageError(f"Failed to read {kind.value} document: {exc}") from exc

    def write(self, kind: DocumentKind, content: bytes) -> None:
        path = self.path_for(kind)
        try:
            atomic_write_bytes(path, content)
        except OSError as exc:
            raise StorageError(f"Failed to write {kind.value} document: {exc}") from exc
        logger.debug("Wrote %d bytes to %s", len(content), path)

    def read_source(self) -> bytes:
        return self.read(DocumentKind.SOURCE)

    def write_source(self, content: bytes) -> None:
        """Overwrite the collection unconditionally; snapshotting is the caller's job."""
        self.write(DocumentKind.SOURCE, content)

    def read_derived(self) -> bytes:
        return self.read(DocumentKind.DERIVED)

    def write_derived(self, content: bytes) -> None:
        self.write(DocumentKind.DERIVED, content)

    def ensure_derived_placeholder(self) -> bool:
        """
        Create an empty-but-valid OpenAPI document if none exists.

        Returns:
            True if a placeholder was written
        """
        if self.exists(DocumentKind.DERIVED):
            return False
        self.write_derived(PLACEHOLDER)
        logger.info("Initialized placeholder OpenAPI document at %s", self.derived_path)
        return True
