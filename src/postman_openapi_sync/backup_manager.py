"""
Timestamped snapshots of the Postman collection and the OpenAPI document.

Snapshots are write-once JSON files in a single directory, named
``postman-<timestamp>.json`` or ``openapi-<timestamp>.json``. The timestamp
is ISO-8601 with colons and periods replaced by hyphens, so within one kind
lexical order equals chronological order. Listing sorts on the parsed
timestamp so both kinds interleave correctly.

Restoring copies a snapshot over the live document and never touches the
snapshot itself. Re-running the conversion after a collection restore is the
caller's responsibility. There is no retention policy: snapshots accumulate
until removed externally.
"""

from __future__ import annotations

import logging
import threading
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import List, Optional

from .document_store import DocumentStore
from .errors import DocumentNotFoundError, InvalidSnapshotError, StorageError
from .models import DocumentKind, SnapshotInfo
from .s3_service import S3SnapshotMirror
from .utils import atomic_write_bytes, ensure_directory, format_timestamp, parse_timestamp

logger = logging.getLogger(__name__)

# Content at or below this size is placeholder content ("{}") and is not worth keeping.
MIN_SNAPSHOT_BYTES = 3


class BackupManager:
    """
    Creates, lists and restores snapshots for a :class:`DocumentStore`.

    Attributes:
        backup_dir: Directory holding every snapshot file
    """

    def __init__(
        self,
        store: DocumentStore,
        backup_dir: Path,
        mirror: Optional[S3SnapshotMirror] = None,
    ) -> None:
        self.store = store
        self.backup_dir = ensure_directory(Path(backup_dir))
        self._mirror = mirror
        self._name_lock = threading.Lock()
        self._last_moment: Optional[datetime] = None

    def _next_path(self, kind: DocumentKind) -> Path:
        """Reserve a filename whose timestamp is strictly later than any issued before."""
        with self._name_lock:
            moment = datetime.now(timezone.utc)
            if self._last_moment is not None and moment <= self._last_moment:
                moment = self._last_moment + timedelta(microseconds=1)
            path = self.backup_dir / f"{kind.snapshot_prefix}-{format_timestamp(moment)}.json"
            while path.exists():
                moment += timedelta(microseconds=1)
                path = self.backup_dir / f"{kind.snapshot_prefix}-{format_timestamp(moment)}.json"
            self._last_moment = moment
            return path

    def snapshot(self, kind: DocumentKind) -> Optional[SnapshotInfo]:
        """
        Copy the current content of a document into a new snapshot file.

        Args:
            kind: Which live document to snapshot

        Returns:
            The new snapshot, or None when the document is missing or only
            holds placeholder content
        """
        if not self.store.exists(kind):
            logger.debug("No %s document to snapshot", kind.value)
            return None

        content = self.store.read(kind)
        if len(content) < MIN_SNAPSHOT_BYTES:
            logger.debug("Skipping snapshot of placeholder %s document", kind.value)
            return None

        path = self._next_path(kind)
        try:
            atomic_write_bytes(path, content)
        except OSError as exc:
            raise StorageError(f"Failed to write snapshot {path.name}: {exc}") from exc
        logger.info("Backed up %s document to %s", kind.value, path)

        if self._mirror is not None:
            self._mirror.upload(path)

        return self._describe(path)

    def _describe(self, path: Path) -> Optional[SnapshotInfo]:
        kind = DocumentKind.from_snapshot_name(path.name)
        created = parse_timestamp(path.name)
        if kind is None or created is None:
            return None
        try:
            size = path.stat().st_size
        except OSError as exc:
            # Removed externally after the directory was listed.
            logger.debug("Skipping snapshot %s: %s", path.name, exc)
            return None
        return SnapshotInfo(filename=path.name, kind=kind, created=created, size=size)

    def list(self) -> List[SnapshotInfo]:
        """
        Describe every snapshot of either kind, newest first.

        Raises:
            StorageError: If the backup directory cannot be read
        """
        try:
            candidates = [path for path in self.backup_dir.iterdir() if path.is_file() and path.suffix == ".json"]
        except OSError as exc:
            raise StorageError(f"Failed to list backups: {exc}") from exc

        snapshots = []
        for path in candidates:
            info = self._describe(path)
            if info is None:
                logger.debug("Ignoring unrecognised file in backup directory: %s", path.name)
                continue
            snapshots.append(info)
        return sorted(snapshots, key=lambda s: (s.created, s.filename), reverse=True)

    def latest(self, kind: DocumentKind) -> Optional[SnapshotInfo]:
        return next((snapshot for snapshot in self.list() if snapshot.kind is kind), None)

    def resolve(self, filename: str) -> tuple[Path, DocumentKind]:
        """
        Map a snapshot filename to its file and originating document kind.

        Raises:
            DocumentNotFoundError: If no such snapshot exists
            InvalidSnapshotError: If the filename prefix names no known kind
        """
        if not filename or Path(filename).name != filename:
            raise DocumentNotFoundError(f"Backup file not found: {filename}")
        path = self.backup_dir / filename
        if not path.is_file():
            raise DocumentNotFoundError(f"Backup file not found: {filename}")
        kind = DocumentKind.from_snapshot_name(filename)
        if kind is None:
            raise InvalidSnapshotError(f"Cannot tell which document {filename} belongs to")
        return path, kind

    def restore(self, filename: str, *, snapshot_current: bool = False) -> DocumentKind:
        """
        Copy a snapshot back over the live document it was taken from.

        Args:
            filename: Snapshot filename inside the backup directory
            snapshot_current: Snapshot the live document before replacing it

        Returns:
            The kind of document that was restored

        Raises:
            DocumentNotFoundError: If no such snapshot exists
            InvalidSnapshotError: If the filename prefix names no known kind
            StorageError: If reading the snapshot or writing the document fails
        """
        path, kind = self.resolve(filename)
        try:
            content = path.read_bytes()
        except OSError as exc:
            raise StorageError(f"Failed to read snapshot {filename}: {exc}") from exc

        if snapshot_current:
            self.snapshot(kind)

        self.store.write(kind, content)
        logger.info("Restored %s document from %s", kind.value, filename)
        return kind
