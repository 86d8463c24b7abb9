"""
Service facade tying together storage, snapshots, conversion and watching.

This module owns the lifecycle the HTTP layer drives:
- Startup: placeholder initialization, initial conversion, watcher start
- Reading, saving and uploading the Postman collection (snapshot first)
- Manual, restore-triggered and watcher-triggered conversions
- Snapshot listing and restore
- Health and status reporting, including the last conversion outcome

The SyncManager class provides the core business logic for the API, in the
same way a job manager coordinates requests with background execution.
"""

from __future__ import annotations

import json
import logging
from collections import deque
from concurrent.futures import Future, ThreadPoolExecutor
from datetime import datetime, timezone
from threading import Lock
from typing import Any, Deque, List, Optional

from .backup_manager import BackupManager
from .configuration import SyncConfig
from .document_store import DocumentStore
from .errors import DocumentNotFoundError, InvalidSourceError, StorageError, UploadRejectedError
from .locking import CoordinationLock
from .models import (
    ConversionEvent,
    ConversionResult,
    ConversionState,
    DocumentKind,
    HealthReport,
    ServiceStatus,
    SnapshotInfo,
)
from .pipeline import ConversionAttempt, ConversionPipeline
from .s3_service import build_mirror
from .transform import Transform, build_transform
from .utils import has_allowed_extension
from .watcher import SourceWatcher

logger = logging.getLogger(__name__)

MAX_EVENTS = 200


class SyncManager:
    """
    Central coordinator for the collection / OpenAPI synchronization service.

    Thread Safety:
        Conversions serialize on the pipeline's coordination lock. The
        in-memory event log and last result are protected by a plain lock
        because HTTP threads, the watcher thread and executor workers all
        report into them.

    Attributes:
        config: Resolved configuration
        store: Document persistence
        backups: Snapshot manager
        pipeline: Conversion pipeline
    """

    def __init__(self, config: SyncConfig, transform: Optional[Transform] = None) -> None:
        """
        Build every component from ``config``.

        Args:
            config: Resolved configuration
            transform: Conversion capability; defaults to the built-in Postman converter
        """
        self.config = config
        paths = config.paths
        self.store = DocumentStore(paths.source, paths.derived)
        self.backups = BackupManager(
            self.store,
            paths.backup_dir,
            mirror=build_mirror(config.s3.bucket, config.s3.prefix),
        )
        self.lock = CoordinationLock(
            paths.lock_dir,
            max_retries=config.lock.max_retries,
            retry_timeout=config.lock.retry_timeout,
            backoff=config.lock.backoff,
        )
        self.pipeline = ConversionPipeline(
            self.store,
            self.backups,
            self.lock,
            transform or build_transform(config.transform.default_tag, config.transform.output_format),
        )
        self.pipeline.add_listener(self._on_transition)
        self.watcher = SourceWatcher(
            paths.source,
            self._on_source_settled,
            quiet_period=config.watcher.quiet_period,
            stability_window=config.watcher.stability_window,
            poll_interval=config.watcher.poll_interval,
        )
        self._executor = ThreadPoolExecutor(max_workers=config.executor.max_workers)
        self._state_lock = Lock()
        self._events: Deque[ConversionEvent] = deque(maxlen=MAX_EVENTS)
        self._last_result: Optional[ConversionResult] = None

    # Lifecycle -------------------------------------------------------------

    def startup(self) -> Optional[ConversionResult]:
        """
        Prepare the documents and start watching.

        If the collection is missing the OpenAPI document is initialized to a
        placeholder and no conversion runs; otherwise one conversion runs
        before the method returns.
        """
        result = None
        if self.store.exists(DocumentKind.SOURCE):
            result = self.run_conversion(trigger="startup")
        else:
            logger.warning("Postman collection not found at startup. Please place a valid file at: %s", self.store.source_path)
            self.store.ensure_derived_placeholder()

        if self.config.watcher.enabled:
            self.watcher.start()
        return result

    def shutdown(self) -> None:
        self.watcher.stop()
        self._executor.shutdown(wait=True)

    # Events ----------------------------------------------------------------

    def _append_event(self, message: str) -> None:
        event = ConversionEvent(timestamp=datetime.now(timezone.utc), message=message)
        with self._state_lock:
            self._events.append(event)

    def _on_transition(self, attempt: ConversionAttempt, state: ConversionState) -> None:
        if state in (ConversionState.LOCKING, ConversionState.FAILING, ConversionState.IDLE):
            self._append_event(f"[{attempt.trigger}] {attempt.events[-1].message}")

    def _on_source_settled(self) -> None:
        self.run_conversion(trigger="watcher")

    # Conversion ------------------------------------------------------------

    def run_conversion(self, trigger: str = "manual") -> ConversionResult:
        """Run one conversion synchronously and remember its outcome."""
        logger.info("Conversion triggered (%s)", trigger)
        result = self.pipeline.run(trigger=trigger)
        with self._state_lock:
            self._last_result = result
        return result

    def submit_conversion(self, trigger: str) -> Future:
        """Queue a conversion on the worker pool without waiting for it."""
        return self._executor.submit(self.run_conversion, trigger)

    @property
    def last_result(self) -> Optional[ConversionResult]:
        with self._state_lock:
            return self._last_result

    # Collection ------------------------------------------------------------

    def load_collection(self) -> Any:
        """
        Read and parse the Postman collection.

        Raises:
            DocumentNotFoundError: If the collection doesn't exist
            InvalidSourceError: If it is not valid JSON
        """
        raw = self.store.read_source()
        try:
            return json.loads(raw)
        except (UnicodeDecodeError, ValueError) as exc:
            raise InvalidSourceError(f"Postman collection is not valid JSON: {exc}") from exc

    def save_collection(self, payload: Any) -> Optional[SnapshotInfo]:
        """
        Replace the collection with ``payload``, snapshotting the previous version.

        Returns:
            The snapshot of the replaced collection, if one was taken
        """
        snapshot = self.backups.snapshot(DocumentKind.SOURCE)
        self.store.write_source(json.dumps(payload, indent=2, ensure_ascii=False).encode("utf-8"))
        self._append_event("Collection saved via API.")
        return snapshot

    def check_upload_name(self, filename: Optional[str]) -> None:
        if not filename or not has_allowed_extension(filename, self.config.upload.allowed_extensions):
            allowed = ", ".join(self.config.upload.allowed_extensions)
            raise UploadRejectedError(f"Only {allowed} files are allowed")

    def store_upload(self, filename: Optional[str], content: bytes) -> Optional[SnapshotInfo]:
        """
        Store an uploaded file as the collection.

        Raises:
            UploadRejectedError: On a disallowed extension or oversize content
        """
        self.check_upload_name(filename)
        if len(content) > self.config.upload.max_bytes:
            raise UploadRejectedError(
                f"File exceeds the {self.config.upload.max_bytes} byte upload limit", oversize=True
            )
        snapshot = self.backups.snapshot(DocumentKind.SOURCE)
        self.store.write_source(content)
        self._append_event(f"Collection uploaded from {filename}.")
        return snapshot

    # OpenAPI document -------------------------------------------------------

    def read_openapi(self) -> bytes:
        return self.store.read_derived()

    # Snapshots -------------------------------------------------------------

    def list_backups(self) -> List[SnapshotInfo]:
        return self.backups.list()

    def restore_backup(self, filename: str) -> tuple[DocumentKind, Optional[ConversionResult]]:
        """
        Restore a snapshot over its live document.

        OpenAPI restores happen under the coordination lock. A collection
        restore is followed by a conversion so the OpenAPI document catches up.

        Returns:
            The restored document kind and, for collection restores, the
            outcome of the follow-up conversion
        """
        _, kind = self.backups.resolve(filename)
        if kind is DocumentKind.DERIVED:
            with self.pipeline.locked():
                self.backups.restore(filename, snapshot_current=True)
            self._append_event(f"OpenAPI document restored from {filename}.")
            return kind, None

        self.backups.restore(filename, snapshot_current=True)
        self._append_event(f"Collection restored from {filename}.")
        return kind, self.run_conversion(trigger="restore")

    # Health ----------------------------------------------------------------

    def health(self) -> tuple[int, HealthReport]:
        """
        Report whether the OpenAPI document exists and parses.

        Returns:
            HTTP status code and report: 200 ok, 500 malformed, 503 missing
        """
        last = self.last_result
        try:
            content = self.store.read_derived()
        except DocumentNotFoundError:
            return 503, HealthReport(status="error", message="OpenAPI file does not exist", last_conversion=last)
        except StorageError as exc:
            return 500, HealthReport(status="error", message=str(exc), last_conversion=last)

        try:
            json.loads(content)
        except (UnicodeDecodeError, ValueError):
            return 500, HealthReport(
                status="error",
                message="OpenAPI file exists but is not valid JSON",
                last_conversion=last,
            )
        return 200, HealthReport(status="ok", message="Service is healthy", last_conversion=last)

    def status(self) -> ServiceStatus:
        with self._state_lock:
            events = list(self._events)
            last = self._last_result
        return ServiceStatus(
            source_exists=self.store.exists(DocumentKind.SOURCE),
            derived_exists=self.store.exists(DocumentKind.DERIVED),
            watcher_running=self.watcher.running,
            last_conversion=last,
            events=events,
        )
