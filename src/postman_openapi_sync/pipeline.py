"""
Conversion of the Postman collection into the OpenAPI document.

One call to :meth:`ConversionPipeline.run` walks the state machine

    idle -> locking -> backing_up -> transforming -> normalizing
         -> validating -> committing -> idle

and on any error after the lock is held

    failing -> rolling_back -> idle

The transform writes into a scratch file next to the OpenAPI document, so a
failed or partial conversion never touches the committed document. The
commit itself is an atomic replace performed by the document store, and the
coordination lock is released on every exit path.
"""

from __future__ import annotations

import contextlib
import json
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Callable, Iterator, List, Optional, Tuple

import yaml

from .backup_manager import BackupManager
from .document_store import DocumentStore
from .errors import InvalidSourceError, LockError, SyncError, TransformError
from .locking import CoordinationLock, LockHandle
from .models import ConversionEvent, ConversionResult, ConversionState, DocumentKind, SnapshotInfo
from .transform import Transform
from .utils import scratch_path_for

logger = logging.getLogger(__name__)

# Leading markers of an OpenAPI / Swagger document serialized as YAML.
YAML_MARKERS = ("openapi:", "swagger:")

Listener = Callable[["ConversionAttempt", ConversionState], None]


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def normalize_output(content: bytes) -> Tuple[bytes, str]:
    """
    Bring transform output into the canonical JSON encoding.

    Returns:
        The normalized bytes and the detected input format: ``json``,
        ``yaml`` or ``unknown`` (passed through unchanged)

    Raises:
        TransformError: If the output is empty or YAML that fails to parse
    """
    try:
        text = content.decode("utf-8")
    except UnicodeDecodeError:
        return content, "unknown"

    stripped = text.strip()
    if not stripped:
        raise TransformError("Generated OpenAPI document is empty")

    if stripped.startswith(YAML_MARKERS):
        try:
            data = yaml.safe_load(text)
        except yaml.YAMLError as exc:
            raise TransformError(f"Error converting YAML output to JSON: {exc}") from exc
        return json.dumps(data, indent=2, ensure_ascii=False).encode("utf-8"), "yaml"

    if stripped.startswith(("{", "[")):
        return content, "json"

    return content, "unknown"


def validate_output(content: bytes) -> List[str]:
    """Return warnings for output that viewers may not be able to render."""
    try:
        data = json.loads(content)
    except (UnicodeDecodeError, ValueError) as exc:
        return [f"Output is not valid JSON; documentation viewers may not work correctly ({exc})"]
    if not isinstance(data, dict) or "openapi" not in data:
        return ["Output has no top-level 'openapi' version field"]
    return []


@dataclass
class ConversionAttempt:
    """
    Transient record of one pipeline run.

    Attributes:
        trigger: What requested the run (startup, manual, watcher, restore)
        state: Current state of the state machine
        handle: Coordination lock handle while held
        snapshot: Snapshot of the OpenAPI document taken before transforming
        scratch_path: Staging file for transform output
        restored_from: Snapshot restored during rollback, if any
        warnings: Non-fatal validation findings
        events: Chronological log of state transitions
    """

    trigger: str
    started_at: datetime = field(default_factory=_utcnow)
    state: ConversionState = ConversionState.IDLE
    handle: Optional[LockHandle] = None
    snapshot: Optional[SnapshotInfo] = None
    scratch_path: Optional[Path] = None
    success: bool = False
    final_state: Optional[ConversionState] = None
    reason: Optional[str] = None
    error_code: Optional[str] = None
    restored_from: Optional[str] = None
    warnings: List[str] = field(default_factory=list)
    events: List[ConversionEvent] = field(default_factory=list)

    def record(self, message: str) -> None:
        self.events.append(ConversionEvent(timestamp=_utcnow(), message=message))

    def to_result(self) -> ConversionResult:
        return ConversionResult(
            success=self.success,
            trigger=self.trigger,
            started_at=self.started_at,
            finished_at=_utcnow(),
            final_state=self.final_state or self.state,
            reason=self.reason,
            error_code=self.error_code,
            snapshot=self.snapshot.filename if self.snapshot else None,
            restored_from=self.restored_from,
            warnings=list(self.warnings),
            events=list(self.events),
        )


class ConversionPipeline:
    """
    Runs conversions of the Postman collection into the OpenAPI document.

    Concurrent callers, in this process or others sharing the storage,
    serialize on the coordination lock keyed to the OpenAPI document path.
    """

    def __init__(
        self,
        store: DocumentStore,
        backups: BackupManager,
        lock: CoordinationLock,
        transform: Transform,
        *,
        max_lock_retries: Optional[int] = None,
    ) -> None:
        self.store = store
        self.backups = backups
        self.lock = lock
        self.transform = transform
        self.max_lock_retries = max_lock_retries
        self._listeners: List[Listener] = []

    @property
    def resource(self) -> Path:
        return self.store.derived_path

    def add_listener(self, listener: Listener) -> None:
        """Register a callback invoked on every state transition."""
        self._listeners.append(listener)

    def _transition(self, attempt: ConversionAttempt, state: ConversionState, message: Optional[str] = None) -> None:
        attempt.state = state
        attempt.record(message or f"State -> {state.value}")
        logger.debug("conversion trigger=%s state=%s", attempt.trigger, state.value)
        for listener in self._listeners:
            listener(attempt, state)

    @contextlib.contextmanager
    def locked(self) -> Iterator[LockHandle]:
        """Hold the coordination lock around an out-of-pipeline write to the OpenAPI document."""
        with self.lock.hold(self.resource, max_retries=self.max_lock_retries) as handle:
            yield handle

    def run(self, trigger: str = "manual") -> ConversionResult:
        """
        Convert the current collection and commit the result.

        Never raises for conversion failures; the outcome, the failure reason
        and any validation warnings are reported on the returned result.
        """
        attempt = ConversionAttempt(trigger=trigger)
        self._transition(attempt, ConversionState.LOCKING)
        try:
            attempt.handle = self.lock.acquire(self.resource, max_retries=self.max_lock_retries)
        except LockError as exc:
            attempt.reason = str(exc)
            attempt.error_code = exc.code
            attempt.final_state = ConversionState.LOCKING
            logger.error("Error converting Postman collection: %s", exc)
            self._transition(attempt, ConversionState.IDLE, f"Conversion aborted: {exc}")
            return attempt.to_result()

        try:
            self._backup(attempt)
            source = self._read_source(attempt)
            self._run_transform(attempt, source)
            content = self._normalize(attempt)
            self._validate(attempt, content)
            self._commit(attempt, content)
        except Exception as exc:  # noqa: BLE001
            self._rollback(attempt, exc)
        else:
            attempt.success = True
            attempt.final_state = ConversionState.COMMITTING
            logger.info("Postman collection converted to OpenAPI successfully.")
        finally:
            self._discard_scratch(attempt)
            self.lock.release(attempt.handle)
            attempt.handle = None

        self._transition(attempt, ConversionState.IDLE, "Conversion succeeded." if attempt.success else "Conversion failed.")
        return attempt.to_result()

    def _backup(self, attempt: ConversionAttempt) -> None:
        self._transition(attempt, ConversionState.BACKING_UP)
        self.store.ensure_derived_placeholder()
        attempt.snapshot = self.backups.snapshot(DocumentKind.DERIVED)
        if attempt.snapshot is not None:
            attempt.record(f"Backed up OpenAPI document to {attempt.snapshot.filename}")

    def _read_source(self, attempt: ConversionAttempt) -> bytes:
        self._transition(attempt, ConversionState.TRANSFORMING)
        try:
            source = self.store.read_source()
        except SyncError as exc:
            raise InvalidSourceError(f"Postman collection unavailable: {exc}") from exc
        try:
            parsed = json.loads(source)
        except (UnicodeDecodeError, ValueError) as exc:
            raise InvalidSourceError(f"Postman collection is not valid JSON: {exc}") from exc
        if not isinstance(parsed, dict):
            raise InvalidSourceError("Postman collection must be a JSON object")
        return source

    def _run_transform(self, attempt: ConversionAttempt, source: bytes) -> None:
        attempt.scratch_path = scratch_path_for(self.resource, tag="scratch")
        try:
            output = self.transform.convert(source)
        except SyncError:
            raise
        except Exception as exc:  # noqa: BLE001
            raise TransformError(f"Conversion failed: {exc}") from exc
        attempt.scratch_path.write_bytes(output)

    def _normalize(self, attempt: ConversionAttempt) -> bytes:
        self._transition(attempt, ConversionState.NORMALIZING)
        raw = attempt.scratch_path.read_bytes()
        content, detected = normalize_output(raw)
        if detected == "yaml":
            logger.info("Detected YAML output, converted to JSON.")
            attempt.scratch_path.write_bytes(content)
        elif detected == "unknown":
            logger.warning("Unrecognised transform output; passing it through unchanged.")
        return content

    def _validate(self, attempt: ConversionAttempt, content: bytes) -> None:
        self._transition(attempt, ConversionState.VALIDATING)
        for warning in validate_output(content):
            logger.warning("Warning: %s", warning)
            attempt.warnings.append(warning)

    def _commit(self, attempt: ConversionAttempt, content: bytes) -> None:
        self._transition(attempt, ConversionState.COMMITTING)
        self.store.write_derived(content)
        attempt.record(f"Committed {len(content)} bytes to {self.resource.name}")

    def _rollback(self, attempt: ConversionAttempt, exc: Exception) -> None:
        failed_in = attempt.state
        attempt.final_state = failed_in
        attempt.reason = str(exc) or exc.__class__.__name__
        if isinstance(exc, SyncError):
            attempt.error_code = exc.code
        elif isinstance(exc, OSError):
            attempt.error_code = "io_error"
        else:
            attempt.error_code = "error"
        logger.error("Error converting Postman collection: %s", attempt.reason)
        self._transition(attempt, ConversionState.FAILING, f"Conversion failed during {failed_in.value}: {attempt.reason}")

        self._transition(attempt, ConversionState.ROLLING_BACK)
        target = attempt.snapshot
        if target is None:
            try:
                target = self.backups.latest(DocumentKind.DERIVED)
            except SyncError as list_exc:
                logger.error("Could not list backups for rollback: %s", list_exc)
                target = None
        if target is None:
            attempt.record("No OpenAPI backup available; leaving the current document in place.")
            return

        try:
            self.backups.restore(target.filename)
        except SyncError as restore_exc:
            logger.error("Rollback from %s failed: %s", target.filename, restore_exc)
            attempt.record(f"Rollback from {target.filename} failed: {restore_exc}")
            return
        attempt.restored_from = target.filename
        logger.info("Restored OpenAPI document from backup: %s", target.filename)
        attempt.record(f"Restored OpenAPI document from {target.filename}")

    @staticmethod
    def _discard_scratch(attempt: ConversionAttempt) -> None:
        if attempt.scratch_path is not None:
            attempt.scratch_path.unlink(missing_ok=True)
