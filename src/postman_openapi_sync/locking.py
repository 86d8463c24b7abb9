"""File-based coordination lock guarding the generated OpenAPI document.

Locks are :mod:`filelock` advisory locks on a lock file derived from the
resource path, so separate processes sharing the same storage exclude each
other as well as threads within one process. Every acquisition creates a
fresh lock object; two handles never share reentrancy state.
"""

from __future__ import annotations

import contextlib
import hashlib
import logging
import time
from pathlib import Path
from typing import Iterator, Optional

from filelock import FileLock, Timeout

from .errors import LockError
from .utils import ensure_directory

__all__ = ["CoordinationLock", "LockHandle"]

logger = logging.getLogger(__name__)
logging.getLogger("filelock").setLevel(logging.INFO)


def _hash_path(target: Path) -> str:
    digest = hashlib.sha256(str(target).encode("utf-8")).hexdigest()
    return digest[:24]


class LockHandle:
    """An acquired lock. Releasing it more than once is harmless."""

    __slots__ = ("resource", "lock_file", "_lock", "_acquired_at", "_released")

    def __init__(self, resource: Path, lock_file: Path, lock: FileLock) -> None:
        self.resource = resource
        self.lock_file = lock_file
        self._lock = lock
        self._acquired_at = time.monotonic()
        self._released = False

    @property
    def released(self) -> bool:
        return self._released

    def release(self) -> None:
        if self._released:
            return
        try:
            self._lock.release(force=True)
        finally:
            self._released = True
            hold_ms = max((time.monotonic() - self._acquired_at) * 1000.0, 0.0)
            logger.debug("lock-release resource=%s hold_ms=%.3f", self.resource, hold_ms)


class CoordinationLock:
    """
    Cross-process mutual exclusion keyed by resource path.

    Acquisition makes ``max_retries + 1`` attempts. Each attempt waits up to
    ``retry_timeout`` seconds for the lock, and failed attempts sleep with an
    exponential backoff starting at ``backoff`` seconds.
    """

    def __init__(
        self,
        lock_dir: Path,
        *,
        max_retries: int = 5,
        retry_timeout: float = 0.5,
        backoff: float = 0.1,
    ) -> None:
        self.lock_dir = ensure_directory(Path(lock_dir))
        self.max_retries = max_retries
        self.retry_timeout = retry_timeout
        self.backoff = backoff

    def lock_file_for(self, resource: Path) -> Path:
        resolved = Path(resource).expanduser().resolve(strict=False)
        return self.lock_dir / f"{resolved.name}.{_hash_path(resolved)}.lock"

    def acquire(self, resource: Path, max_retries: Optional[int] = None) -> LockHandle:
        """
        Acquire the lock for ``resource``.

        Raises:
            LockError: If the lock is still held elsewhere after the retry budget
        """
        retries = self.max_retries if max_retries is None else max_retries
        lock_file = self.lock_file_for(resource)
        lock = FileLock(str(lock_file), thread_local=False)
        start = time.monotonic()

        for attempt in range(retries + 1):
            try:
                lock.acquire(timeout=self.retry_timeout)
            except Timeout:
                if attempt == retries:
                    break
                delay = self.backoff * (2 ** attempt)
                logger.debug(
                    "lock-busy resource=%s attempt=%d/%d retry_in=%.3fs",
                    resource,
                    attempt + 1,
                    retries + 1,
                    delay,
                )
                time.sleep(delay)
                continue

            wait_ms = max((time.monotonic() - start) * 1000.0, 0.0)
            logger.debug("lock-acquired resource=%s wait_ms=%.3f lock_file=%s", resource, wait_ms, lock_file)
            return LockHandle(Path(resource), lock_file, lock)

        wait_ms = max((time.monotonic() - start) * 1000.0, 0.0)
        logger.info("lock-timeout resource=%s wait_ms=%.3f lock_file=%s", resource, wait_ms, lock_file)
        raise LockError(f"Could not lock {resource} after {retries + 1} attempts")

    @staticmethod
    def release(handle: Optional[LockHandle]) -> None:
        """Release ``handle``; None and already-released handles are ignored."""
        if handle is not None:
            handle.release()

    @contextlib.contextmanager
    def hold(self, resource: Path, max_retries: Optional[int] = None) -> Iterator[LockHandle]:
        handle = self.acquire(resource, max_retries=max_retries)
        try:
            yield handle
        finally:
            self.release(handle)
