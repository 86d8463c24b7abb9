"""File watcher with debounce for re-converting the Postman collection."""

from __future__ import annotations

import logging
import threading
import time
from collections.abc import Callable
from pathlib import Path
from typing import Optional

from watchdog.events import FileSystemEvent, FileSystemEventHandler
from watchdog.observers import Observer

logger = logging.getLogger(__name__)


class Debouncer:
    """Single-slot scheduler that collapses bursts of triggers into one callback.

    The slot is either idle or pending with a fire time. Each ``trigger``
    pushes the fire time to ``now + delay``; the callback runs once the slot
    has stayed untouched for ``delay`` seconds. One worker thread serves the
    slot, so callbacks never overlap each other.
    """

    def __init__(
        self,
        delay: float,
        callback: Callable[[], None],
        *,
        clock: Callable[[], float] = time.monotonic,
        name: str = "debouncer",
    ) -> None:
        self.delay = delay
        self._callback = callback
        self._clock = clock
        self._name = name
        self._cond = threading.Condition()
        self._fire_at: Optional[float] = None
        self._running = False
        self._closed = False
        self._thread: Optional[threading.Thread] = None

    @property
    def closed(self) -> bool:
        with self._cond:
            return self._closed

    @property
    def pending(self) -> bool:
        with self._cond:
            return self._fire_at is not None

    @property
    def busy(self) -> bool:
        """True while a callback is executing or one is pending."""
        with self._cond:
            return self._running or self._fire_at is not None

    def trigger(self) -> None:
        """Schedule (or reschedule) the callback ``delay`` seconds from now."""
        with self._cond:
            if self._closed:
                return
            self._fire_at = self._clock() + self.delay
            if self._thread is None:
                self._thread = threading.Thread(target=self._loop, name=self._name, daemon=True)
                self._thread.start()
            self._cond.notify_all()

    def cancel(self) -> None:
        """Drop a pending callback without running it."""
        with self._cond:
            self._fire_at = None
            self._cond.notify_all()

    def close(self, timeout: Optional[float] = 5.0) -> None:
        """Cancel any pending callback and stop the worker thread."""
        with self._cond:
            self._closed = True
            self._fire_at = None
            self._cond.notify_all()
            thread = self._thread
        if thread is not None and thread is not threading.current_thread():
            thread.join(timeout=timeout)

    def _loop(self) -> None:
        while True:
            with self._cond:
                while not self._closed:
                    if self._fire_at is None:
                        self._cond.wait()
                        continue
                    remaining = self._fire_at - self._clock()
                    if remaining <= 0:
                        break
                    self._cond.wait(timeout=remaining)
                if self._closed:
                    return
                self._fire_at = None
                self._running = True
            try:
                self._callback()
            except Exception:
                logger.exception("Debounced callback failed")
            finally:
                with self._cond:
                    self._running = False
                    self._cond.notify_all()


class _SourceEventHandler(FileSystemEventHandler):
    """Forwards events that touch the watched file, including renames onto it."""

    def __init__(self, target: Path, on_change: Callable[[], None]) -> None:
        super().__init__()
        self._target = target
        self._on_change = on_change

    def _matches(self, path: object) -> bool:
        if not path:
            return False
        if isinstance(path, bytes):
            path = path.decode()
        return Path(str(path)).resolve(strict=False) == self._target

    def on_any_event(self, event: FileSystemEvent) -> None:
        if event.is_directory or event.event_type not in {"created", "modified", "moved", "closed"}:
            return
        if self._matches(event.src_path) or self._matches(getattr(event, "dest_path", "")):
            logger.debug("Change detected: %s %s", event.event_type, event.src_path)
            self._on_change()


class SourceWatcher:
    """Watches the Postman collection and schedules a conversion after changes settle.

    Every qualifying filesystem event re-arms a :class:`Debouncer` with the
    quiet period. When the debouncer fires, the file's modification time is
    checked against the stability window; a file written too recently re-arms
    the debouncer instead of converting a half-written save.
    """

    def __init__(
        self,
        source_path: Path,
        on_settled: Callable[[], None],
        *,
        quiet_period: float = 2.0,
        stability_window: float = 2.0,
        poll_interval: float = 0.1,
    ) -> None:
        self._source_path = Path(source_path).resolve(strict=False)
        self._on_settled = on_settled
        self._stability_window = stability_window
        self._poll_interval = poll_interval
        self._debouncer = Debouncer(quiet_period, self._fire, name="source-watcher")
        self._observer: Observer | None = None

    @property
    def running(self) -> bool:
        return self._observer is not None

    @property
    def debouncer(self) -> Debouncer:
        return self._debouncer

    def notify_change(self) -> None:
        """Record a change to the collection, as the filesystem observer does."""
        self._debouncer.trigger()

    def _fire(self) -> None:
        try:
            modified = self._source_path.stat().st_mtime
        except FileNotFoundError:
            logger.warning("Postman collection disappeared before conversion: %s", self._source_path)
            return
        age = time.time() - modified
        if age < self._stability_window:
            logger.debug("Postman collection still settling (%.2fs old); waiting", age)
            time.sleep(min(self._poll_interval, self._stability_window - age))
            self._debouncer.trigger()
            return
        logger.info("Detected change in Postman collection. Converting...")
        self._on_settled()

    def start(self) -> None:
        """Begin watching the directory holding the collection."""
        if self._observer is not None:
            return
        if self._debouncer.closed:
            self._debouncer = Debouncer(self._debouncer.delay, self._fire, name="source-watcher")
        directory = self._source_path.parent
        directory.mkdir(parents=True, exist_ok=True)
        self._observer = Observer()
        self._observer.schedule(
            _SourceEventHandler(self._source_path, self.notify_change),
            str(directory),
            recursive=False,
        )
        self._observer.start()
        logger.info("Watching Postman collection at %s", self._source_path)

    def stop(self) -> None:
        """Stop watching and drop any pending conversion."""
        self._debouncer.close()
        if self._observer is None:
            return
        self._observer.stop()
        self._observer.join(timeout=5)
        self._observer = None
        logger.info("Stopped watching %s", self._source_path)
