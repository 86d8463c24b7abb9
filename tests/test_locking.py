"""
Tests for the file-based coordination lock.
"""

import threading
import time

import pytest

from postman_openapi_sync.errors import LockError
from postman_openapi_sync.locking import CoordinationLock


@pytest.fixture
def lock(tmp_path):
    return CoordinationLock(tmp_path / "locks", max_retries=1, retry_timeout=0.05, backoff=0.01)


class TestCoordinationLock:
    """Tests for acquire / release semantics."""

    def test_acquire_and_release(self, lock, tmp_path):
        handle = lock.acquire(tmp_path / "openapi.json")
        assert handle.lock_file.parent == lock.lock_dir
        assert not handle.released
        lock.release(handle)
        assert handle.released

    def test_release_is_idempotent(self, lock, tmp_path):
        handle = lock.acquire(tmp_path / "openapi.json")
        lock.release(handle)
        lock.release(handle)
        lock.release(None)

    def test_second_acquire_fails_while_held(self, lock, tmp_path):
        resource = tmp_path / "openapi.json"
        other = CoordinationLock(tmp_path / "locks", max_retries=1, retry_timeout=0.05, backoff=0.01)
        with lock.hold(resource):
            with pytest.raises(LockError):
                other.acquire(resource)
        handle = other.acquire(resource)
        other.release(handle)

    def test_distinct_resources_do_not_conflict(self, lock, tmp_path):
        with lock.hold(tmp_path / "a.json"):
            with lock.hold(tmp_path / "b.json"):
                pass

    def test_lock_file_is_keyed_to_resolved_path(self, lock, tmp_path):
        direct = lock.lock_file_for(tmp_path / "openapi.json")
        indirect = lock.lock_file_for(tmp_path / "sub" / ".." / "openapi.json")
        assert direct == indirect
        assert direct.name.startswith("openapi.json.")

    def test_waiter_acquires_after_release(self, tmp_path):
        resource = tmp_path / "openapi.json"
        holder = CoordinationLock(tmp_path / "locks")
        waiter = CoordinationLock(tmp_path / "locks", max_retries=5, retry_timeout=0.2, backoff=0.01)
        handle = holder.acquire(resource)
        acquired = []

        def wait_for_lock():
            with waiter.hold(resource):
                acquired.append(time.monotonic())

        thread = threading.Thread(target=wait_for_lock)
        thread.start()
        time.sleep(0.1)
        released_at = time.monotonic()
        holder.release(handle)
        thread.join(timeout=5)

        assert acquired and acquired[0] >= released_at
