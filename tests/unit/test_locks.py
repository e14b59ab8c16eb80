"""Tests for key claims and lockfiles."""

import os
import threading
import time

import pytest

from historian.lib.errors import ConcurrentWriteError
from historian.lib.locks import KeyLockManager, file_lock, get_lock_manager


class TestKeyLockManager:
    """Tests for KeyLockManager.claim."""

    def test_claim_and_release(self, lock_manager):
        with lock_manager.claim("t", ["a", "b"], holder="run-1") as claimed:
            assert claimed == {"a", "b"}
            assert lock_manager.held_keys("t") == {"a": "run-1", "b": "run-1"}

        assert lock_manager.held_keys("t") == {}

    def test_overlap_conflicts(self, lock_manager):
        with lock_manager.claim("t", ["a", "b"], holder="run-1"):
            with pytest.raises(ConcurrentWriteError) as exc_info:
                with lock_manager.claim("t", ["b", "c"], holder="run-2"):
                    pass

        assert exc_info.value.holder == "run-1"
        assert exc_info.value.keys == ["b"]

    def test_failed_claim_takes_nothing(self, lock_manager):
        with lock_manager.claim("t", ["a"], holder="run-1"):
            with pytest.raises(ConcurrentWriteError):
                with lock_manager.claim("t", ["a", "z"], holder="run-2"):
                    pass
            assert "z" not in lock_manager.held_keys("t")

    def test_disjoint_keys_proceed(self, lock_manager):
        with lock_manager.claim("t", ["a"], holder="run-1"):
            with lock_manager.claim("t", ["b"], holder="run-2"):
                assert set(lock_manager.held_keys("t")) == {"a", "b"}

    def test_targets_are_independent(self, lock_manager):
        with lock_manager.claim("t1", ["a"], holder="run-1"):
            with lock_manager.claim("t2", ["a"], holder="run-2"):
                assert lock_manager.held_keys("t2") == {"a": "run-2"}

    def test_same_holder_is_reentrant(self, lock_manager):
        with lock_manager.claim("t", ["a"], holder="run-1"):
            with lock_manager.claim("t", ["a", "b"], holder="run-1"):
                assert set(lock_manager.held_keys("t")) == {"a", "b"}
            # Inner block only releases what it added
            assert lock_manager.held_keys("t") == {"a": "run-1"}

    def test_waits_for_release(self, lock_manager):
        released = threading.Event()

        def hold():
            with lock_manager.claim("t", ["a"], holder="run-1"):
                released.wait(1.0)
                time.sleep(0.05)

        worker = threading.Thread(target=hold)
        worker.start()
        while not lock_manager.held_keys("t"):
            time.sleep(0.01)

        released.set()
        with lock_manager.claim("t", ["a"], holder="run-2", timeout=5.0):
            assert lock_manager.held_keys("t") == {"a": "run-2"}
        worker.join()

    def test_default_manager_is_shared(self):
        assert get_lock_manager() is get_lock_manager()
        assert isinstance(get_lock_manager(), KeyLockManager)


class TestFileLock:
    """Tests for file_lock."""

    def test_creates_and_removes_lockfile(self, tmp_path):
        lock_path = tmp_path / "locks" / "tags.duckdb.lock"

        with file_lock(lock_path):
            assert lock_path.exists()
            assert lock_path.read_text() == str(os.getpid())

        assert not lock_path.exists()

    def test_held_lock_times_out(self, tmp_path):
        lock_path = tmp_path / "tags.duckdb.lock"

        with file_lock(lock_path):
            with pytest.raises(ConcurrentWriteError, match="Unable to acquire lock"):
                with file_lock(lock_path, timeout=0.1, poll_interval=0.05):
                    pass

    def test_stale_lock_removed(self, tmp_path):
        lock_path = tmp_path / "tags.duckdb.lock"
        lock_path.write_text("not-a-pid")

        with file_lock(lock_path, timeout=1.0):
            assert lock_path.read_text() == str(os.getpid())
