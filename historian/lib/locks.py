"""Single-writer locking for merge targets.

Two levels:

- KeyLockManager: in-process claims at surrogate-key granularity. Runs on
  disjoint key sets of one target proceed concurrently; overlapping claims
  conflict.
- file_lock: an advisory O_EXCL lockfile next to a file-backed store, for
  coordination between processes on one host. It is not a distributed lock.
"""

from __future__ import annotations

import errno
import logging
import os
import threading
import time
from contextlib import contextmanager
from pathlib import Path
from typing import Dict, Iterable, Iterator, Optional, Set

from historian.lib.errors import ConcurrentWriteError

logger = logging.getLogger(__name__)

__all__ = ["KeyLockManager", "file_lock", "get_lock_manager"]


class KeyLockManager:
    """Claims surrogate keys of a target for one run at a time.

    Example:
        locks = KeyLockManager()
        with locks.claim("movielens.tags", keys, holder=run_id):
            ...  # no other run can write these keys
    """

    def __init__(self) -> None:
        self._claims: Dict[str, Dict[str, str]] = {}
        self._cond = threading.Condition()

    def _conflicts(self, target: str, keys: Set[str], holder: str) -> Dict[str, str]:
        held = self._claims.get(target, {})
        return {k: held[k] for k in keys if k in held and held[k] != holder}

    @contextmanager
    def claim(
        self,
        target: str,
        keys: Iterable[str],
        holder: str,
        *,
        timeout: float = 0.0,
    ) -> Iterator[Set[str]]:
        """Claim keys for the duration of the block, all or nothing.

        Args:
            target: Merge target name
            keys: Surrogate keys to claim
            holder: Claim owner (the run id)
            timeout: Seconds to wait for conflicting claims to clear

        Raises:
            ConcurrentWriteError: If another holder keeps any key past timeout
        """
        wanted = set(keys)
        deadline = time.monotonic() + timeout

        with self._cond:
            while True:
                conflicts = self._conflicts(target, wanted, holder)
                if not conflicts:
                    break
                remaining = deadline - time.monotonic()
                if remaining <= 0:
                    holders = sorted(set(conflicts.values()))
                    raise ConcurrentWriteError(
                        f"{len(conflicts)} key(s) of {target} are claimed by another run",
                        holder=", ".join(holders),
                        keys=conflicts.keys(),
                        target=target,
                        suggestion="Runs against one target must not overlap; retry after it finishes.",
                    )
                self._cond.wait(remaining)

            held = self._claims.setdefault(target, {})
            newly_claimed = {k for k in wanted if k not in held}
            for key in newly_claimed:
                held[key] = holder

        logger.debug("Run %s claimed %d key(s) of %s", holder, len(newly_claimed), target)
        try:
            yield wanted
        finally:
            with self._cond:
                held = self._claims.get(target, {})
                for key in newly_claimed:
                    held.pop(key, None)
                if not held:
                    self._claims.pop(target, None)
                self._cond.notify_all()
            logger.debug("Run %s released %d key(s) of %s", holder, len(newly_claimed), target)

    def held_keys(self, target: str) -> Dict[str, str]:
        """Snapshot of current claims for a target (key -> holder)."""
        with self._cond:
            return dict(self._claims.get(target, {}))


_default_manager = KeyLockManager()


def get_lock_manager() -> KeyLockManager:
    """Process-wide lock manager shared by coordinators that don't bring one."""
    return _default_manager


def _pid_alive(pid: int) -> bool:
    try:
        os.kill(pid, 0)
    except OSError as exc:
        # EPERM means the process exists but belongs to someone else
        return exc.errno != errno.ESRCH
    return True


@contextmanager
def file_lock(
    lock_path: Path,
    *,
    timeout: float = 30.0,
    poll_interval: float = 0.2,
) -> Iterator[Path]:
    """Hold an advisory lockfile for the duration of the block.

    A lockfile whose recorded PID is no longer running is treated as stale
    and removed.

    Args:
        lock_path: Lockfile path (e.g. ``tags.duckdb.lock``)
        timeout: Maximum seconds to wait before raising
        poll_interval: Poll interval while waiting

    Raises:
        ConcurrentWriteError: If the lock is still held after timeout
    """
    lock_path = Path(lock_path)
    lock_path.parent.mkdir(parents=True, exist_ok=True)
    start = time.monotonic()

    while True:
        try:
            fd = os.open(str(lock_path), os.O_CREAT | os.O_EXCL | os.O_WRONLY)
        except FileExistsError:
            pid: Optional[int]
            try:
                pid = int(lock_path.read_text(encoding="utf-8").strip())
            except (OSError, ValueError):
                pid = None

            if pid is None or not _pid_alive(pid):
                logger.warning("Removing stale lock %s (pid %s)", lock_path, pid)
                try:
                    lock_path.unlink()
                except FileNotFoundError:
                    pass
                continue

            if time.monotonic() - start >= timeout:
                raise ConcurrentWriteError(
                    f"Unable to acquire lock {lock_path} after {timeout}s",
                    holder=f"pid {pid}",
                )
            time.sleep(poll_interval)
            continue

        with os.fdopen(fd, "w") as f:
            f.write(str(os.getpid()))
        logger.debug("Acquired lock %s by pid %s", lock_path, os.getpid())
        break

    try:
        yield lock_path
    finally:
        try:
            lock_path.unlink()
            logger.debug("Released lock %s by pid %s", lock_path, os.getpid())
        except FileNotFoundError:
            pass
