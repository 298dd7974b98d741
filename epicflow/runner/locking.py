"""
One executor per epic.

An advisory flock on artifacts/.locks/epic-{id}.lock. The file holds the
holder's pid for diagnostics and is left in place after release: deleting it
would let a waiting process lock an inode nobody else can see.
"""

import fcntl
import os
import time
from contextlib import contextmanager
from pathlib import Path
from typing import IO


class LockTimeout(Exception):
    """Another process holds the epic lock."""


def lock_path(artifacts_dir: Path, epic_id: str) -> Path:
    return Path(artifacts_dir) / ".locks" / f"epic-{epic_id}.lock"


def _try_lock(fd: IO) -> bool:
    try:
        fcntl.flock(fd, fcntl.LOCK_EX | fcntl.LOCK_NB)
    except BlockingIOError:
        return False
    return True


def _holder(fd: IO) -> str:
    fd.seek(0)
    return fd.read().strip() or "unknown"


def is_locked(artifacts_dir: Path, epic_id: str) -> bool:
    path = lock_path(artifacts_dir, epic_id)
    if not path.exists():
        return False
    with open(path) as fd:
        if not _try_lock(fd):
            return True
        fcntl.flock(fd, fcntl.LOCK_UN)
    return False


@contextmanager
def epic_lock(artifacts_dir: Path, epic_id: str, timeout: int = 0):
    """
    Hold the epic's lock for the duration of the block; yields the lock path.

    Raises:
        LockTimeout: if the lock is still held after timeout seconds (0 means
            don't wait)
    """
    path = lock_path(artifacts_dir, epic_id)
    path.parent.mkdir(parents=True, exist_ok=True)

    # a+ so a waiting process doesn't wipe the holder's pid
    fd = open(path, "a+")
    deadline = time.monotonic() + timeout
    while not _try_lock(fd):
        if time.monotonic() >= deadline:
            holder = _holder(fd)
            fd.close()
            raise LockTimeout(f"Epic {epic_id} is already being executed by pid {holder} (lock: {path})")
        time.sleep(1)

    try:
        fd.seek(0)
        fd.truncate()
        fd.write(f"{os.getpid()}\n")
        fd.flush()
        yield path
    finally:
        try:
            fcntl.flock(fd, fcntl.LOCK_UN)
        finally:
            fd.close()
