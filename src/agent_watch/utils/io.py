"""File helpers for the settings file.

atomic_write_text() replaces the destination in one step so a crash never
leaves a half-written settings file behind. read_text_locked() takes a
shared lock while reading so it never observes a concurrent writer midway.
"""
from __future__ import annotations

import logging
import os
import sys
import tempfile
from collections.abc import Iterator
from contextlib import contextmanager
from pathlib import Path
from typing import TextIO

logger = logging.getLogger(__name__)

SETTINGS_FILE_MODE = 0o600


@contextmanager
def shared_file_lock(handle: TextIO) -> Iterator[bool]:
    """Hold a shared advisory lock on an open file.

    Yields True when the lock was taken. Platforms or filesystems without
    locking support yield False and the read proceeds unlocked.
    """
    if sys.platform == "win32":
        import msvcrt

        def lock() -> None:
            msvcrt.locking(handle.fileno(), msvcrt.LK_NBLCK, 1)

        def unlock() -> None:
            msvcrt.locking(handle.fileno(), msvcrt.LK_UNLCK, 1)
    else:
        import fcntl

        def lock() -> None:
            fcntl.flock(handle, fcntl.LOCK_SH)

        def unlock() -> None:
            fcntl.flock(handle, fcntl.LOCK_UN)

    locked = False
    try:
        lock()
        locked = True
    except OSError as e:
        logger.debug("Reading %s without a lock: %s", getattr(handle, "name", handle), e)

    try:
        yield locked
    finally:
        if locked:
            try:
                unlock()
            except OSError:
                pass


def read_text_locked(path: str | Path) -> str:
    """Read a text file while holding a shared lock on it."""
    with open(path, encoding="utf-8") as handle:
        with shared_file_lock(handle):
            return handle.read()


def atomic_write_text(path: str | Path, data: str, perms: int = SETTINGS_FILE_MODE) -> None:
    """Write text to path atomically, then restrict its permissions.

    The content goes to a temporary file in the destination directory which
    is fsynced and moved into place with os.replace(). The temporary file is
    removed if anything fails before the move.
    """
    dest = Path(path)
    dest.parent.mkdir(parents=True, exist_ok=True)

    fd, tmp_name = tempfile.mkstemp(dir=dest.parent, prefix=f".{dest.name}.", suffix=".tmp")
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as tmp:
            tmp.write(data)
            tmp.flush()
            os.fsync(tmp.fileno())
        os.replace(tmp_name, dest)
    except BaseException:
        try:
            os.unlink(tmp_name)
        except OSError:
            pass
        raise

    try:
        os.chmod(dest, perms)
    except PermissionError:
        logger.warning("Could not set permissions %s on %s", oct(perms), dest)
