"""Advisory lock on a backup root.

Backups and restores hold an exclusive ``flock`` on
``<backup root>/.partition-backup.lock`` for their whole duration, so a
second invocation against the same root fails fast instead of racing the
first one's rotation or archive writes.

Usage:
    from partition_backup.storage.device_lock import backup_root_lock

    with backup_root_lock(layout.root):
        # run the pipeline, write sidecars, rotate
        ...
"""

from __future__ import annotations

import fcntl
import os
from contextlib import contextmanager
from pathlib import Path
from typing import Generator

from partition_backup.logging import LoggerFactory

from .exceptions import DeviceUnavailableError, LockHeldError

LOCK_FILENAME = ".partition-backup.lock"

log = LoggerFactory.for_system()


@contextmanager
def backup_root_lock(root: Path) -> Generator[Path, None, None]:
    """Hold the advisory lock on ``root`` for the duration of the block.

    Raises:
        LockHeldError: If another process or operation already holds it
    """
    root = Path(root)
    lock_path = root / LOCK_FILENAME
    try:
        root.mkdir(parents=True, exist_ok=True)
        fd = os.open(lock_path, os.O_RDWR | os.O_CREAT, 0o644)
    except OSError as error:
        raise DeviceUnavailableError(str(root), f"cannot create lock file: {error}") from error
    try:
        try:
            fcntl.flock(fd, fcntl.LOCK_EX | fcntl.LOCK_NB)
        except BlockingIOError:
            raise LockHeldError(root) from None
        os.ftruncate(fd, 0)
        os.write(fd, f"{os.getpid()}\n".encode())
        log.debug(f"Acquired lock on {root}")
        try:
            yield lock_path
        finally:
            fcntl.flock(fd, fcntl.LOCK_UN)
            log.debug(f"Released lock on {root}")
    finally:
        os.close(fd)
