"""Single-instance lock bound to the lifetime of an open file descriptor.

The kernel drops a ``flock`` when the holding descriptor is closed, which
also happens when the process dies, so a crashed watcher never leaves a
stale lock behind.
"""

from __future__ import annotations

import fcntl
import logging
import os
from collections.abc import Iterator
from contextlib import contextmanager
from pathlib import Path

from .errors import ConfigurationError

LOGGER = logging.getLogger(__name__)


class LockHandle:
    def __init__(self, path: Path, fd: int) -> None:
        self.path = path
        self._fd: int | None = fd

    @property
    def held(self) -> bool:
        return self._fd is not None

    def release(self) -> None:
        if self._fd is None:
            return
        os.close(self._fd)
        self._fd = None


def acquire(lock_file: Path) -> LockHandle | None:
    """Try to take the lock without blocking.

    Returns ``None`` when another process holds it.  A symlinked lock
    directory is refused with :class:`ConfigurationError`.
    """
    lock_dir = lock_file.parent
    if lock_dir.is_symlink():
        raise ConfigurationError(f"refusing to use symlinked LOCK_DIR: {lock_dir}")
    try:
        lock_dir.mkdir(parents=True, exist_ok=True)
        os.chmod(lock_dir, 0o700)
        fd = os.open(str(lock_file), os.O_CREAT | os.O_RDWR | os.O_NOFOLLOW | os.O_CLOEXEC, 0o600)
    except OSError as exc:
        raise ConfigurationError(f"cannot open lock file {lock_file}: {exc}") from None

    try:
        fcntl.flock(fd, fcntl.LOCK_EX | fcntl.LOCK_NB)
    except BlockingIOError:
        os.close(fd)
        return None
    except OSError as exc:
        os.close(fd)
        raise ConfigurationError(f"cannot lock {lock_file}: {exc}") from None
    LOGGER.debug("Acquired lock %s", lock_file)
    return LockHandle(lock_file, fd)


@contextmanager
def instance_lock(lock_file: Path) -> Iterator[LockHandle | None]:
    """Hold the lock for the duration of the block; yields ``None`` when busy."""
    handle = acquire(lock_file)
    try:
        yield handle
    finally:
        if handle is not None:
            handle.release()
