"""Filesystem and digest capabilities used by validation, backup and swap.

Writes follow the same rules as the rest of the package: private
directories are 0700, backups are 0600, and the active executable is only
ever replaced by ``os.replace`` of a file staged in the same directory.
"""

from __future__ import annotations

import hashlib
import os
import shutil
import stat
import tempfile
from pathlib import Path

_IO_CHUNK = 1024 * 1024


def sha256_file(path: Path) -> str:
    """Return the lowercase hex SHA-256 of *path*, read in chunks."""
    h = hashlib.sha256()
    with path.open("rb") as f:
        while True:
            chunk = f.read(_IO_CHUNK)
            if not chunk:
                break
            h.update(chunk)
    return h.hexdigest()


class Filesystem:
    """Thin wrapper over the OS calls the engine needs.  Override for testing."""

    def exists(self, path: Path) -> bool:
        return os.path.lexists(path)

    def is_symlink(self, path: Path) -> bool:
        return path.is_symlink()

    def is_regular_file(self, path: Path) -> bool:
        try:
            return stat.S_ISREG(os.lstat(path).st_mode)
        except FileNotFoundError:
            return False

    def is_dir(self, path: Path) -> bool:
        return path.is_dir()

    def stat_owner_mode(self, path: Path) -> tuple[int, int]:
        """Return ``(uid, permission bits)`` without following symlinks."""
        st = os.lstat(path)
        return st.st_uid, stat.S_IMODE(st.st_mode)

    def mkdir_private(self, path: Path) -> None:
        path.mkdir(parents=True, exist_ok=True)
        os.chmod(path, 0o700)

    def copy_file(self, src: Path, dest: Path, mode: int = 0o600) -> None:
        shutil.copyfile(src, dest)
        os.chmod(dest, mode)

    def install_file(self, src: Path, dest: Path, mode: int = 0o755) -> None:
        """Copy *src* into a freshly created *dest*, never through an existing link."""
        self.remove(dest)
        flags = os.O_WRONLY | os.O_CREAT | os.O_EXCL | os.O_NOFOLLOW | os.O_CLOEXEC
        fd = os.open(dest, flags, 0o600)
        with os.fdopen(fd, "wb") as out, src.open("rb") as inp:
            shutil.copyfileobj(inp, out, _IO_CHUNK)
            os.fchmod(out.fileno(), mode)

    def atomic_rename(self, src: Path, dest: Path) -> None:
        os.replace(src, dest)

    def remove(self, path: Path) -> None:
        try:
            os.unlink(path)
        except FileNotFoundError:
            pass

    def is_writable_dir(self, path: Path) -> bool:
        """Probe *path* by creating and removing a private temp file."""
        try:
            fd, probe = tempfile.mkstemp(dir=str(path), prefix=".upgrade-watcher.write-test.")
        except OSError:
            return False
        os.close(fd)
        os.unlink(probe)
        return True
