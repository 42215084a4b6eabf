"""Provenance checks for executables and the settings file.

All violations raise :class:`ConfigurationError`; none are retried.
"""

from __future__ import annotations

import logging
import stat
from pathlib import Path

from .config import WatcherConfig
from .errors import ConfigurationError
from .filesystem import Filesystem, sha256_file

LOGGER = logging.getLogger(__name__)

TRUSTED_UID = 0
_GROUP_OTHER_WRITE = stat.S_IWGRP | stat.S_IWOTH


class BinaryValidator:
    def __init__(self, fs: Filesystem | None = None, trusted_uid: int = TRUSTED_UID) -> None:
        self._fs = fs or Filesystem()
        self._trusted_uid = trusted_uid

    def check_permissions(self, path: Path, label: str) -> None:
        """Owner must be the trusted uid; no group/other write bit.  Missing paths pass."""
        if not self._fs.exists(path):
            return
        uid, mode = self._fs.stat_owner_mode(path)
        if uid != self._trusted_uid or mode & _GROUP_OTHER_WRITE:
            raise ConfigurationError(
                f"{label} must be owned by uid {self._trusted_uid} and not "
                f"group/other-writable: {path} (uid={uid} mode={mode:04o})"
            )

    def validate_candidate(self, path: Path, expected_sha256: str = "") -> None:
        if self._fs.is_symlink(path) or not self._fs.is_regular_file(path):
            raise ConfigurationError(f"BIN_NEW must be a regular file (not a symlink): {path}")
        if expected_sha256:
            actual = sha256_file(path)
            if actual != expected_sha256.lower():
                raise ConfigurationError(
                    f"BIN_NEW sha256 mismatch (expected {expected_sha256}, got {actual})"
                )
            LOGGER.info("SHA256 verification passed for BIN_NEW")
        self.check_permissions(path, "BIN_NEW")

    def validate_active(self, path: Path) -> None:
        if not self._fs.exists(path):
            LOGGER.info("BIN_ACTIVE does not exist yet (fresh install): %s", path)
            return
        if self._fs.is_symlink(path):
            raise ConfigurationError(f"BIN_ACTIVE must not be a symlink: {path}")
        if not self._fs.is_regular_file(path):
            raise ConfigurationError(f"BIN_ACTIVE must be a regular file: {path}")
        self.check_permissions(path, "BIN_ACTIVE")

    def validate_settings_file(self, path: Path | None) -> None:
        if path is None or not self._fs.exists(path):
            return
        if self._fs.is_symlink(path):
            raise ConfigurationError(f"settings file must not be a symlink: {path}")
        self.check_permissions(path, "settings file")

    def validate(self, config: WatcherConfig) -> None:
        """Run every startup check against *config*."""
        self.validate_settings_file(config.settings_path)
        self.validate_candidate(config.target.bin_new, config.target.bin_new_sha256)
        self.validate_active(config.target.bin_active)


def preflight(config: WatcherConfig, fs: Filesystem | None = None) -> None:
    """Check the swap and backup destinations are usable before polling starts."""
    fs = fs or Filesystem()
    active_dir = config.target.bin_active.parent
    if not fs.is_dir(active_dir):
        raise ConfigurationError(f"target directory does not exist: {active_dir}")
    if not fs.is_writable_dir(active_dir):
        raise ConfigurationError(f"cannot write to active binary directory: {active_dir}")

    if config.backup.enabled:
        if fs.is_symlink(config.backup.dir):
            raise ConfigurationError(f"refusing to use symlinked BACKUP_DIR: {config.backup.dir}")
        try:
            fs.mkdir_private(config.backup.dir)
        except OSError as exc:
            raise ConfigurationError(
                f"failed to create BACKUP_DIR {config.backup.dir}: {exc}"
            ) from None
