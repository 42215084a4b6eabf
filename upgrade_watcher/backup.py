from __future__ import annotations

import logging
import time
from collections.abc import Callable
from pathlib import Path

from .config import BackupConfig
from .filesystem import Filesystem

LOGGER = logging.getLogger(__name__)

BACKUP_TIMESTAMP_FORMAT = "%Y%m%d_%H%M%S"


def backup_name(service_name: str, now: float) -> str:
    stamp = time.strftime(BACKUP_TIMESTAMP_FORMAT, time.localtime(now))
    return f"{service_name}_{stamp}.backup"


class BackupManager:
    """Snapshot the active executable before it is replaced.

    ``backup`` returns the artifact path, or ``None`` when the backup was
    skipped (disabled, or nothing installed yet).  Copy failures propagate
    as ``OSError`` so the engine can abort before the swap.
    """

    def __init__(
        self,
        config: BackupConfig,
        fs: Filesystem | None = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._config = config
        self._fs = fs or Filesystem()
        self._clock = clock

    def backup(self, active_path: Path, service_name: str) -> Path | None:
        if not self._config.enabled:
            LOGGER.info("binary backup disabled, skipping")
            return None
        if not self._fs.is_regular_file(active_path):
            LOGGER.warning("BIN_ACTIVE does not exist, skipping backup: %s", active_path)
            return None

        self._fs.mkdir_private(self._config.dir)
        dest = self._config.dir / backup_name(service_name, self._clock())
        self._fs.copy_file(active_path, dest, mode=0o600)
        LOGGER.info("backed up binary to: %s", dest)
        return dest
