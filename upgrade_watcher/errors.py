"""Error taxonomy for the upgrade watcher.

Every fatal category derives from :class:`WatcherError` and carries the
process exit code the CLI should return.  Lock contention is *not* an
error and is reported as a return value by :mod:`upgrade_watcher.lock`.
"""

from __future__ import annotations


class WatcherError(Exception):
    exit_code: int = 1


class ConfigurationError(WatcherError):
    """Missing/invalid setting, unsafe file ownership or permissions, digest mismatch."""


class SafetyAbort(WatcherError):
    """Observed height already surpassed the target."""


class SequenceError(WatcherError):
    """A step of the upgrade sequence failed."""

    def __init__(self, phase: str, message: str) -> None:
        super().__init__(message)
        self.phase = phase


class TransientIOError(Exception):
    """A single RPC attempt failed.  Contained inside the height source."""
