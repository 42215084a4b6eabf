"""Upgrade engine: wait for the target height, then swap the binary.

Orchestrates: poll height (adaptive interval) → stop service → verify
stopped → backup → install + atomic rename → start service → verify.
If the run aborts after the service was stopped and before the new
binary is confirmed running, one best-effort start is issued on the way
out so the node is not left down.
"""

from __future__ import annotations

import logging
import os
import time
from collections.abc import Callable
from pathlib import Path

from .backup import BackupManager
from .config import WatcherConfig
from .errors import SafetyAbort, SequenceError
from .filesystem import Filesystem
from .height import HeightSource
from .models import ObservedHeight, UpgradePhase, UpgradeRun
from .service import ServiceController

LOGGER = logging.getLogger(__name__)

RPC_FAILURE_ESCALATION_THRESHOLD = 10
"""Consecutive unavailable polls after which the warning becomes an error."""


def swap_temp_path(active: Path, service_name: str) -> Path:
    return active.parent / f".upgrade-watcher.{service_name}.{os.getpid()}"


class UpgradeEngine:
    def __init__(
        self,
        config: WatcherConfig,
        height_source: HeightSource,
        service: ServiceController,
        backup: BackupManager,
        fs: Filesystem | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self._config = config
        self._target = config.target
        self._policy = config.polling
        self._heights = height_source
        self._service = service
        self._backup = backup
        self._fs = fs or Filesystem()
        self._sleep = sleep
        self.observed = ObservedHeight()
        self.current_run: UpgradeRun | None = None

    # ------------------------------------------------------------------
    # Poll loop
    # ------------------------------------------------------------------

    def poll_once(self) -> tuple[int | None, float | None]:
        """Run one loop iteration without sleeping.

        Returns ``(height, interval)``; ``interval`` is ``None`` once the
        target is reached.  Raises :class:`SafetyAbort` if it was passed.
        """
        target = self._target.height
        height = self._heights.poll()
        if height is None:
            failures = self.observed.record_failure()
            LOGGER.warning(
                "RPC query failed (consecutive failures: %d), using fallback interval: %ss",
                failures,
                f"{self._policy.check_interval_s:g}",
            )
            if failures >= RPC_FAILURE_ESCALATION_THRESHOLD:
                LOGGER.error(
                    "RPC has failed %d times consecutively - may miss target height", failures
                )
            return None, self._policy.check_interval_s

        self.observed.record(height)
        if height > target:
            raise SafetyAbort(
                f"current height {height} already surpassed target {target}; refusing to run"
            )
        if height == target:
            LOGGER.info("reached target height: %d", height)
            return height, None

        remaining = target - height
        interval = self._policy.interval_for(remaining)
        LOGGER.info(
            "height: %d, remaining: %d blocks, next check in %ss",
            height,
            remaining,
            f"{interval:g}",
        )
        return height, interval

    def wait_for_target(self) -> int:
        """Block until the observed height equals the target."""
        LOGGER.info("watching for height == %d (will fail if surpassed)", self._target.height)
        while True:
            height, interval = self.poll_once()
            if interval is None and height is not None:
                return height
            self._sleep(interval or 0.0)

    # ------------------------------------------------------------------
    # Upgrade sequence
    # ------------------------------------------------------------------

    def run_sequence(self, height: int) -> UpgradeRun:
        run = UpgradeRun(height=height)
        self.current_run = run
        LOGGER.info("upgrade sequence initiated at height %d", height)
        try:
            self._stop(run)
            self._backup_active(run)
            self._swap(run)
            self._start(run)
            self._confirm(run)
        except BaseException:
            run.fail()
            LOGGER.error("upgrade run %s", run.describe())
            raise
        finally:
            if run.needs_rollback:
                self._rollback_start(run)
        return run

    def run(self) -> UpgradeRun:
        return self.run_sequence(self.wait_for_target())

    def _stop(self, run: UpgradeRun) -> None:
        name = self._target.service_name
        run.advance(UpgradePhase.stopping)
        LOGGER.info("stopping service: %s", name)
        if not self._service.stop(name):
            raise SequenceError(run.phase, f"failed to stop service: {name}")
        run.service_stopped = True

        self._sleep(self._config.sequence.stop_grace_s)
        if self._service.is_active(name):
            raise SequenceError(run.phase, f"service is still active after stop command: {name}")
        run.advance(UpgradePhase.stopped_verified)
        LOGGER.info("service stopped successfully")

    def _backup_active(self, run: UpgradeRun) -> None:
        run.advance(UpgradePhase.backing_up)
        try:
            run.backup_path = self._backup.backup(
                self._target.bin_active, self._target.service_name
            )
        except OSError as exc:
            raise SequenceError(
                run.phase, f"failed to backup binary {self._target.bin_active}: {exc}"
            ) from exc

    def _swap(self, run: UpgradeRun) -> None:
        run.advance(UpgradePhase.swapping)
        active = self._target.bin_active
        LOGGER.info("switching binary: %s", active)
        if not self._fs.is_dir(active.parent):
            raise SequenceError(run.phase, f"target directory does not exist: {active.parent}")

        tmp = swap_temp_path(active, self._target.service_name)
        try:
            self._fs.install_file(self._target.bin_new, tmp, mode=0o755)
        except OSError as exc:
            self._fs.remove(tmp)
            raise SequenceError(
                run.phase, f"failed to install new binary to temporary location {tmp}: {exc}"
            ) from exc
        try:
            self._fs.atomic_rename(tmp, active)
        except OSError as exc:
            self._fs.remove(tmp)
            raise SequenceError(run.phase, f"failed to replace binary {active}: {exc}") from exc
        LOGGER.info("binary replaced successfully")

    def _start(self, run: UpgradeRun) -> None:
        name = self._target.service_name
        run.advance(UpgradePhase.starting)
        LOGGER.info("starting service: %s", name)
        if not self._service.start(name):
            raise SequenceError(run.phase, f"failed to start service: {name}")

        self._sleep(self._config.sequence.start_grace_s)
        if not self._service.is_active(name):
            LOGGER.error("check service logs: journalctl -u %s -n 50", name)
            raise SequenceError(
                run.phase, f"service failed to start or crashed immediately: {name}"
            )
        run.advance(UpgradePhase.started_verified)
        LOGGER.info("service started successfully with new binary")

    def _confirm(self, run: UpgradeRun) -> None:
        name = self._target.service_name
        if not self._service.is_active(name):
            raise SequenceError(run.phase, "service status check failed after upgrade")
        run.advance(UpgradePhase.done)
        LOGGER.info("upgrade completed successfully")
        LOGGER.info(
            "service %s is running with new binary at %s", name, self._target.bin_active
        )

    def _rollback_start(self, run: UpgradeRun) -> None:
        name = self._target.service_name
        run.rollback_attempted = True
        LOGGER.warning("attempting rollback start of service: %s", name)
        try:
            started = self._service.start(name)
        except Exception:
            LOGGER.exception("rollback start raised for service: %s", name)
            return
        if started:
            LOGGER.info("rollback start issued for service: %s", name)
        else:
            LOGGER.error("rollback start failed for service: %s", name)
