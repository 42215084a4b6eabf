"""State carried by the poll loop and by one upgrade attempt."""

from __future__ import annotations

import enum
from dataclasses import dataclass, field
from pathlib import Path


class UpgradePhase(enum.StrEnum):
    triggered = "triggered"
    stopping = "stopping"
    stopped_verified = "stopped_verified"
    backing_up = "backing_up"
    swapping = "swapping"
    starting = "starting"
    started_verified = "started_verified"
    done = "done"
    failed = "failed"


SEQUENCE: tuple[UpgradePhase, ...] = (
    UpgradePhase.triggered,
    UpgradePhase.stopping,
    UpgradePhase.stopped_verified,
    UpgradePhase.backing_up,
    UpgradePhase.swapping,
    UpgradePhase.starting,
    UpgradePhase.started_verified,
    UpgradePhase.done,
)

TERMINAL_PHASES = frozenset({UpgradePhase.done, UpgradePhase.failed})


@dataclass
class ObservedHeight:
    height: int | None = None
    consecutive_failures: int = 0

    def record(self, height: int) -> None:
        self.height = height
        self.consecutive_failures = 0

    def record_failure(self) -> int:
        self.consecutive_failures += 1
        return self.consecutive_failures


@dataclass
class UpgradeRun:
    """One pass through the upgrade sequence.

    Phases only move forward, one step at a time, and ``failed`` is
    reachable from any non-terminal phase.  ``failed_at`` keeps the phase
    that was in progress when the run failed.
    """

    height: int
    phase: UpgradePhase = UpgradePhase.triggered
    service_stopped: bool = False
    failed_at: UpgradePhase | None = None
    backup_path: Path | None = None
    rollback_attempted: bool = False
    history: list[UpgradePhase] = field(default_factory=lambda: [UpgradePhase.triggered])

    @property
    def finished(self) -> bool:
        return self.phase in TERMINAL_PHASES

    def advance(self, nxt: UpgradePhase) -> None:
        if self.finished:
            raise RuntimeError(f"upgrade run already finished in phase {self.phase}")
        expected = SEQUENCE[SEQUENCE.index(self.phase) + 1]
        if nxt is not expected:
            raise RuntimeError(f"illegal transition {self.phase} -> {nxt} (expected {expected})")
        self.phase = nxt
        self.history.append(nxt)

    def fail(self) -> None:
        if self.finished:
            return
        self.failed_at = self.phase
        self.phase = UpgradePhase.failed
        self.history.append(UpgradePhase.failed)

    @property
    def needs_rollback(self) -> bool:
        """The service was stopped by this run and never confirmed running again."""
        if not self.service_stopped or self.rollback_attempted:
            return False
        reached = self.failed_at if self.phase is UpgradePhase.failed else self.phase
        if reached is None:
            return False
        return SEQUENCE.index(reached) < SEQUENCE.index(UpgradePhase.started_verified)

    def describe(self) -> str:
        if self.phase is UpgradePhase.failed and self.failed_at is not None:
            return f"FAILED at {self.failed_at.value.upper()}"
        return self.phase.value.upper()
