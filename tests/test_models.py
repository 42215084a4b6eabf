from __future__ import annotations

import pytest

from upgrade_watcher.models import SEQUENCE, ObservedHeight, UpgradePhase, UpgradeRun


def _advance_to(run: UpgradeRun, phase: UpgradePhase) -> None:
    for nxt in SEQUENCE[1 : SEQUENCE.index(phase) + 1]:
        run.advance(nxt)


def test_run_starts_triggered() -> None:
    run = UpgradeRun(height=1000)
    assert run.phase is UpgradePhase.triggered
    assert run.history == [UpgradePhase.triggered]
    assert not run.finished


def test_skipping_a_phase_is_rejected() -> None:
    run = UpgradeRun(height=1000)
    with pytest.raises(RuntimeError, match="illegal transition"):
        run.advance(UpgradePhase.swapping)


def test_no_transition_after_done() -> None:
    run = UpgradeRun(height=1000)
    _advance_to(run, UpgradePhase.done)
    assert run.finished
    with pytest.raises(RuntimeError, match="already finished"):
        run.advance(UpgradePhase.done)


def test_fail_records_phase_in_progress() -> None:
    run = UpgradeRun(height=1000)
    _advance_to(run, UpgradePhase.swapping)
    run.fail()
    assert run.phase is UpgradePhase.failed
    assert run.failed_at is UpgradePhase.swapping
    assert run.describe() == "FAILED at SWAPPING"
    # Failing twice keeps the first failure point.
    run.fail()
    assert run.failed_at is UpgradePhase.swapping
    assert run.history.count(UpgradePhase.failed) == 1


@pytest.mark.parametrize(
    ("phase", "expected"),
    [
        (UpgradePhase.stopping, True),
        (UpgradePhase.backing_up, True),
        (UpgradePhase.swapping, True),
        (UpgradePhase.starting, True),
        (UpgradePhase.started_verified, False),
    ],
)
def test_rollback_needed_only_before_start_is_confirmed(
    phase: UpgradePhase, expected: bool
) -> None:
    run = UpgradeRun(height=1000)
    _advance_to(run, phase)
    run.service_stopped = True
    run.fail()
    assert run.needs_rollback is expected


def test_no_rollback_when_service_never_stopped() -> None:
    run = UpgradeRun(height=1000)
    _advance_to(run, UpgradePhase.stopping)
    run.fail()
    assert not run.needs_rollback


def test_rollback_is_owed_once() -> None:
    run = UpgradeRun(height=1000)
    _advance_to(run, UpgradePhase.starting)
    run.service_stopped = True
    run.fail()
    run.rollback_attempted = True
    assert not run.needs_rollback


def test_observed_height_counts_and_resets_failures() -> None:
    observed = ObservedHeight()
    assert observed.record_failure() == 1
    assert observed.record_failure() == 2
    observed.record(42)
    assert observed.height == 42
    assert observed.consecutive_failures == 0
