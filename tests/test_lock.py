from __future__ import annotations

import os
import subprocess
import sys
from pathlib import Path

import pytest

from upgrade_watcher.errors import ConfigurationError
from upgrade_watcher.lock import acquire, instance_lock

REPO_DIR = Path(__file__).resolve().parents[1]


def test_second_acquire_is_busy(tmp_path: Path) -> None:
    lock_file = tmp_path / "run" / "upgrade-watcher.lock"
    first = acquire(lock_file)
    assert first is not None
    try:
        assert acquire(lock_file) is None
    finally:
        first.release()
    again = acquire(lock_file)
    assert again is not None
    again.release()


def test_lock_dir_created_private(tmp_path: Path) -> None:
    lock_file = tmp_path / "run" / "upgrade-watcher.lock"
    with instance_lock(lock_file) as handle:
        assert handle is not None and handle.held
        assert lock_file.parent.stat().st_mode & 0o777 == 0o700
    assert not handle.held


def test_symlinked_lock_dir_refused(tmp_path: Path) -> None:
    real = tmp_path / "real"
    real.mkdir()
    link = tmp_path / "link"
    link.symlink_to(real)
    with pytest.raises(ConfigurationError, match="symlinked LOCK_DIR"):
        acquire(link / "upgrade-watcher.lock")
    assert list(real.iterdir()) == []


def test_symlinked_lock_file_refused(tmp_path: Path) -> None:
    lock_dir = tmp_path / "run"
    lock_dir.mkdir()
    target = tmp_path / "sensitive"
    target.write_text("keep me")
    (lock_dir / "upgrade-watcher.lock").symlink_to(target)
    with pytest.raises(ConfigurationError, match="cannot open lock file"):
        acquire(lock_dir / "upgrade-watcher.lock")
    assert target.read_text() == "keep me"


def test_lock_held_by_other_process_is_busy(tmp_path: Path) -> None:
    lock_file = tmp_path / "run" / "upgrade-watcher.lock"
    with instance_lock(lock_file) as handle:
        assert handle is not None
        probe = (
            "import sys\n"
            "from pathlib import Path\n"
            "from upgrade_watcher.lock import acquire\n"
            "sys.exit(0 if acquire(Path(sys.argv[1])) is None else 3)\n"
        )
        result = subprocess.run(
            [sys.executable, "-c", probe, str(lock_file)],
            env={**os.environ, "PYTHONPATH": str(REPO_DIR)},
            capture_output=True,
            timeout=30,
            check=False,
        )
        assert result.returncode == 0, result.stderr
