from __future__ import annotations

import hashlib
import os
from pathlib import Path

import pytest
from builders import NEW_BINARY, local_validator, make_config

from upgrade_watcher.errors import ConfigurationError
from upgrade_watcher.filesystem import Filesystem, sha256_file
from upgrade_watcher.validation import BinaryValidator, preflight


class TestCandidate:
    def test_valid_candidate_passes(self, tmp_path: Path) -> None:
        cfg = make_config(tmp_path)
        local_validator().validate_candidate(cfg.target.bin_new)

    def test_missing_candidate_is_fatal(self, tmp_path: Path) -> None:
        with pytest.raises(ConfigurationError, match="BIN_NEW must be a regular file"):
            local_validator().validate_candidate(tmp_path / "nope")

    def test_symlinked_candidate_is_fatal(self, tmp_path: Path) -> None:
        cfg = make_config(tmp_path)
        link = tmp_path / "link"
        link.symlink_to(cfg.target.bin_new)
        with pytest.raises(ConfigurationError, match="not a symlink"):
            local_validator().validate_candidate(link)

    def test_directory_candidate_is_fatal(self, tmp_path: Path) -> None:
        with pytest.raises(ConfigurationError):
            local_validator().validate_candidate(tmp_path)

    def test_group_writable_candidate_is_fatal(self, tmp_path: Path) -> None:
        cfg = make_config(tmp_path)
        os.chmod(cfg.target.bin_new, 0o775)
        with pytest.raises(ConfigurationError, match="not group/other-writable"):
            local_validator().validate_candidate(cfg.target.bin_new)

    def test_other_writable_candidate_is_fatal(self, tmp_path: Path) -> None:
        cfg = make_config(tmp_path)
        os.chmod(cfg.target.bin_new, 0o757)
        with pytest.raises(ConfigurationError):
            local_validator().validate_candidate(cfg.target.bin_new)

    def test_untrusted_owner_is_fatal(self, tmp_path: Path) -> None:
        cfg = make_config(tmp_path)
        validator = BinaryValidator(trusted_uid=os.getuid() + 1)
        with pytest.raises(ConfigurationError, match="must be owned by uid"):
            validator.validate_candidate(cfg.target.bin_new)

    def test_matching_digest_passes(self, tmp_path: Path) -> None:
        cfg = make_config(tmp_path)
        digest = hashlib.sha256(NEW_BINARY).hexdigest()
        local_validator().validate_candidate(cfg.target.bin_new, digest.upper())

    def test_digest_mismatch_is_fatal(self, tmp_path: Path) -> None:
        cfg = make_config(tmp_path)
        with pytest.raises(ConfigurationError, match="sha256 mismatch"):
            local_validator().validate_candidate(cfg.target.bin_new, "0" * 64)

    def test_validation_is_repeatable(self, tmp_path: Path) -> None:
        cfg = make_config(tmp_path)
        validator = local_validator()
        validator.validate(cfg)
        validator.validate(cfg)
        os.chmod(cfg.target.bin_new, 0o777)
        for _ in range(2):
            with pytest.raises(ConfigurationError):
                validator.validate(cfg)


class TestActive:
    def test_absent_active_is_tolerated(self, tmp_path: Path) -> None:
        cfg = make_config(tmp_path, active=False)
        local_validator().validate_active(cfg.target.bin_active)

    def test_symlinked_active_is_fatal(self, tmp_path: Path) -> None:
        cfg = make_config(tmp_path, active=False)
        cfg.target.bin_active.symlink_to(cfg.target.bin_new)
        with pytest.raises(ConfigurationError, match="must not be a symlink"):
            local_validator().validate_active(cfg.target.bin_active)

    def test_dangling_symlink_active_is_fatal(self, tmp_path: Path) -> None:
        cfg = make_config(tmp_path, active=False)
        cfg.target.bin_active.symlink_to(tmp_path / "gone")
        with pytest.raises(ConfigurationError, match="must not be a symlink"):
            local_validator().validate_active(cfg.target.bin_active)


class TestSettingsFile:
    def test_absent_settings_file_passes(self, tmp_path: Path) -> None:
        local_validator().validate_settings_file(None)
        local_validator().validate_settings_file(tmp_path / "absent.yaml")

    def test_world_writable_settings_file_is_fatal(self, tmp_path: Path) -> None:
        settings = tmp_path / "watcher.yaml"
        settings.write_text("target: {}\n")
        os.chmod(settings, 0o666)
        with pytest.raises(ConfigurationError, match="settings file"):
            local_validator().validate_settings_file(settings)


class TestPreflight:
    def test_creates_private_backup_dir(self, tmp_path: Path) -> None:
        cfg = make_config(tmp_path)
        preflight(cfg)
        assert cfg.backup.dir.is_dir()
        assert cfg.backup.dir.stat().st_mode & 0o777 == 0o700
        assert list(cfg.target.bin_active.parent.glob(".upgrade-watcher.write-test.*")) == []

    def test_backup_dir_not_created_when_disabled(self, tmp_path: Path) -> None:
        cfg = make_config(tmp_path, backup_enabled=False)
        preflight(cfg)
        assert not cfg.backup.dir.exists()

    def test_missing_active_dir_is_fatal(self, tmp_path: Path) -> None:
        cfg = make_config(tmp_path, active=False)
        cfg.target.bin_active.parent.rmdir()
        with pytest.raises(ConfigurationError, match="target directory does not exist"):
            preflight(cfg)

    def test_unwritable_active_dir_is_fatal(self, tmp_path: Path) -> None:
        class _ReadOnly(Filesystem):
            def is_writable_dir(self, path: Path) -> bool:
                return False

        cfg = make_config(tmp_path)
        with pytest.raises(ConfigurationError, match="cannot write"):
            preflight(cfg, _ReadOnly())


def test_sha256_file_streams_whole_file(tmp_path: Path) -> None:
    blob = tmp_path / "blob"
    data = os.urandom(3 * 1024 * 1024 + 17)
    blob.write_bytes(data)
    assert sha256_file(blob) == hashlib.sha256(data).hexdigest()


def test_install_file_replaces_existing_link_instead_of_following_it(tmp_path: Path) -> None:
    src = tmp_path / "src"
    src.write_bytes(NEW_BINARY)
    victim = tmp_path / "victim"
    victim.write_bytes(b"keep")
    dest = tmp_path / "dest"
    dest.symlink_to(victim)

    Filesystem().install_file(src, dest, mode=0o755)

    assert victim.read_bytes() == b"keep"
    assert not dest.is_symlink()
    assert dest.read_bytes() == NEW_BINARY
    assert dest.stat().st_mode & 0o777 == 0o755
