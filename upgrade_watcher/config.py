from __future__ import annotations

import logging
import os
import re
from collections.abc import Mapping
from copy import deepcopy
from dataclasses import dataclass
from pathlib import Path
from typing import Any

import yaml

from .errors import ConfigurationError

LOGGER = logging.getLogger(__name__)

DEFAULT_CONFIG: dict[str, Any] = {
    "target": {
        "height": None,
        "rpc": "http://127.0.0.1:26657",
        "service_name": "lumend",
        "bin_new": None,
        "bin_active": "/usr/local/bin/lumend",
        "bin_new_sha256": "",
    },
    "polling": {
        "check_interval_s": 1,
        "dynamic_interval_threshold": 100,
        "dynamic_interval_far_s": 30,
        "dynamic_interval_near_s": 1,
        "rpc_retry_max": 3,
        "rpc_retry_delay_s": 2,
    },
    "backup": {
        "enabled": True,
        "dir": "/var/backups/upgrade-watcher",
    },
    "lock": {
        "dir": "/run/upgrade-watcher",
    },
    "sequence": {
        "stop_grace_s": 1,
        "start_grace_s": 2,
    },
}

ENV_OVERRIDES: dict[str, tuple[str, str]] = {
    "UPGRADE_HEIGHT": ("target", "height"),
    "RPC": ("target", "rpc"),
    "SERVICE_NAME": ("target", "service_name"),
    "BIN_NEW": ("target", "bin_new"),
    "BIN_ACTIVE": ("target", "bin_active"),
    "BIN_NEW_SHA256": ("target", "bin_new_sha256"),
    "CHECK_INTERVAL": ("polling", "check_interval_s"),
    "DYNAMIC_INTERVAL_THRESHOLD": ("polling", "dynamic_interval_threshold"),
    "DYNAMIC_INTERVAL_FAR": ("polling", "dynamic_interval_far_s"),
    "DYNAMIC_INTERVAL_NEAR": ("polling", "dynamic_interval_near_s"),
    "RPC_RETRY_MAX": ("polling", "rpc_retry_max"),
    "RPC_RETRY_DELAY": ("polling", "rpc_retry_delay_s"),
    "BACKUP_ENABLED": ("backup", "enabled"),
    "BACKUP_DIR": ("backup", "dir"),
    "LOCK_DIR": ("lock", "dir"),
}

SETTINGS_FILE_ENV = "ENV_FILE"
LOCK_FILE_NAME = "upgrade-watcher.lock"

_SHA256_RE = re.compile(r"^[0-9a-f]{64}$")
_TRUE = {"1", "true", "yes", "on"}
_FALSE = {"0", "false", "no", "off"}


def _deep_merge(base: dict[str, Any], override: dict[str, Any]) -> dict[str, Any]:
    merged = dict(base)
    for key, value in override.items():
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key] = _deep_merge(merged[key], value)
        else:
            merged[key] = value
    return merged


def _read_config_file(path: Path) -> dict[str, Any]:
    if not path.exists():
        return {}
    try:
        with path.open("r", encoding="utf-8") as f:
            data = yaml.safe_load(f) or {}
    except yaml.YAMLError as exc:
        raise ConfigurationError(f"cannot parse settings file {path}: {exc}") from None
    if not isinstance(data, dict):
        raise ConfigurationError(f"{path} must contain a YAML object at the top level.")
    return data


def _env_override(environ: Mapping[str, str]) -> dict[str, Any]:
    override: dict[str, Any] = {}
    for env_name, (section, key) in ENV_OVERRIDES.items():
        value = environ.get(env_name)
        if value is None or value == "":
            continue
        override.setdefault(section, {})[key] = value
    return override


def _as_int(name: str, value: Any, *, minimum: int) -> int:
    if isinstance(value, bool):
        raise ConfigurationError(f"{name} must be an integer, got {value!r}")
    if isinstance(value, int):
        parsed = value
    elif isinstance(value, str) and value.strip().isdigit():
        parsed = int(value.strip())
    else:
        raise ConfigurationError(f"invalid {name}: {value!r} (expected integer >= {minimum})")
    if parsed < minimum:
        raise ConfigurationError(f"invalid {name}: {parsed} (expected integer >= {minimum})")
    return parsed


def _as_seconds(name: str, value: Any) -> float:
    if isinstance(value, bool):
        raise ConfigurationError(f"{name} must be a number of seconds, got {value!r}")
    try:
        parsed = float(value)
    except (TypeError, ValueError):
        raise ConfigurationError(f"invalid {name}: {value!r} (expected seconds)") from None
    if parsed < 0 or parsed != parsed:
        raise ConfigurationError(f"invalid {name}: {value!r} (must be >= 0)")
    return parsed


def _as_bool(name: str, value: Any) -> bool:
    if isinstance(value, bool):
        return value
    text = str(value).strip().lower()
    if text in _TRUE:
        return True
    if text in _FALSE:
        return False
    raise ConfigurationError(f"invalid {name}: {value!r} (expected true/false)")


def _as_path(name: str, value: Any) -> Path:
    if value is None or not str(value).strip():
        raise ConfigurationError(f"missing {name}")
    return Path(str(value).strip())


@dataclass(frozen=True, slots=True)
class UpgradeTarget:
    height: int
    rpc: str
    service_name: str
    bin_new: Path
    bin_active: Path
    bin_new_sha256: str = ""

    def __post_init__(self) -> None:
        if self.height <= 0:
            raise ConfigurationError(f"invalid upgrade height: {self.height} (expected > 0)")


@dataclass(frozen=True, slots=True)
class PollingPolicy:
    check_interval_s: float = 1.0
    dynamic_interval_threshold: int = 100
    dynamic_interval_far_s: float = 30.0
    dynamic_interval_near_s: float = 1.0
    rpc_retry_max: int = 3
    rpc_retry_delay_s: float = 2.0

    def interval_for(self, blocks_remaining: int) -> float:
        """Far interval while strictly more than ``threshold`` blocks remain."""
        if blocks_remaining > self.dynamic_interval_threshold:
            return self.dynamic_interval_far_s
        return self.dynamic_interval_near_s


@dataclass(frozen=True, slots=True)
class BackupConfig:
    enabled: bool = True
    dir: Path = Path("/var/backups/upgrade-watcher")


@dataclass(frozen=True, slots=True)
class SequenceTiming:
    stop_grace_s: float = 1.0
    start_grace_s: float = 2.0


@dataclass(frozen=True, slots=True)
class WatcherConfig:
    target: UpgradeTarget
    polling: PollingPolicy
    backup: BackupConfig
    sequence: SequenceTiming
    lock_dir: Path
    settings_path: Path | None = None

    @property
    def lock_file(self) -> Path:
        return self.lock_dir / LOCK_FILE_NAME


def resolve_settings_path(
    config_path: Path | None, environ: Mapping[str, str] | None = None
) -> Path | None:
    if config_path is not None:
        return config_path
    env = os.environ if environ is None else environ
    raw = env.get(SETTINGS_FILE_ENV, "")
    return Path(raw) if raw else None


def load_config(
    config_path: Path | None = None,
    environ: Mapping[str, str] | None = None,
) -> WatcherConfig:
    """Resolve defaults, the YAML settings file and environment overrides once."""
    env = os.environ if environ is None else environ
    settings_path = resolve_settings_path(config_path, env)
    file_override = _read_config_file(settings_path) if settings_path is not None else {}
    merged = _deep_merge(DEFAULT_CONFIG, file_override)
    merged = _deep_merge(merged, _env_override(env))

    target_cfg = merged["target"]
    polling_cfg = merged["polling"]
    backup_cfg = merged["backup"]
    sequence_cfg = merged["sequence"]

    if target_cfg.get("height") in (None, ""):
        raise ConfigurationError("missing UPGRADE_HEIGHT")
    height = _as_int("UPGRADE_HEIGHT", target_cfg["height"], minimum=1)

    digest = str(target_cfg.get("bin_new_sha256") or "").strip().lower()
    if digest and not _SHA256_RE.match(digest):
        raise ConfigurationError(f"invalid BIN_NEW_SHA256: {digest!r} (expected 64 hex chars)")

    rpc = str(target_cfg["rpc"]).strip().rstrip("/")
    if not rpc.startswith(("http://", "https://")):
        raise ConfigurationError(f"invalid RPC endpoint: {rpc!r} (expected http(s) URL)")

    service_name = str(target_cfg["service_name"]).strip()
    if not service_name:
        raise ConfigurationError("missing SERVICE_NAME")

    config = WatcherConfig(
        target=UpgradeTarget(
            height=height,
            rpc=rpc,
            service_name=service_name,
            bin_new=_as_path("BIN_NEW", target_cfg.get("bin_new")),
            bin_active=_as_path("BIN_ACTIVE", target_cfg.get("bin_active")),
            bin_new_sha256=digest,
        ),
        polling=PollingPolicy(
            check_interval_s=_as_seconds("CHECK_INTERVAL", polling_cfg["check_interval_s"]),
            dynamic_interval_threshold=_as_int(
                "DYNAMIC_INTERVAL_THRESHOLD", polling_cfg["dynamic_interval_threshold"], minimum=0
            ),
            dynamic_interval_far_s=_as_seconds(
                "DYNAMIC_INTERVAL_FAR", polling_cfg["dynamic_interval_far_s"]
            ),
            dynamic_interval_near_s=_as_seconds(
                "DYNAMIC_INTERVAL_NEAR", polling_cfg["dynamic_interval_near_s"]
            ),
            rpc_retry_max=_as_int("RPC_RETRY_MAX", polling_cfg["rpc_retry_max"], minimum=1),
            rpc_retry_delay_s=_as_seconds("RPC_RETRY_DELAY", polling_cfg["rpc_retry_delay_s"]),
        ),
        backup=BackupConfig(
            enabled=_as_bool("BACKUP_ENABLED", backup_cfg["enabled"]),
            dir=_as_path("BACKUP_DIR", backup_cfg["dir"]),
        ),
        sequence=SequenceTiming(
            stop_grace_s=_as_seconds("sequence.stop_grace_s", sequence_cfg["stop_grace_s"]),
            start_grace_s=_as_seconds("sequence.start_grace_s", sequence_cfg["start_grace_s"]),
        ),
        lock_dir=_as_path("LOCK_DIR", merged["lock"]["dir"]),
        settings_path=settings_path,
    )
    LOGGER.debug(
        "Loaded config settings=%s target=%d service=%s",
        config.settings_path,
        config.target.height,
        config.target.service_name,
    )
    return config


def documented_default_config() -> dict[str, Any]:
    """Return runtime defaults in the shape documented by config.example.yaml."""
    return deepcopy(DEFAULT_CONFIG)
