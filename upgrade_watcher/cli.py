from __future__ import annotations

import argparse
import logging
import os
import signal
import sys
import time
from collections.abc import Callable
from pathlib import Path
from types import FrameType

from . import __version__
from .backup import BackupManager
from .config import WatcherConfig, load_config, resolve_settings_path
from .engine import UpgradeEngine
from .errors import WatcherError
from .filesystem import Filesystem
from .height import HeightSource, StatusClient
from .lock import instance_lock
from .runner import require_commands
from .service import ServiceController, SystemdServiceController
from .validation import BinaryValidator, preflight

LOGGER = logging.getLogger("upgrade_watcher")

LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"


def run_watcher(
    config: WatcherConfig,
    *,
    service: ServiceController | None = None,
    client: StatusClient | None = None,
    validator: BinaryValidator | None = None,
    fs: Filesystem | None = None,
    sleep: Callable[[float], None] = time.sleep,
) -> int:
    """Validate, take the instance lock, wait for the target and upgrade.

    Returns the process exit code.
    """
    fs = fs or Filesystem()
    service = service or SystemdServiceController()
    validator = validator or BinaryValidator(fs)
    target = config.target

    LOGGER.info("starting upgrade watcher for service: %s", target.service_name)
    try:
        require_commands(service.required_commands)
        validator.validate(config)
        preflight(config, fs)

        with instance_lock(config.lock_file) as handle:
            if handle is None:
                LOGGER.warning("another watcher already running, exiting")
                return 0

            LOGGER.info("RPC endpoint: %s", target.rpc)
            LOGGER.info("new binary: %s", target.bin_new)
            LOGGER.info("active binary: %s", target.bin_active)
            engine = UpgradeEngine(
                config,
                HeightSource(client or StatusClient(target.rpc), config.polling, sleep=sleep),
                service,
                BackupManager(config.backup, fs),
                fs=fs,
                sleep=sleep,
            )
            run = engine.run()
            LOGGER.info("upgrade run finished: %s", run.describe())
            return 0
    except WatcherError as exc:
        LOGGER.error("%s", exc)
        return exc.exit_code


def _raise_system_exit(signum: int, _frame: FrameType | None) -> None:
    raise SystemExit(128 + signum)


def install_signal_handlers() -> None:
    """Turn termination signals into ``SystemExit`` so cleanup paths run."""
    for sig in (signal.SIGTERM, signal.SIGHUP):
        signal.signal(sig, _raise_system_exit)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Swap a service binary when the chain reaches a target block height"
    )
    parser.add_argument(
        "--config",
        type=Path,
        default=None,
        help="Path to a YAML settings file (default: $ENV_FILE if set)",
    )
    parser.add_argument("--verbose", "-v", action="store_true", help="Enable debug logging")
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    return parser


def main(argv: list[str] | None = None) -> None:
    args = build_parser().parse_args(argv)
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format=LOG_FORMAT,
        datefmt="%Y-%m-%d %H:%M:%S",
        stream=sys.stderr,
    )
    os.umask(0o077)
    install_signal_handlers()

    fs = Filesystem()
    try:
        BinaryValidator(fs).validate_settings_file(resolve_settings_path(args.config))
        config = load_config(args.config)
    except WatcherError as exc:
        LOGGER.error("%s", exc)
        raise SystemExit(exc.exit_code) from None

    try:
        code = run_watcher(config, fs=fs)
    except KeyboardInterrupt:
        LOGGER.warning("interrupted")
        code = 130
    raise SystemExit(code)


if __name__ == "__main__":
    main()
