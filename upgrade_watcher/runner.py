"""Synchronous command runner used by the service controller."""

from __future__ import annotations

import logging
import shutil
import subprocess
from dataclasses import dataclass

from .errors import ConfigurationError

LOGGER = logging.getLogger(__name__)


@dataclass(slots=True)
class CommandResult:
    returncode: int
    stdout: str
    stderr: str

    @property
    def ok(self) -> bool:
        return self.returncode == 0


class CommandRunner:
    def run(self, argv: list[str], timeout_s: int = 30) -> CommandResult:
        raise NotImplementedError


class SubprocessRunner(CommandRunner):
    def run(self, argv: list[str], timeout_s: int = 30) -> CommandResult:
        LOGGER.debug("exec: %s", " ".join(argv))
        try:
            completed = subprocess.run(
                argv,
                check=False,
                text=True,
                capture_output=True,
                timeout=timeout_s,
            )
            return CommandResult(
                returncode=completed.returncode,
                stdout=completed.stdout.strip(),
                stderr=completed.stderr.strip(),
            )
        except FileNotFoundError:
            return CommandResult(returncode=127, stdout="", stderr=f"missing command: {argv[0]}")
        except subprocess.TimeoutExpired:
            return CommandResult(returncode=124, stdout="", stderr=f"timeout: {' '.join(argv)}")


def require_commands(names: list[str] | tuple[str, ...]) -> None:
    """Raise :class:`ConfigurationError` if any external tool is missing from PATH."""
    for name in names:
        if shutil.which(name) is None:
            raise ConfigurationError(f"missing dependency: {name}")
