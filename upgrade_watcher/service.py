"""Service controller: stop/start/status of the managed unit."""

from __future__ import annotations

import logging

from .runner import CommandRunner, SubprocessRunner

LOGGER = logging.getLogger(__name__)

SYSTEMCTL_TIMEOUT_S = 90


class ServiceController:
    """Capability interface over the process supervisor.  Override for testing."""

    required_commands: tuple[str, ...] = ()

    def stop(self, name: str) -> bool:
        raise NotImplementedError

    def start(self, name: str) -> bool:
        raise NotImplementedError

    def is_active(self, name: str) -> bool:
        raise NotImplementedError


class SystemdServiceController(ServiceController):
    required_commands = ("systemctl",)

    def __init__(self, runner: CommandRunner | None = None) -> None:
        self._runner = runner or SubprocessRunner()

    def _systemctl(self, *args: str) -> bool:
        result = self._runner.run(["systemctl", *args], timeout_s=SYSTEMCTL_TIMEOUT_S)
        if not result.ok and result.stderr:
            LOGGER.debug("systemctl %s rc=%d: %s", " ".join(args), result.returncode, result.stderr)
        return result.ok

    def stop(self, name: str) -> bool:
        return self._systemctl("stop", name)

    def start(self, name: str) -> bool:
        return self._systemctl("start", name)

    def is_active(self, name: str) -> bool:
        return self._systemctl("is-active", "--quiet", name)
