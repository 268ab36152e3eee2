"""
Control of the Waydroid services that must be quiesced around backups.

Each managed service is a member of ManagedService. The commands used to stop,
start and probe it come from a fixed lookup table of argv lists, so no shell
command line is ever assembled from strings.
"""

from __future__ import annotations

import logging
import subprocess
import time
from collections.abc import Callable, Iterable, Iterator, Sequence
from contextlib import contextmanager
from dataclasses import dataclass
from enum import Enum
from typing import Protocol

from waydroid_backup.errors import OperationError

logger = logging.getLogger(__name__)


class ManagedService(Enum):
    """Services and processes touched by backup and restore."""

    VNC = "waydroid-vnc.service"
    API = "waydroid-api.service"
    SESSION = "waydroid-session"
    CONTAINER = "waydroid-container.service"


@dataclass(frozen=True)
class ServiceCommands:
    """Argv lists for one managed service. None means unsupported."""

    stop: tuple[str, ...] | None
    start: tuple[str, ...] | None
    is_active: tuple[str, ...]


SERVICE_COMMANDS: dict[ManagedService, ServiceCommands] = {
    ManagedService.VNC: ServiceCommands(
        stop=("systemctl", "stop", "waydroid-vnc.service"),
        start=("systemctl", "start", "waydroid-vnc.service"),
        is_active=("systemctl", "is-active", "--quiet", "waydroid-vnc.service"),
    ),
    ManagedService.API: ServiceCommands(
        stop=("systemctl", "stop", "waydroid-api.service"),
        start=("systemctl", "start", "waydroid-api.service"),
        is_active=("systemctl", "is-active", "--quiet", "waydroid-api.service"),
    ),
    # The session is started by waydroid-vnc.service, never directly.
    ManagedService.SESSION: ServiceCommands(
        stop=("waydroid", "session", "stop"),
        start=None,
        is_active=(
            "pgrep",
            "-f",
            "^(/usr/bin/python3 )?/usr/bin/waydroid (container|session)",
        ),
    ),
    ManagedService.CONTAINER: ServiceCommands(
        stop=("waydroid", "container", "stop"),
        start=("systemctl", "start", "waydroid-container.service"),
        is_active=("systemctl", "is-active", "--quiet", "waydroid-container.service"),
    ),
}


class ServiceControl(Protocol):
    """Interface the backup manager needs from a service controller."""

    def stop(self, service: ManagedService) -> None: ...

    def start(self, service: ManagedService) -> None: ...

    def is_active(self, service: ManagedService) -> bool: ...

    def settle(self) -> None: ...


class ServiceController:
    """
    Stop, start and probe managed services through systemctl and waydroid.

    Args:
        timeout: Seconds to wait for each command before giving up.
        settle_seconds: Pause after stopping services so processes can exit.
    """

    def __init__(self, timeout: int = 60, settle_seconds: float = 3.0) -> None:
        self.timeout = timeout
        self.settle_seconds = settle_seconds

    def stop(self, service: ManagedService) -> None:
        """Stop a service. Raises OperationError if the command fails."""
        argv = SERVICE_COMMANDS[service].stop
        if argv is None:
            raise OperationError(f"{service.value} cannot be stopped directly")
        self._run(service, "stop", argv)

    def start(self, service: ManagedService) -> None:
        """Start a service. Raises OperationError if the command fails."""
        argv = SERVICE_COMMANDS[service].start
        if argv is None:
            raise OperationError(f"{service.value} cannot be started directly")
        self._run(service, "start", argv)

    def is_active(self, service: ManagedService) -> bool:
        """Return True if the service is running. Probe failures count as not running."""
        argv = SERVICE_COMMANDS[service].is_active
        try:
            result = subprocess.run(
                list(argv),
                capture_output=True,
                text=True,
                timeout=self.timeout,
            )
        except (subprocess.SubprocessError, OSError) as e:
            logger.debug(f"Could not probe {service.value}: {e}")
            return False
        return result.returncode == 0

    def settle(self) -> None:
        """Give stopped processes time to release their files."""
        if self.settle_seconds > 0:
            time.sleep(self.settle_seconds)

    def _run(self, service: ManagedService, action: str, argv: Sequence[str]) -> None:
        logger.debug(f"Running: {' '.join(argv)}")
        try:
            result = subprocess.run(
                list(argv),
                capture_output=True,
                text=True,
                timeout=self.timeout,
            )
        except subprocess.TimeoutExpired as e:
            raise OperationError(
                f"Timed out after {self.timeout}s trying to {action} {service.value}"
            ) from e
        except OSError as e:
            raise OperationError(f"Cannot {action} {service.value}: {e.strerror}") from e

        if result.returncode != 0:
            detail = (result.stderr or result.stdout or "").strip()
            raise OperationError(
                f"Failed to {action} {service.value} (exit {result.returncode})"
                + (f": {detail}" if detail else "")
            )


@contextmanager
def quiesce(
    controller: ServiceControl,
    stop: Iterable[ManagedService],
    restart: Iterable[ManagedService],
    on_release: Callable[[], None] | None = None,
) -> Iterator[None]:
    """
    Hold services stopped for the duration of the block.

    Every service in ``stop`` is stopped; individual failures are logged and
    ignored. Every service in ``restart`` is started again on exit, whether
    the block completed or raised. Restart failures are logged and never
    replace an exception raised by the block.

    ``on_release`` is called once, before the restarts.
    """
    stop = list(stop)
    for service in stop:
        logger.info(f"Stopping {service.value}")
        try:
            controller.stop(service)
        except OperationError as e:
            logger.warning(f"Ignoring stop failure: {e}")

    if stop:
        controller.settle()

    try:
        yield
    finally:
        if on_release is not None:
            on_release()
        for service in restart:
            logger.info(f"Starting {service.value}")
            try:
                controller.start(service)
            except OperationError as e:
                logger.error(f"Restart failed: {e}")


def waydroid_version(timeout: int = 10) -> str:
    """Return the output of ``waydroid --version``, or "unknown"."""
    try:
        result = subprocess.run(
            ["waydroid", "--version"],
            capture_output=True,
            text=True,
            timeout=timeout,
        )
    except (subprocess.SubprocessError, OSError):
        return "unknown"
    version = result.stdout.strip()
    if result.returncode != 0 or not version:
        return "unknown"
    return version
