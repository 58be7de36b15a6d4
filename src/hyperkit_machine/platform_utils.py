"""Host OS detection and process-level primitives.

Uses psutil for OS detection and process-table lookups. Signal delivery is
wrapped in ProcessHandle so the supervisor never touches os.kill directly.
"""

import os
import signal
from enum import Enum, auto
from functools import cache

import psutil

from hyperkit_machine._logging import get_logger
from hyperkit_machine.exceptions import MachineNotRunningError, StateProbeError

logger = get_logger(__name__)


class HostOS(Enum):
    """Supported host operating systems."""

    MACOS = auto()
    """macOS (hyperkit + vmnet)."""

    LINUX = auto()
    """Linux (no hyperkit; useful for tests and tooling only)."""

    UNKNOWN = auto()
    """Unsupported or unrecognized OS."""


@cache
def detect_host_os() -> HostOS:
    """Detect current host operating system using psutil constants."""
    if psutil.MACOS:
        return HostOS.MACOS
    if psutil.LINUX:
        return HostOS.LINUX
    return HostOS.UNKNOWN


def find_process_name(pid: int) -> str | None:
    """Return the executable name of ``pid``, or None if it is not in the process table.

    Zombies count as absent.

    Raises:
        StateProbeError: The process table could not be read for ``pid``.
    """
    try:
        return psutil.Process(pid).name()
    except psutil.NoSuchProcess:  # includes ZombieProcess
        return None
    except psutil.Error as e:
        raise StateProbeError(
            f"could not inspect pid {pid}: {e}",
            context={"pid": pid, "error_type": type(e).__name__},
        ) from e


class ProcessHandle:
    """Narrow handle on a raw pid: liveness probe and termination.

    Wraps signal delivery so callers can be tested with a fake handle.
    """

    def __init__(self, pid: int) -> None:
        if pid <= 0:
            raise ValueError(f"refusing to build a handle for pid {pid}")
        self.pid = pid

    def __repr__(self) -> str:
        return f"ProcessHandle(pid={self.pid})"

    def is_alive(self) -> bool:
        """Deliver the no-op signal; any delivery failure means not running."""
        try:
            os.kill(self.pid, 0)
        except OSError:
            return False
        return True

    def terminate(self, graceful: bool = True) -> None:
        """Send SIGTERM (graceful) or SIGKILL.

        Raises:
            MachineNotRunningError: The process no longer exists.
        """
        sig = signal.SIGTERM if graceful else signal.SIGKILL
        logger.debug("Sending signal", extra={"pid": self.pid, "signal": sig.name})
        try:
            os.kill(self.pid, sig)
        except ProcessLookupError as e:
            raise MachineNotRunningError(
                f"process {self.pid} already finished",
                context={"pid": self.pid, "signal": sig.name},
            ) from e
