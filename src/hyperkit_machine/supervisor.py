"""Hypervisor process supervision.

Owns everything that ties a machine state directory to a hyperkit process:

- hyperkit.json: pid record written by the hypervisor executor; the source
  of truth for get_state() and signal delivery.
- hyperkit.pid: pid file written by hyperkit itself; its presence at start
  time is the unclean-shutdown signal.

State machine:
    Stopped  no record, pid 0, pid not in the process table, or pid owned by
             a process outside the hypervisor family
    Running  pid alive and its executable name contains "hyper"
    Error    the probe itself failed (StateProbeError), never folded into Stopped
"""

from __future__ import annotations

import json
from collections.abc import Callable
from pathlib import Path

from hyperkit_machine import constants
from hyperkit_machine._logging import get_logger
from hyperkit_machine.exceptions import MachineNotRunningError, StateProbeError, UncleanShutdownError
from hyperkit_machine.models import MachineState
from hyperkit_machine.platform_utils import ProcessHandle, find_process_name

logger = get_logger(__name__)


def pid_state(pid: int, find_name: Callable[[int], str | None] = find_process_name) -> MachineState:
    """Classify ``pid`` by process-table lookup and executable name.

    Raises:
        StateProbeError: The process table could not be inspected.
    """
    if pid == 0:
        return MachineState.STOPPED
    name = find_name(pid)
    if name is None:
        logger.debug(f"hyperkit pid {pid} missing from process table")
        return MachineState.STOPPED
    if constants.HYPERVISOR_EXECUTABLE_MARKER not in name:
        logger.debug(f"pid {pid} is stale, and is being used by {name}")
        return MachineState.STOPPED
    return MachineState.RUNNING


class ProcessSupervisor:
    """Liveness, recovery and signal delivery for one machine's hypervisor."""

    def __init__(
        self,
        state_dir: Path,
        *,
        handle_factory: Callable[[int], ProcessHandle] = ProcessHandle,
        find_name: Callable[[int], str | None] = find_process_name,
    ) -> None:
        self.state_dir = state_dir
        self._handle_factory = handle_factory
        self._find_name = find_name

    @property
    def pid_record_path(self) -> Path:
        return self.state_dir / constants.MACHINE_FILE_NAME

    @property
    def pid_file_path(self) -> Path:
        return self.state_dir / constants.PID_FILE_NAME

    def read_pid(self) -> int:
        """Pid from the JSON record, 0 when the record is missing or unreadable."""
        try:
            with self.pid_record_path.open() as f:
                record = json.load(f)
        except OSError as e:
            logger.warning(f"Error reading pid file: {e}")
            return 0
        except ValueError as e:
            logger.warning(f"Error decoding pid file: {e}")
            return 0

        pid = record.get("pid", 0) if isinstance(record, dict) else 0
        if not isinstance(pid, int) or isinstance(pid, bool) or pid < 0:
            logger.warning(f"Ignoring invalid pid {pid!r} in {self.pid_record_path}")
            return 0
        return pid

    def pid_state(self, pid: int) -> MachineState:
        return pid_state(pid, self._find_name)

    def get_state(self) -> MachineState:
        """Current state of the recorded hypervisor process.

        Raises:
            StateProbeError: Liveness could not be determined.
        """
        pid = self.read_pid()
        if pid == 0:
            return MachineState.STOPPED
        if not self._handle_factory(pid).is_alive():
            return MachineState.STOPPED
        return self.pid_state(pid)

    def recover_from_unclean_shutdown(self) -> int:
        """Reconcile a hyperkit.pid left behind by a previous run.

        No pid file means a clean start. A pid file whose process is a live
        hypervisor is accepted as the running instance. Otherwise the stale
        file is removed so the next launch does not trip over it.

        Idempotent: a second call finds either no file or the same live process.

        Returns:
            Pid of the live hypervisor that was accepted, 0 when none is running.

        Raises:
            UncleanShutdownError: The pid file could not be stat'ed, read,
                parsed, probed or removed.
        """
        pid_file = self.pid_file_path
        try:
            pid_file.stat()
        except FileNotFoundError:
            logger.debug(f"clean start, hyperkit pid file doesn't exist: {pid_file}")
            return 0
        except OSError as e:
            raise UncleanShutdownError(f"stat {pid_file}: {e}", context={"path": str(pid_file)}) from e

        logger.warning(
            f"machine might have been shutdown in an unclean way, the hyperkit pid file still exists: {pid_file}"
        )
        try:
            content = pid_file.read_text().strip()
        except OSError as e:
            raise UncleanShutdownError(f"reading pidfile {pid_file}: {e}", context={"path": str(pid_file)}) from e
        try:
            pid = int(content)
        except ValueError as e:
            raise UncleanShutdownError(
                f"parsing pidfile {pid_file}: {content!r} is not a pid",
                context={"path": str(pid_file), "content": content},
            ) from e

        try:
            state = self.pid_state(pid)
        except StateProbeError as e:
            raise UncleanShutdownError(f"pidState: {e.message}", context={"pid": pid}) from e

        logger.debug(f"pid {pid} is in state {state.value!r}")
        if state is MachineState.RUNNING:
            return pid

        logger.debug(f"Removing stale pid file {pid_file}...")
        try:
            pid_file.unlink(missing_ok=True)
        except OSError as e:
            raise UncleanShutdownError(f"removing pidFile {pid_file}: {e}", context={"path": str(pid_file)}) from e
        return 0

    def adopt(self, pid: int) -> None:
        """Point hyperkit.json at an already running hypervisor.

        Raises:
            UncleanShutdownError: The record could not be written.
        """
        if self.read_pid() == pid:
            return
        logger.debug(f"Recording running hyperkit pid {pid} in {self.pid_record_path}")
        tmp = self.pid_record_path.with_suffix(".json.tmp")
        try:
            tmp.write_text(json.dumps({"pid": pid}))
            tmp.replace(self.pid_record_path)
        except OSError as e:
            raise UncleanShutdownError(
                f"recording pid {pid} in {self.pid_record_path}: {e}",
                context={"pid": pid, "path": str(self.pid_record_path)},
            ) from e

    def send_signal(self, graceful: bool) -> None:
        """Terminate the recorded process (SIGTERM when graceful, else SIGKILL).

        Raises:
            MachineNotRunningError: No pid is recorded or the process is gone.
        """
        pid = self.read_pid()
        if pid == 0:
            raise MachineNotRunningError(
                f"no hypervisor pid recorded in {self.pid_record_path}",
                context={"path": str(self.pid_record_path)},
            )
        self._handle_factory(pid).terminate(graceful=graceful)
