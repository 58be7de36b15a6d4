"""Tests for process-table lookups and the ProcessHandle abstraction."""

import os
import signal
from unittest.mock import patch

import psutil
import pytest

from hyperkit_machine.exceptions import MachineNotRunningError, StateProbeError
from hyperkit_machine.platform_utils import HostOS, ProcessHandle, detect_host_os, find_process_name

NONEXISTENT_PID = 2**22 + 12345


class TestDetectHostOs:
    def test_returns_host_os(self) -> None:
        assert isinstance(detect_host_os(), HostOS)


class TestFindProcessName:
    def test_own_process(self) -> None:
        assert find_process_name(os.getpid()) == psutil.Process().name()

    def test_missing_process(self) -> None:
        assert find_process_name(NONEXISTENT_PID) is None

    def test_access_denied_is_probe_error(self) -> None:
        with patch("hyperkit_machine.platform_utils.psutil.Process", side_effect=psutil.AccessDenied(4242)):
            with pytest.raises(StateProbeError) as exc_info:
                find_process_name(4242)
        assert exc_info.value.context["pid"] == 4242


class TestProcessHandle:
    @pytest.mark.parametrize("pid", [0, -1])
    def test_rejects_non_positive_pid(self, pid: int) -> None:
        with pytest.raises(ValueError):
            ProcessHandle(pid)

    def test_own_process_is_alive(self) -> None:
        assert ProcessHandle(os.getpid()).is_alive()

    def test_missing_process_is_not_alive(self) -> None:
        assert not ProcessHandle(NONEXISTENT_PID).is_alive()

    def test_terminate_graceful_sends_sigterm(self) -> None:
        with patch("hyperkit_machine.platform_utils.os.kill") as kill:
            ProcessHandle(4242).terminate(graceful=True)
        kill.assert_called_once_with(4242, signal.SIGTERM)

    def test_terminate_forceful_sends_sigkill(self) -> None:
        with patch("hyperkit_machine.platform_utils.os.kill") as kill:
            ProcessHandle(4242).terminate(graceful=False)
        kill.assert_called_once_with(4242, signal.SIGKILL)

    def test_terminate_gone_process(self) -> None:
        with pytest.raises(MachineNotRunningError):
            ProcessHandle(NONEXISTENT_PID).terminate()
