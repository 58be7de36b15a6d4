"""Remote command channel into the guest over SSH (paramiko).

Only used to run the shared-folder mount script, plus a readiness probe so
the script is not sent before sshd is up.
"""

from __future__ import annotations

import time
from collections.abc import Callable
from pathlib import Path
from typing import Protocol

import paramiko

from hyperkit_machine import constants
from hyperkit_machine._logging import get_logger
from hyperkit_machine.exceptions import CommunicationError, GuestNotReadyError
from hyperkit_machine.retry import retry_after

logger = get_logger(__name__)


class CommandRunner(Protocol):
    """Executes a shell command inside the guest and returns its stdout."""

    def run(self, command: str) -> str: ...

    def probe(self) -> None: ...


class SSHCommandRunner:
    """CommandRunner backed by a fresh paramiko connection per call."""

    def __init__(
        self,
        host: str,
        user: str,
        key_path: Path | None = None,
        *,
        port: int = constants.DEFAULT_SSH_PORT,
        connect_timeout: float = constants.SSH_CONNECT_TIMEOUT_SECONDS,
        command_timeout: float = constants.SSH_COMMAND_TIMEOUT_SECONDS,
    ) -> None:
        self.host = host
        self.user = user
        self.key_path = key_path
        self.port = port
        self.connect_timeout = connect_timeout
        self.command_timeout = command_timeout

    def _connect(self) -> paramiko.SSHClient:
        cli = paramiko.SSHClient()
        cli.set_missing_host_key_policy(paramiko.AutoAddPolicy())
        key_filename = str(self.key_path) if self.key_path is not None and self.key_path.exists() else None
        try:
            cli.connect(
                self.host,
                port=self.port,
                username=self.user,
                key_filename=key_filename,
                timeout=self.connect_timeout,
                banner_timeout=self.connect_timeout,
                auth_timeout=self.connect_timeout,
                look_for_keys=key_filename is None,
                allow_agent=False,
            )
        except Exception:
            cli.close()
            raise
        return cli

    def probe(self) -> None:
        """Open and close one connection.

        Raises:
            GuestNotReadyError: The connection could not be established.
        """
        try:
            cli = self._connect()
        except (paramiko.SSHException, OSError) as e:
            raise GuestNotReadyError(
                f"ssh {self.user}@{self.host}:{self.port} not ready: {e}",
                context={"host": self.host, "port": self.port},
            ) from e
        cli.close()

    def run(self, command: str) -> str:
        """Run ``command`` in the guest.

        Raises:
            CommunicationError: Connection failed or the command exited non-zero.
        """
        logger.debug("About to run SSH command", extra={"host": self.host, "command": command})
        try:
            cli = self._connect()
        except (paramiko.SSHException, OSError) as e:
            raise CommunicationError(
                f"ssh connection to {self.host}:{self.port} failed: {e}",
                context={"host": self.host, "port": self.port},
            ) from e

        try:
            _, stdout, stderr = cli.exec_command(command, timeout=self.command_timeout)
            output = stdout.read().decode(errors="replace")
            errors = stderr.read().decode(errors="replace")
            exit_status = stdout.channel.recv_exit_status()
        except (paramiko.SSHException, OSError) as e:
            raise CommunicationError(
                f"ssh command failed on {self.host}: {e}",
                context={"host": self.host, "command": command},
            ) from e
        finally:
            cli.close()

        if exit_status != 0:
            raise CommunicationError(
                f"ssh command exited with status {exit_status}: {errors.strip()}",
                context={"host": self.host, "command": command, "output": output},
                exit_status=exit_status,
            )
        logger.debug("SSH cmd output", extra={"host": self.host, "output": output})
        return output


def wait_for_ssh(
    runner: CommandRunner,
    *,
    attempts: int = constants.SSH_WAIT_ATTEMPTS,
    delay: float = constants.SSH_WAIT_DELAY_SECONDS,
    sleep: Callable[[float], None] = time.sleep,
) -> None:
    """Block until the guest accepts SSH connections.

    Raises:
        CommunicationError: Still unreachable after ``attempts`` probes.
    """
    logger.debug("Waiting for SSH to be available...")
    try:
        retry_after(attempts, runner.probe, delay, sleep=sleep)
    except GuestNotReadyError as e:
        raise CommunicationError(
            f"Too many retries waiting for SSH to be available: {e.message}",
            context={"attempts": attempts, **e.context},
        ) from e
    logger.debug("SSH is available")
