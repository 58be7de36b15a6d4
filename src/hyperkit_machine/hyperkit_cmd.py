"""Hyperkit command line builder and launcher.

Builds the hyperkit argument vector from a MachineSpec and spawns the
hypervisor detached from the calling process. The launched pid is recorded
in hyperkit.json, which the supervisor reads for state and signals.
"""

from __future__ import annotations

import json
import subprocess
from dataclasses import dataclass, field
from pathlib import Path

from hyperkit_machine import constants
from hyperkit_machine._logging import get_logger
from hyperkit_machine.exceptions import HypervisorError
from hyperkit_machine.models import MachineSpec

logger = get_logger(__name__)


@dataclass(slots=True)
class HyperKitConfig:
    """Everything hyperkit needs for one boot."""

    hyperkit_bin: Path
    state_dir: Path
    kernel: Path
    initrd: Path
    iso: Path
    disk: Path
    uuid: str
    cpus: int
    memory_mb: int
    cmdline: str
    vmnet: bool = True
    console_to_file: bool = True
    extra_args: list[str] = field(default_factory=list)

    @classmethod
    def from_spec(cls, spec: MachineSpec, state_dir: Path, hyperkit_bin: Path) -> HyperKitConfig:
        return cls(
            hyperkit_bin=hyperkit_bin,
            state_dir=state_dir,
            kernel=state_dir / spec.vmlinuz,
            initrd=state_dir / spec.initrd,
            iso=state_dir / constants.ISO_FILENAME,
            disk=state_dir / constants.DISK_FILE_NAME,
            uuid=spec.uuid,
            cpus=spec.cpu,
            memory_mb=spec.memory,
            cmdline=spec.cmdline,
        )


def build_hyperkit_cmd(config: HyperKitConfig) -> list[str]:
    """Build the hyperkit argv.

    Slot layout:
        0:0  hostbridge
        1:0  virtio-net (vmnet, MAC derived by vmnet from -U uuid)
        2:0  virtio-blk raw data disk
        3    ahci-cd boot image
        31   lpc (com1 console)

    Returns:
        Command as list of strings
    """
    state_dir = config.state_dir
    cmd = [
        str(config.hyperkit_bin),
        "-A",
        "-u",
        "-F",
        str(state_dir / constants.PID_FILE_NAME),
        "-c",
        str(config.cpus),
        "-m",
        f"{config.memory_mb}M",
        "-s",
        "0:0,hostbridge",
        "-s",
        "31,lpc",
    ]

    if config.vmnet:
        cmd.extend(["-s", "1:0,virtio-net"])
    cmd.extend(["-U", config.uuid])

    cmd.extend(["-s", f"2:0,virtio-blk,{config.disk}"])
    cmd.extend(["-s", f"3,ahci-cd,{config.iso}"])

    if config.console_to_file:
        tty = state_dir / constants.TTY_FILE_NAME
        ring = state_dir / constants.CONSOLE_RING_FILE_NAME
        cmd.extend(["-l", f"com1,autopty={tty},log={ring}"])
    else:
        cmd.extend(["-l", "com1,stdio"])

    cmd.extend(config.extra_args)
    cmd.extend(["-f", f'kexec,{config.kernel},{config.initrd},"{config.cmdline}"'])
    return cmd


class HyperKit:
    """Spawns hyperkit and records its pid."""

    def __init__(self, config: HyperKitConfig) -> None:
        self.config = config
        self.process: subprocess.Popen[bytes] | None = None

    @property
    def pid_record_path(self) -> Path:
        return self.config.state_dir / constants.MACHINE_FILE_NAME

    def start(self) -> int:
        """Launch hyperkit detached and write hyperkit.json.

        Returns:
            Pid of the launched hypervisor.

        Raises:
            HypervisorError: The executable could not be spawned or the record written.
        """
        cmd = build_hyperkit_cmd(self.config)
        logger.debug("Starting hyperkit", extra={"cmd": cmd})
        try:
            self.process = subprocess.Popen(  # noqa: S603
                cmd,
                stdin=subprocess.DEVNULL,
                stdout=subprocess.DEVNULL,
                stderr=subprocess.DEVNULL,
                cwd=self.config.state_dir,
                start_new_session=True,
            )
        except OSError as e:
            raise HypervisorError(
                f"could not launch {self.config.hyperkit_bin}: {e}",
                context={"cmd": cmd},
            ) from e

        pid = self.process.pid
        try:
            self.pid_record_path.write_text(json.dumps({"pid": pid, "argv": cmd}))
        except OSError as e:
            self.process.kill()
            raise HypervisorError(
                f"could not write {self.pid_record_path}: {e}",
                context={"pid": pid},
            ) from e

        logger.info("hyperkit started", extra={"pid": pid, "uuid": self.config.uuid})
        return pid

    def kill(self, timeout: float = 10.0) -> None:
        """Force-stop a hypervisor launched by start() and drop its pid record."""
        if self.process is not None and self.process.poll() is None:
            logger.warning("Killing hyperkit after failed start", extra={"pid": self.process.pid})
            self.process.kill()
            try:
                self.process.wait(timeout=timeout)
            except subprocess.TimeoutExpired:
                logger.error("hyperkit did not exit after SIGKILL", extra={"pid": self.process.pid})
        self.pid_record_path.unlink(missing_ok=True)
