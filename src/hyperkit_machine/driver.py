"""Lifecycle controller for one hyperkit machine.

Operation ordering:
    create   disk image -> boot artifact extraction -> save config -> start
    start    unclean-shutdown recovery -> launch (or reconnect to a live
             hyperkit) -> wait for IP (mandatory)
             -> [shares configured] wait for guest network + SSH -> NFS setup
    stop     NFS teardown -> SIGTERM
    kill     SIGKILL
    remove   stop when running (state probe errors are tolerated)

A start either leaves the hypervisor running with a resolved IP (and mounted
shares when configured) or kills the hypervisor it launched before raising.

Every host collaborator (lease table, export registry, image mounter,
hypervisor launcher, process handles, SSH runner) is injectable.
"""

from __future__ import annotations

import os
import time
from collections.abc import Callable
from pathlib import Path
from typing import Protocol

from hyperkit_machine import constants
from hyperkit_machine._logging import get_logger
from hyperkit_machine.boot_artifacts import BootArtifactExtractor, HdiutilMounter, ImageMounter
from hyperkit_machine.common import CommonHelpers
from hyperkit_machine.exceptions import (
    ElevatedPermissionsError,
    MachineNotRunningError,
    StateProbeError,
)
from hyperkit_machine.hyperkit_cmd import HyperKit, HyperKitConfig
from hyperkit_machine.models import MachineSpec, MachineState
from hyperkit_machine.network import (
    DhcpLeases,
    LeaseSource,
    get_host_net_addr,
    lookup_mac,
    mac_from_uuid,
    wait_for_ip,
)
from hyperkit_machine.nfs_exports import NfsExports
from hyperkit_machine.platform_utils import ProcessHandle, find_process_name
from hyperkit_machine.settings import Settings
from hyperkit_machine.shares import ExportRegistry, SharedFolderExporter
from hyperkit_machine.ssh import CommandRunner, SSHCommandRunner, wait_for_ssh
from hyperkit_machine.supervisor import ProcessSupervisor

logger = get_logger(__name__)


class Hypervisor(Protocol):
    def start(self) -> int: ...

    def kill(self) -> None: ...


class HyperkitDriver:
    """Create, start, stop and inspect a single hyperkit virtual machine.

    Args:
        machine_name: Name of the machine; its state lives in
            <store_path>/machines/<machine_name>.
        store_path: Root of all machine state. Defaults to settings.store_path.
        spec: Machine description. When omitted, the saved config.json of an
            existing machine is loaded, otherwise defaults are used.
        settings: Host configuration (tool paths, wait budgets).
    """

    def __init__(
        self,
        machine_name: str,
        store_path: Path | str | None = None,
        spec: MachineSpec | None = None,
        *,
        settings: Settings | None = None,
        lease_source: LeaseSource | None = None,
        registry: ExportRegistry | None = None,
        mounter: ImageMounter | None = None,
        hypervisor_factory: Callable[[HyperKitConfig], Hypervisor] = HyperKit,
        handle_factory: Callable[[int], ProcessHandle] = ProcessHandle,
        find_name: Callable[[int], str | None] = find_process_name,
        runner_factory: Callable[[str], CommandRunner] | None = None,
        host_addr: Callable[[], str] | None = None,
        mac_resolver: Callable[[str], str] | None = None,
        geteuid: Callable[[], int] = os.geteuid,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.settings = settings or Settings()
        self.machine_name = machine_name
        self.common = CommonHelpers(machine_name, Path(store_path or self.settings.store_path))

        if spec is None:
            spec = MachineSpec.load(self.config_path) if self.config_path.exists() else MachineSpec()
        self.spec = spec

        self.lease_source = lease_source or DhcpLeases(self.settings.dhcpd_leases_file)
        self.registry = registry or NfsExports(self.settings.exports_file, self.settings.nfsd_bin)
        self.mounter = mounter or HdiutilMounter(self.settings.hdiutil_bin)
        self.hypervisor_factory = hypervisor_factory
        self.runner_factory = runner_factory or self._ssh_runner
        self.host_addr = host_addr or (lambda: get_host_net_addr(self.settings.vmnet_plist))
        self.mac_resolver = mac_resolver or (lambda uuid: mac_from_uuid(uuid, self.settings.hyperkit_bin))
        self.supervisor = ProcessSupervisor(self.state_dir, handle_factory=handle_factory, find_name=find_name)
        self._geteuid = geteuid
        self._sleep = sleep

    # -------------------------------------------------------------------------
    # Paths and identity
    # -------------------------------------------------------------------------

    @property
    def state_dir(self) -> Path:
        return self.common.state_dir

    @property
    def config_path(self) -> Path:
        return self.common.resolve_store_path(constants.CONFIG_FILE_NAME)

    def driver_name(self) -> str:
        return constants.DRIVER_NAME

    def mac_address(self) -> str:
        """Guest MAC in lease-table form, as vmnet assigns it for the machine UUID."""
        return lookup_mac(self.spec.uuid, self.mac_resolver)

    @property
    def shares(self) -> SharedFolderExporter:
        return SharedFolderExporter(
            self.machine_name,
            self.spec,
            self.state_dir,
            self.registry,
            host_addr=self.host_addr,
        )

    def save_config(self) -> None:
        self.state_dir.mkdir(parents=True, exist_ok=True)
        self.spec.save(self.config_path)

    # -------------------------------------------------------------------------
    # Lifecycle
    # -------------------------------------------------------------------------

    def pre_create_check(self) -> None:
        """Fail before any side effect when the hypervisor cannot run.

        Raises:
            ElevatedPermissionsError: Not running as root.
        """
        if self._geteuid() != 0:
            exe = self.settings.hyperkit_bin
            raise ElevatedPermissionsError(
                constants.PERMISSION_ERROR_TEMPLATE.format(name=exe.name, exe=exe),
                context={"exe": str(exe), "euid": self._geteuid()},
            )

    def create(self) -> None:
        """Prepare disk, ISO and boot artifacts, then start the machine."""
        logger.info("Creating machine", extra={"machine": self.machine_name, "state_dir": str(self.state_dir)})
        self.common.make_disk_image(self.spec.boot2docker_url, self.spec.disk_size)

        iso_path = self.common.resolve_store_path(constants.ISO_FILENAME)
        BootArtifactExtractor(self.spec, self.state_dir, self.mounter).extract(iso_path)
        self.save_config()

        self.start()

    def start(self) -> None:
        """Boot the machine and wait until it has an IP address.

        A hyperkit left running by an earlier start is reconnected to
        instead of launching a second one.

        Raises:
            UncleanShutdownError: A stale pid file could not be reconciled.
            HypervisorError: hyperkit could not be launched or queried for the MAC.
            IPAddressTimeoutError: No DHCP lease appeared within the budget.
            ExportError, CommunicationError: Shared folder setup failed.
        """
        live_pid = self.supervisor.recover_from_unclean_shutdown()

        logger.info(f"Using UUID {self.spec.uuid}")
        mac = self.mac_address()
        logger.info(f"Generated MAC {mac}")

        hypervisor: Hypervisor | None = None
        if live_pid:
            logger.info("Reconnecting to running hyperkit", extra={"machine": self.machine_name, "pid": live_pid})
            self.supervisor.adopt(live_pid)
        else:
            config = HyperKitConfig.from_spec(self.spec, self.state_dir, self.settings.hyperkit_bin)
            hypervisor = self.hypervisor_factory(config)
            logger.info(f"Starting with cmdline: {self.spec.cmdline}")
            hypervisor.start()

        try:
            self.spec.ip_address = wait_for_ip(
                self.lease_source,
                mac,
                attempts=self.settings.ip_wait_attempts,
                delay=self.settings.ip_wait_delay_seconds,
                sleep=self._sleep,
            )
            self.save_config()

            if self.spec.nfs_shares:
                logger.info("Setting up NFS mounts")
                runner = self.wait_for_guest_network(mac)
                self.shares.setup(self.spec.ip_address, runner)
        except Exception:
            if hypervisor is not None:
                hypervisor.kill()
            raise

        logger.info("Machine started", extra={"machine": self.machine_name, "ip": self.spec.ip_address})

    def wait_for_guest_network(self, mac: str) -> CommandRunner:
        """Longer wait used before shared folder setup: lease, then SSH.

        Returns:
            A runner connected to the guest's current address.
        """
        logger.info("Waiting for VM to come online...")
        self.spec.ip_address = wait_for_ip(
            self.lease_source,
            mac,
            attempts=self.settings.guest_network_wait_attempts,
            delay=self.settings.ip_wait_delay_seconds,
            sleep=self._sleep,
        )
        runner = self.runner_factory(self.spec.ip_address)
        wait_for_ssh(
            runner,
            attempts=self.settings.ssh_wait_attempts,
            delay=self.settings.ssh_wait_delay_seconds,
            sleep=self._sleep,
        )
        return runner

    def stop(self) -> None:
        """Remove NFS exports, then ask hyperkit to shut down (SIGTERM).

        Raises:
            MachineNotRunningError: No hypervisor pid is recorded.
        """
        self.shares.teardown()
        self.supervisor.send_signal(graceful=True)

    def kill(self) -> None:
        """SIGKILL the hypervisor; exports are left in place."""
        self.supervisor.send_signal(graceful=False)

    def remove(self) -> None:
        """Make sure the machine is no longer running. On-disk state is kept."""
        try:
            state = self.get_state()
        except StateProbeError as e:
            logger.info(f"Error checking machine status: {e.message}, assuming it has been removed already")
            return
        if state is MachineState.RUNNING:
            self.stop()

    def restart(self) -> None:
        self.common.restart(self)

    def get_state(self) -> MachineState:
        """Raises StateProbeError when liveness cannot be determined."""
        return self.supervisor.get_state()

    # -------------------------------------------------------------------------
    # Addressing
    # -------------------------------------------------------------------------

    def get_ip(self) -> str:
        if not self.spec.ip_address:
            raise MachineNotRunningError(
                "IP address is not set",
                context={"machine": self.machine_name},
            )
        return self.spec.ip_address

    def get_url(self) -> str:
        """Docker-compatible host URL, e.g. tcp://192.168.64.2:2376."""
        return f"tcp://{self.get_ip()}:{constants.DOCKER_PORT}"

    def get_ssh_hostname(self) -> str:
        return self.spec.ip_address

    def get_ssh_username(self) -> str:
        if not self.spec.ssh_user:
            self.spec.ssh_user = constants.DEFAULT_SSH_USER
        return self.spec.ssh_user

    def get_ssh_key_path(self) -> Path:
        return self.common.get_ssh_key_path()

    def _ssh_runner(self, host: str) -> CommandRunner:
        return SSHCommandRunner(
            host,
            self.get_ssh_username(),
            self.get_ssh_key_path(),
            port=self.spec.ssh_port,
            connect_timeout=self.settings.ssh_connect_timeout_seconds,
            command_timeout=self.settings.ssh_command_timeout_seconds,
        )
