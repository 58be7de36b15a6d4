"""Shared folders: host directories exported into the guest over NFS.

Setup runs after the guest has an address and accepts SSH:
    register one export per share -> reload nfsd once -> run one mount script

Teardown runs at the start of every stop, before the termination signal,
while the export identifiers can still be derived:
    remove one export per share -> reload nfsd once

Per-share failures are isolated: a conflicting export is skipped during
setup, a failed removal is logged during teardown.
"""

from __future__ import annotations

import getpass
import os
import posixpath
import shlex
from collections.abc import Callable
from pathlib import Path
from typing import Protocol

from hyperkit_machine import constants
from hyperkit_machine._logging import get_logger
from hyperkit_machine.exceptions import ExportConflictError, ExportError
from hyperkit_machine.models import MachineSpec
from hyperkit_machine.ssh import CommandRunner

logger = get_logger(__name__)


class ExportRegistry(Protocol):
    def add(self, identifier: str, export: str) -> object: ...

    def remove(self, identifier: str) -> object: ...

    def reload_daemon(self) -> None: ...


def invoking_user() -> str:
    """Host user the exports are mapped to (the sudo caller when elevated)."""
    return os.environ.get("SUDO_USER") or getpass.getuser()


def guest_mount_point(root: str, share: str) -> str:
    return posixpath.join(root.rstrip("/") or "/", share.lstrip("/"))


def build_mount_script(host_ip: str, root: str, shares: list[str]) -> str:
    """Shell script that creates and NFS-mounts every share inside the guest."""
    lines = ["#!/bin/sh", "set -e"]
    for share in shares:
        target = shlex.quote(guest_mount_point(root, share))
        source = shlex.quote(f"{host_ip}:{share}")
        lines.append(f"sudo mkdir -p {target}")
        lines.append(f"sudo mount -t nfs -o noacl,async {source} {target}")
    return "\n".join(lines) + "\n"


class SharedFolderExporter:
    """Export/unexport the shares of one machine."""

    def __init__(
        self,
        machine_name: str,
        spec: MachineSpec,
        state_dir: Path,
        registry: ExportRegistry,
        *,
        host_addr: Callable[[], str],
        host_user: Callable[[], str] = invoking_user,
    ) -> None:
        self.machine_name = machine_name
        self.spec = spec
        self.state_dir = state_dir
        self.registry = registry
        self._host_addr = host_addr
        self._host_user = host_user

    def resolve_share(self, share: str) -> str:
        """Absolute host path of ``share`` (relative shares live under the state directory)."""
        if os.path.isabs(share):
            return share
        return str(self.state_dir / share)

    def export_identifier(self, share: str) -> str:
        return f"{constants.EXPORT_IDENTIFIER_PREFIX} {self.machine_name}-{self.resolve_share(share)}"

    def setup(self, ip_address: str, runner: CommandRunner) -> list[str]:
        """Register, reload, then mount inside the guest.

        Returns:
            The absolute host paths that were exported and mounted.

        Raises:
            ExportError: A registration failed for a reason other than a conflict,
                or the daemon reload failed.
            CommunicationError: The mount script failed in the guest.
        """
        if not self.spec.nfs_shares:
            return []

        user = self._host_user()
        host_ip = self._host_addr()
        exported: list[str] = []

        try:
            for share in self.spec.nfs_shares:
                path = self.resolve_share(share)
                export = f"{path} {ip_address} -alldirs -mapall={user}"
                try:
                    self.registry.add(self.export_identifier(share), export)
                except ExportConflictError as e:
                    logger.info(f"Conflicting NFS Share not setup and ignored: {e.message}")
                    continue
                exported.append(path)
        except Exception:
            self._reload(after_failure=True)
            raise
        self._reload(after_failure=False)

        if not exported:
            logger.info("No NFS shares exported, skipping guest mounts")
            return exported

        script = build_mount_script(host_ip, self.spec.nfs_shares_root, exported)
        runner.run(f"sh -c {shlex.quote(script)}")
        logger.info("NFS shares mounted", extra={"shares": exported, "ip": ip_address})
        return exported

    def teardown(self) -> None:
        """Remove every share's export, then reload nfsd exactly once.

        The reload runs even with no shares configured. Never raises for
        registry errors.
        """
        if self.spec.nfs_shares:
            logger.info("You must be root to remove NFS shared folders.")
        for share in self.spec.nfs_shares:
            try:
                self.registry.remove(self.export_identifier(share))
            except ExportError as e:
                logger.error(f"failed removing nfs share ({share}): {e.message}")

        try:
            self.registry.reload_daemon()
        except ExportError as e:
            logger.error(f"failed to reload the nfs daemon: {e.message}")

    def _reload(self, *, after_failure: bool) -> None:
        try:
            self.registry.reload_daemon()
        except ExportError as e:
            if not after_failure:
                raise
            logger.error(f"failed to reload the nfs daemon after export error: {e.message}")
