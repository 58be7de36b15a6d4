"""Data models for hyperkit-machine."""

from __future__ import annotations

from enum import Enum
from pathlib import Path
from uuid import UUID, uuid4

from pydantic import BaseModel, ConfigDict, Field, field_validator

from hyperkit_machine import constants


class MachineState(str, Enum):
    """Lifecycle state reported to the provisioning tool."""

    STOPPED = "Stopped"
    RUNNING = "Running"
    ERROR = "Error"


class MachineSpec(BaseModel):
    """Description of one virtual machine.

    Created at machine-creation time. Only boot artifact extraction fills in
    ``cmdline``, ``vmlinuz``/``initrd`` and the ``boot_*`` source paths;
    ``ip_address`` is runtime state refreshed on every start.

    Attributes:
        cpu: vCPU count.
        memory: Guest memory in MB.
        disk_size: Raw data disk size in MB.
        uuid: Stable machine identifier; the MAC address is derived from it.
        boot2docker_url: Local path or URL of the boot image.
        cmdline: Kernel command line (auto-discovered from isolinux.cfg if empty).
        vmlinuz: Kernel file name, relative to the state directory.
        initrd: Initrd file name, relative to the state directory.
        boot_kernel: Kernel path inside the mounted boot image.
        boot_initrd: Initrd path inside the mounted boot image.
        nfs_shares: Host directories exported into the guest.
        nfs_shares_root: Guest-side mount root for the shares.
        ssh_user: Login identity in the guest.
        ssh_port: Guest SSH port.
        ip_address: Last resolved guest address ("" until resolved).
    """

    model_config = ConfigDict(validate_assignment=True, extra="forbid")

    cpu: int = Field(default=constants.DEFAULT_CPUS, ge=1)
    memory: int = Field(default=constants.DEFAULT_MEMORY_MB, ge=512)
    disk_size: int = Field(default=constants.DEFAULT_DISK_SIZE_MB, ge=1)
    uuid: str = Field(default_factory=lambda: str(uuid4()))
    boot2docker_url: str = ""
    cmdline: str = ""
    vmlinuz: str = ""
    initrd: str = ""
    boot_kernel: str = ""
    boot_initrd: str = ""
    nfs_shares: list[str] = Field(default_factory=list)
    nfs_shares_root: str = constants.DEFAULT_NFS_SHARES_ROOT
    ssh_user: str = constants.DEFAULT_SSH_USER
    ssh_port: int = Field(default=constants.DEFAULT_SSH_PORT, ge=1, le=65535)
    ip_address: str = ""

    @field_validator("uuid")
    @classmethod
    def _canonical_uuid(cls, value: str) -> str:
        return str(UUID(value))

    def save(self, path: Path) -> None:
        """Write the spec as JSON, replacing any previous copy atomically."""
        tmp = path.with_suffix(path.suffix + ".tmp")
        tmp.write_text(self.model_dump_json(indent=2))
        tmp.replace(path)

    @classmethod
    def load(cls, path: Path) -> MachineSpec:
        return cls.model_validate_json(path.read_text())
