"""Constants for hyperkit-machine file layout, defaults and polling budgets.

The compiled patterns are module-level immutables, initialized once at
import time; nothing mutates them afterwards.
"""

import re
from typing import Final

# ============================================================================
# Driver Identity
# ============================================================================

DRIVER_NAME: Final[str] = "hyperkit"
"""Name reported to the provisioning tool."""

HYPERVISOR_EXECUTABLE_MARKER: Final[str] = "hyper"
"""Substring identifying the hypervisor family (hyperkit, com.docker.hyperkit)."""

EXPORT_IDENTIFIER_PREFIX: Final[str] = "hyperkit-machine"
"""Prefix of NFS export block identifiers."""

# ============================================================================
# State Directory Layout
# ============================================================================

ISO_FILENAME: Final[str] = "boot2docker.iso"
"""Boot image copied into the state directory."""

ISO_MOUNT_PATH: Final[str] = "b2d-image"
"""Transient mount point for the boot image (relative to the state directory)."""

PID_FILE_NAME: Final[str] = "hyperkit.pid"
"""Pid file written by the hypervisor itself (plain integer)."""

MACHINE_FILE_NAME: Final[str] = "hyperkit.json"
"""Pid record written by the hypervisor executor (JSON with a ``pid`` field)."""

CONFIG_FILE_NAME: Final[str] = "config.json"
"""Persisted MachineSpec."""

DISK_FILE_NAME: Final[str] = "disk.img"
"""Raw data disk."""

SSH_KEY_FILE_NAME: Final[str] = "id_rsa"
"""Private key used for the remote command channel."""

CONSOLE_RING_FILE_NAME: Final[str] = "console-ring"
"""Serial console log sink."""

TTY_FILE_NAME: Final[str] = "tty"
"""Serial console pty symlink."""

ISOLINUX_CONFIG_NAME: Final[str] = "isolinux.cfg"
"""Bootloader configuration file signature."""

# ============================================================================
# Boot Artifact Patterns
# ============================================================================

KERNEL_RE: Final[re.Pattern[str]] = re.compile(r"(vmlinu[xz]|bzImage)\d*")
"""Kernel image naming convention."""

KERNEL_OPTION_RE: Final[re.Pattern[str]] = re.compile(r"(?:\t|\s{2})append\s+([\x20-\x7e]+)")
"""First ``append`` directive of an isolinux stanza (captures the options)."""

INITRD_MARKER: Final[str] = "initrd"
"""Substring identifying the initial ramdisk."""

# ============================================================================
# Machine Defaults
# ============================================================================

DEFAULT_CPUS: Final[int] = 2
"""Default vCPU count."""

DEFAULT_MEMORY_MB: Final[int] = 6000
"""Default guest memory in MB."""

DEFAULT_DISK_SIZE_MB: Final[int] = 20000
"""Default data disk size in MB."""

DEFAULT_SSH_USER: Final[str] = "docker"
"""Login identity inside boot2docker-style guests."""

DEFAULT_SSH_PORT: Final[int] = 22
"""Guest SSH port."""

DEFAULT_NFS_SHARES_ROOT: Final[str] = "/nfsshares"
"""Guest-side root under which shares are mounted."""

DOCKER_PORT: Final[int] = 2376
"""Port of the Docker daemon inside the guest (used for the machine URL)."""

# ============================================================================
# Polling Budgets
# ============================================================================

IP_WAIT_ATTEMPTS: Final[int] = 30
"""Lease lookups during start (~1 minute at 2 s spacing)."""

GUEST_NETWORK_WAIT_ATTEMPTS: Final[int] = 60
"""Lease lookups before shared-folder setup (~2 minutes at 2 s spacing)."""

IP_WAIT_DELAY_SECONDS: Final[float] = 2.0
"""Fixed delay between lease lookups."""

SSH_WAIT_ATTEMPTS: Final[int] = 30
"""Connection attempts while waiting for the guest SSH daemon."""

SSH_WAIT_DELAY_SECONDS: Final[float] = 2.0
"""Fixed delay between SSH connection attempts."""

SSH_CONNECT_TIMEOUT_SECONDS: Final[float] = 10.0
"""TCP/auth timeout for a single SSH connection attempt."""

SSH_COMMAND_TIMEOUT_SECONDS: Final[float] = 120.0
"""Upper bound for one remote command."""

# ============================================================================
# Host Paths (macOS)
# ============================================================================

HYPERKIT_BIN: Final[str] = "/usr/local/bin/hyperkit"
"""Default hypervisor executable."""

DHCPD_LEASES_FILE: Final[str] = "/var/db/dhcpd_leases"
"""Host DHCP lease table maintained by bootpd."""

VMNET_PLIST: Final[str] = "/Library/Preferences/SystemConfiguration/com.apple.vmnet.plist"
"""vmnet configuration holding the shared bridge address."""

EXPORTS_FILE: Final[str] = "/etc/exports"
"""NFS exports file."""

NFS_CONFLICT_MARKER: Final[str] = "conflicts with existing export"
"""nfsd checkexports message for overlapping exports."""

PERMISSION_ERROR_TEMPLATE: Final[str] = (
    "{name} needs to run with elevated permissions. "
    "Please run the following command, then try again: "
    "sudo chown root:wheel {exe} && sudo chmod u+s {exe}"
)
"""Remediation hint for ElevatedPermissionsError."""
