"""hyperkit-machine: lifecycle control for a single hyperkit virtual machine.

Boots a boot2docker-style ISO under hyperkit on macOS, resolves the guest
IP through the host DHCP lease table and exports host folders over NFS.

Quick Start:
    ```python
    from hyperkit_machine import HyperkitDriver, MachineSpec

    spec = MachineSpec(boot2docker_url="~/Downloads/boot2docker.iso", nfs_shares=["/Users/me/src"])
    driver = HyperkitDriver("default", "~/.hyperkit-machine", spec)
    driver.pre_create_check()
    driver.create()
    print(driver.get_url())  # tcp://192.168.64.2:2376
    driver.stop()
    ```

Existing machine (config.json in the state directory):
    ```python
    driver = HyperkitDriver("default")
    print(driver.get_state())  # MachineState.RUNNING
    ```
"""

from importlib.metadata import PackageNotFoundError, version

from hyperkit_machine.driver import HyperkitDriver
from hyperkit_machine.exceptions import (
    AddressNotFoundError,
    BootArtifactError,
    CommunicationError,
    ElevatedPermissionsError,
    ExportConflictError,
    ExportError,
    GuestNotReadyError,
    HypervisorError,
    IPAddressTimeoutError,
    MachineError,
    MachineNotRunningError,
    MountError,
    PermanentError,
    StateProbeError,
    TransientError,
    UncleanShutdownError,
)
from hyperkit_machine.models import MachineSpec, MachineState
from hyperkit_machine.retry import retry_after
from hyperkit_machine.settings import Settings

try:
    __version__ = version("hyperkit-machine")
except PackageNotFoundError:
    __version__ = "0.0.0.dev0"

__all__ = [
    "AddressNotFoundError",
    "BootArtifactError",
    "CommunicationError",
    "ElevatedPermissionsError",
    "ExportConflictError",
    "ExportError",
    "GuestNotReadyError",
    "HyperkitDriver",
    "HypervisorError",
    "IPAddressTimeoutError",
    "MachineError",
    "MachineNotRunningError",
    "MachineSpec",
    "MachineState",
    "MountError",
    "PermanentError",
    "Settings",
    "StateProbeError",
    "TransientError",
    "UncleanShutdownError",
    "__version__",
    "retry_after",
]
