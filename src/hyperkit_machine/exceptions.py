"""Exception hierarchy for hyperkit-machine.

All exceptions inherit from MachineError.

Hierarchy:
    MachineError (base)
    ├── TransientError (retryable marker base)
    │   ├── AddressNotFoundError       ← no DHCP lease for the MAC yet
    │   └── GuestNotReadyError         ← guest SSH not accepting connections yet
    ├── PermanentError (non-retryable marker base)
    │   ├── ElevatedPermissionsError   ← hypervisor needs root
    │   ├── IPAddressTimeoutError      ← lease never appeared within budget
    │   ├── BootArtifactError          ← kernel/initrd/cmdline not found or copy failed
    │   ├── MountError                 ← boot image attach/detach failed
    │   ├── UncleanShutdownError       ← stale pid file could not be reconciled
    │   ├── HypervisorError            ← hyperkit could not be launched
    │   └── MachineNotRunningError     ← no pid recorded for a signal
    ├── StateProbeError               ← process liveness could not be determined
    ├── ExportError                   ← NFS export registry failure
    │   └── ExportConflictError        ← overlapping export already registered
    └── CommunicationError            ← remote command channel failure
"""

from __future__ import annotations

from typing import Any


class MachineError(Exception):
    """Base exception for all machine lifecycle errors with structured context.

    Attributes:
        message: Human-readable error message
        context: Dictionary of structured error context for logging/debugging
    """

    def __init__(self, message: str, context: dict[str, Any] | None = None):
        super().__init__(message)
        self.message = message
        self.context = context or {}


# =============================================================================
# Transient vs Permanent Error Base Classes
# =============================================================================


class TransientError(MachineError):
    """Base for transient errors that may succeed on retry.

    retry_after() retries exactly this family; anything else is terminal.
    """


class PermanentError(MachineError):
    """Base for permanent errors that won't succeed on retry."""


class AddressNotFoundError(TransientError):
    """No DHCP lease is (yet) recorded for the hardware address."""


class GuestNotReadyError(TransientError):
    """The guest SSH daemon does not accept connections yet."""


# =============================================================================
# Permanent Errors
# =============================================================================


class ElevatedPermissionsError(PermanentError):
    """The hypervisor requires elevated permissions.

    Detected once, up front, before any side effects. The message carries the
    remediation command.
    """


class IPAddressTimeoutError(PermanentError):
    """The guest never obtained an IP address within the attempt budget.

    A start that ends here is a failed start.
    """


class BootArtifactError(PermanentError):
    """Kernel, initrd or boot command line could not be extracted from the boot image."""


class MountError(PermanentError):
    """Attaching or detaching the boot image failed.

    Attributes:
        stderr: Standard error of the mount tool (if available)
    """

    def __init__(self, message: str, context: dict[str, Any] | None = None, stderr: str = ""):
        super().__init__(message, context)
        self.stderr = stderr


class UncleanShutdownError(PermanentError):
    """State left behind by a previous run could not be reconciled.

    Raised when the hypervisor pid file cannot be read, parsed or removed.
    """


class HypervisorError(PermanentError):
    """The hypervisor process could not be launched."""


class MachineNotRunningError(PermanentError):
    """A signal was requested but no hypervisor pid is recorded."""


# =============================================================================
# Probe, Export and Communication Errors
# =============================================================================


class StateProbeError(MachineError):
    """Process liveness could not be determined.

    Distinct from "not running": callers must not treat this as Stopped.
    """


class ExportError(MachineError):
    """NFS export registry operation failed.

    Attributes:
        identifier: Export block identifier involved (if any)
    """

    def __init__(self, message: str, context: dict[str, Any] | None = None, identifier: str = ""):
        ctx = context or {}
        if identifier:
            ctx.setdefault("identifier", identifier)
        super().__init__(message, ctx)
        self.identifier = identifier


class ExportConflictError(ExportError):
    """The export overlaps an export that is already registered.

    Non-fatal during shared-folder setup: the share is skipped.
    """


class CommunicationError(MachineError):
    """Remote command execution in the guest failed.

    Attributes:
        exit_status: Remote exit status (None when the channel itself failed)
    """

    def __init__(self, message: str, context: dict[str, Any] | None = None, exit_status: int | None = None):
        super().__init__(message, context)
        self.exit_status = exit_status
