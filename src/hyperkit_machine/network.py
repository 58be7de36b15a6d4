"""Guest address resolution through the host DHCP lease table.

The guest's MAC address is assigned by vmnet from the machine UUID (asked
for through `hyperkit -M`), normalized to the non-zero-padded form bootpd
writes into /var/db/dhcpd_leases, and looked up there. The lease table is refreshed by the host independently of us, so a
missing entry is transient until the attempt budget runs out.

Lease file format (one block per lease, newest first):

    {
            name=boot2docker
            ip_address=192.168.64.2
            hw_address=1,2:a:b:c:d:e
            identifier=1,2:a:b:c:d:e
            lease=0x5c3c7a64
    }
"""

from __future__ import annotations

import plistlib
import re
import subprocess
import time
from collections.abc import Callable
from dataclasses import dataclass
from pathlib import Path
from typing import Protocol

from hyperkit_machine import constants
from hyperkit_machine._logging import get_logger
from hyperkit_machine.exceptions import (
    AddressNotFoundError,
    HypervisorError,
    IPAddressTimeoutError,
    PermanentError,
)
from hyperkit_machine.retry import retry_after

logger = get_logger(__name__)

_LEADING_ZERO_RE = re.compile(r"\b0([0-9a-f])\b")
_VMNET_MAC_RE = re.compile(r"^MAC:\s*([0-9a-fA-F]{1,2}(?::[0-9a-fA-F]{1,2}){5})\s*$", re.MULTILINE)


class LeaseSource(Protocol):
    """Read-only view of the host lease table."""

    def lookup(self, mac: str) -> str:
        """Return the IP leased to ``mac`` or raise AddressNotFoundError."""
        ...


@dataclass(frozen=True, slots=True)
class DhcpLease:
    """One entry of the host lease table."""

    name: str
    ip_address: str
    hw_address: str
    identifier: str
    lease: str


def vmnet_mac_cmd(hyperkit_bin: Path, machine_uuid: str) -> list[str]:
    """hyperkit invocation that prints the vmnet MAC for ``machine_uuid`` and exits.

    Uses the same virtio-net slot and -U uuid as the real boot, so vmnet
    hands back the address the guest will lease with.
    """
    return [
        str(hyperkit_bin),
        "-M",
        "-s",
        "0:0,hostbridge",
        "-s",
        "31,lpc",
        "-s",
        "1:0,virtio-net",
        "-U",
        machine_uuid,
        "-f",
        "kexec,/dev/null,/dev/null,",
    ]


def parse_vmnet_mac(output: str) -> str:
    """Extract the address from hyperkit's ``MAC: xx:xx:..`` line, or ""."""
    match = _VMNET_MAC_RE.search(output)
    return match.group(1).lower() if match else ""


def mac_from_uuid(machine_uuid: str, hyperkit_bin: Path = Path(constants.HYPERKIT_BIN)) -> str:
    """Ask vmnet which MAC address it assigns to ``machine_uuid``.

    Raises:
        HypervisorError: hyperkit could not be run or printed no MAC.
    """
    cmd = vmnet_mac_cmd(hyperkit_bin, machine_uuid)
    logger.debug("Running", extra={"cmd": cmd})
    try:
        result = subprocess.run(cmd, capture_output=True, text=True, check=False)
    except OSError as e:
        raise HypervisorError(f"could not query vmnet MAC: {e}", context={"cmd": cmd}) from e

    mac = parse_vmnet_mac(result.stdout)
    if result.returncode != 0 or not mac:
        raise HypervisorError(
            f"could not get MAC address from UUID {machine_uuid}: "
            f"exit code {result.returncode}: {result.stderr.strip()}",
            context={"cmd": cmd, "returncode": result.returncode, "stdout": result.stdout},
        )
    return mac


def trim_mac_address(mac: str) -> str:
    """Strip the leading zero of every byte group ("02:0a:00" -> "2:a:0")."""
    return _LEADING_ZERO_RE.sub(r"\1", mac.lower())


def lookup_mac(
    machine_uuid: str,
    resolve: Callable[[str], str] = mac_from_uuid,
) -> str:
    """MAC address for ``machine_uuid`` in lease-table form."""
    return trim_mac_address(resolve(machine_uuid))


def parse_dhcpd_leases(text: str) -> list[DhcpLease]:
    """Parse the bootpd lease file into entries, preserving file order."""
    leases: list[DhcpLease] = []
    fields: dict[str, str] | None = None
    for raw_line in text.splitlines():
        line = raw_line.strip()
        if line == "{":
            fields = {}
        elif line == "}":
            if fields is not None:
                leases.append(
                    DhcpLease(
                        name=fields.get("name", ""),
                        ip_address=fields.get("ip_address", ""),
                        hw_address=_strip_hw_type(fields.get("hw_address", "")),
                        identifier=fields.get("identifier", ""),
                        lease=fields.get("lease", ""),
                    )
                )
            fields = None
        elif fields is not None and "=" in line:
            key, value = line.split("=", 1)
            fields[key.strip()] = value.strip()
    return leases


def _strip_hw_type(hw_address: str) -> str:
    # "1,2:a:b:c:d:e" -> "2:a:b:c:d:e" (1 = ethernet)
    _, _, mac = hw_address.partition(",")
    return mac or hw_address


class DhcpLeases:
    """Lease source backed by the bootpd lease file."""

    def __init__(self, path: Path = Path(constants.DHCPD_LEASES_FILE)) -> None:
        self.path = path

    def lookup(self, mac: str) -> str:
        """Return the IP currently leased to ``mac`` (one read, never blocks).

        Raises:
            AddressNotFoundError: The file does not exist yet or holds no lease for ``mac``.
        """
        try:
            text = self.path.read_text()
        except FileNotFoundError as e:
            raise AddressNotFoundError(
                f"DHCP lease file {self.path} does not exist yet",
                context={"mac": mac, "path": str(self.path)},
            ) from e

        wanted = trim_mac_address(mac)
        for lease in parse_dhcpd_leases(text):
            if trim_mac_address(lease.hw_address) == wanted:
                return lease.ip_address
        raise AddressNotFoundError(
            f"could not find an IP address for {mac}",
            context={"mac": mac, "path": str(self.path)},
        )


def wait_for_ip(
    leases: LeaseSource,
    mac: str,
    *,
    attempts: int = constants.IP_WAIT_ATTEMPTS,
    delay: float = constants.IP_WAIT_DELAY_SECONDS,
    sleep: Callable[[float], None] = time.sleep,
) -> str:
    """Block until ``mac`` has a lease, for at most ``attempts`` lookups.

    Raises:
        IPAddressTimeoutError: No lease appeared within the budget (terminal).
    """
    try:
        ip = retry_after(attempts, lambda: leases.lookup(mac), delay, sleep=sleep)
    except AddressNotFoundError as e:
        raise IPAddressTimeoutError(
            f"IP address never found in dhcp leases file after {attempts} attempts: {e.message}",
            context={"mac": mac, "attempts": attempts, "delay": delay},
        ) from e
    logger.debug("Got an IP", extra={"mac": mac, "ip": ip})
    return ip


def get_host_net_addr(plist_path: Path = Path(constants.VMNET_PLIST)) -> str:
    """Host address on the shared vmnet bridge (the guest's NFS server).

    Raises:
        PermanentError: The vmnet configuration is unreadable or has no shared address.
    """
    try:
        with plist_path.open("rb") as f:
            data = plistlib.load(f)
    except (OSError, plistlib.InvalidFileException) as e:
        raise PermanentError(
            f"could not read vmnet configuration {plist_path}: {e}",
            context={"path": str(plist_path)},
        ) from e

    address = data.get("Shared_Net_Address")
    if not isinstance(address, str) or not address:
        raise PermanentError(
            f"could not find Shared_Net_Address in {plist_path}",
            context={"path": str(plist_path)},
        )
    return address
