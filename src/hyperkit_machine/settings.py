"""Runtime configuration from environment variables."""

from pathlib import Path

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

from hyperkit_machine import constants


class Settings(BaseSettings):
    """Host-side configuration.

    All settings can be overridden via environment variables with the
    HYPERKIT_MACHINE_ prefix.
    Example: HYPERKIT_MACHINE_HYPERKIT_BIN=/usr/local/bin/hyperkit
    """

    model_config = SettingsConfigDict(
        env_prefix="HYPERKIT_MACHINE_",
        extra="ignore",
    )

    # Host tools
    hyperkit_bin: Path = Path(constants.HYPERKIT_BIN)
    hdiutil_bin: Path = Path("/usr/bin/hdiutil")
    nfsd_bin: Path = Path("/sbin/nfsd")

    # Host state
    store_path: Path = Field(default_factory=lambda: Path.home() / ".hyperkit-machine")
    dhcpd_leases_file: Path = Path(constants.DHCPD_LEASES_FILE)
    vmnet_plist: Path = Path(constants.VMNET_PLIST)
    exports_file: Path = Path(constants.EXPORTS_FILE)

    # Polling budgets
    ip_wait_attempts: int = Field(default=constants.IP_WAIT_ATTEMPTS, ge=1)
    guest_network_wait_attempts: int = Field(default=constants.GUEST_NETWORK_WAIT_ATTEMPTS, ge=1)
    ip_wait_delay_seconds: float = Field(default=constants.IP_WAIT_DELAY_SECONDS, ge=0)
    ssh_wait_attempts: int = Field(default=constants.SSH_WAIT_ATTEMPTS, ge=1)
    ssh_wait_delay_seconds: float = Field(default=constants.SSH_WAIT_DELAY_SECONDS, ge=0)
    ssh_connect_timeout_seconds: float = Field(default=constants.SSH_CONNECT_TIMEOUT_SECONDS, gt=0)
    ssh_command_timeout_seconds: float = Field(default=constants.SSH_COMMAND_TIMEOUT_SECONDS, gt=0)
