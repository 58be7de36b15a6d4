"""Command-line interface for hyperkit-machine.

Usage:
    hyperkit-machine create --boot2docker-url ~/Downloads/boot2docker.iso default
    hyperkit-machine start default
    hyperkit-machine status default
    hyperkit-machine url default
    hyperkit-machine stop default
"""

from __future__ import annotations

import logging
import sys
from collections.abc import Callable
from pathlib import Path
from typing import NoReturn, TypeVar

import click

from hyperkit_machine import (
    BootArtifactError,
    CommunicationError,
    ElevatedPermissionsError,
    ExportError,
    HyperkitDriver,
    IPAddressTimeoutError,
    MachineError,
    MachineNotRunningError,
    MachineSpec,
    MachineState,
    Settings,
    StateProbeError,
    UncleanShutdownError,
    __version__,
)
from hyperkit_machine import constants
from hyperkit_machine._logging import configure_logging

# Exit codes following Unix conventions
EXIT_SUCCESS = 0
EXIT_CLI_ERROR = 2
EXIT_MACHINE_ERROR = 125

T = TypeVar("T")


def format_error(title: str, message: str, suggestions: list[str] | None = None) -> str:
    """Format an error message following What → Why → Fix pattern.

    Args:
        title: Short error title
        message: Detailed explanation
        suggestions: Optional list of suggestions to fix the issue

    Returns:
        Formatted error string
    """
    lines = [
        click.style(f"Error: {title}", fg="red", bold=True),
        "",
        f"  {message}",
    ]

    if suggestions:
        lines.extend(["", "  Suggestions:"])
        lines.extend(f"    • {suggestion}" for suggestion in suggestions)

    return "\n".join(lines)


def describe_error(e: MachineError) -> tuple[str, list[str]]:
    """Title and suggestions for a machine error."""
    if isinstance(e, ElevatedPermissionsError):
        return "Permission denied", ["Run the command printed above, or retry with sudo"]
    if isinstance(e, IPAddressTimeoutError):
        return "Machine did not get an IP address", [
            f"Check {constants.DHCPD_LEASES_FILE} for a lease",
            "Check the console log in the machine directory (console-ring)",
        ]
    if isinstance(e, BootArtifactError):
        return "Boot image not usable", ["Check --boot2docker-url points to a boot2docker ISO"]
    if isinstance(e, UncleanShutdownError):
        return "Previous run left stale state", ["Remove hyperkit.pid from the machine directory"]
    if isinstance(e, ExportError):
        return "NFS export failed", [f"Check {constants.EXPORTS_FILE} and run 'sudo nfsd checkexports'"]
    if isinstance(e, CommunicationError):
        return "Guest command failed", ["Check that the guest is reachable over SSH"]
    if isinstance(e, MachineNotRunningError):
        return "Machine not running", ["Start it with 'hyperkit-machine start'"]
    if isinstance(e, StateProbeError):
        return "Machine state unknown", []
    return "Machine operation failed", []


def fail(e: MachineError) -> NoReturn:
    title, suggestions = describe_error(e)
    click.echo(format_error(title, e.message, suggestions), err=True)
    sys.exit(EXIT_MACHINE_ERROR)


def run_operation(operation: Callable[[], T]) -> T:
    """Run a driver operation, rendering MachineError and exiting 125."""
    try:
        return operation()
    except MachineError as e:
        fail(e)


def make_driver(ctx: click.Context, name: str, spec: MachineSpec | None = None) -> HyperkitDriver:
    settings: Settings = ctx.obj["settings"]
    return run_operation(lambda: HyperkitDriver(name, settings.store_path, spec, settings=settings))


machine_argument = click.argument("name", default="default")


@click.group(context_settings={"help_option_names": ["-h", "--help"]})
@click.option(
    "--store-path",
    type=click.Path(file_okay=False, path_type=Path),
    help="Root directory of machine state [default: ~/.hyperkit-machine]",
)
@click.option("-v", "--verbose", count=True, help="Increase log verbosity (repeatable)")
@click.option("-q", "--quiet", is_flag=True, help="Only log errors")
@click.version_option(__version__, "-V", "--version", prog_name="hyperkit-machine")
@click.pass_context
def main(ctx: click.Context, store_path: Path | None, verbose: int, quiet: bool) -> None:
    """Manage a hyperkit virtual machine."""
    level = None
    if verbose >= 2:  # noqa: PLR2004
        level = logging.DEBUG
    elif verbose == 1:
        level = logging.INFO
    configure_logging(level=level, quiet=quiet)

    settings = Settings()
    if store_path is not None:
        settings = settings.model_copy(update={"store_path": store_path.expanduser()})
    ctx.ensure_object(dict)
    ctx.obj["settings"] = settings


@main.command()
@machine_argument
@click.option("--boot2docker-url", required=True, help="Local path or URL of the boot2docker ISO")
@click.option("--cpus", default=constants.DEFAULT_CPUS, show_default=True, help="Number of vCPUs")
@click.option("--memory", default=constants.DEFAULT_MEMORY_MB, show_default=True, help="Memory in MB")
@click.option("--disk-size", default=constants.DEFAULT_DISK_SIZE_MB, show_default=True, help="Disk size in MB")
@click.option("--uuid", "machine_uuid", default=None, help="Machine UUID (the MAC address is derived from it)")
@click.option("--cmdline", default="", help="Kernel command line [default: read from isolinux.cfg]")
@click.option("--nfs-share", "nfs_shares", multiple=True, help="Host directory to share over NFS (repeatable)")
@click.option(
    "--nfs-shares-root",
    default=constants.DEFAULT_NFS_SHARES_ROOT,
    show_default=True,
    help="Mount root for NFS shares inside the guest",
)
@click.pass_context
def create(
    ctx: click.Context,
    name: str,
    boot2docker_url: str,
    cpus: int,
    memory: int,
    disk_size: int,
    machine_uuid: str | None,
    cmdline: str,
    nfs_shares: tuple[str, ...],
    nfs_shares_root: str,
) -> None:
    """Create and start machine NAME."""
    fields = {
        "boot2docker_url": boot2docker_url,
        "cpu": cpus,
        "memory": memory,
        "disk_size": disk_size,
        "cmdline": cmdline,
        "nfs_shares": list(nfs_shares),
        "nfs_shares_root": nfs_shares_root,
    }
    if machine_uuid:
        fields["uuid"] = machine_uuid
    try:
        spec = MachineSpec(**fields)
    except ValueError as e:
        raise click.BadParameter(str(e)) from e

    driver = make_driver(ctx, name, spec)
    run_operation(driver.pre_create_check)
    run_operation(driver.create)
    click.echo(f"Machine {name} running at {driver.spec.ip_address}")


@main.command()
@machine_argument
@click.pass_context
def start(ctx: click.Context, name: str) -> None:
    """Start machine NAME."""
    driver = make_driver(ctx, name)
    run_operation(driver.start)
    click.echo(f"Machine {name} running at {driver.spec.ip_address}")


@main.command()
@machine_argument
@click.pass_context
def stop(ctx: click.Context, name: str) -> None:
    """Stop machine NAME gracefully."""
    run_operation(make_driver(ctx, name).stop)


@main.command()
@machine_argument
@click.pass_context
def kill(ctx: click.Context, name: str) -> None:
    """Stop machine NAME forcefully."""
    run_operation(make_driver(ctx, name).kill)


@main.command()
@machine_argument
@click.pass_context
def remove(ctx: click.Context, name: str) -> None:
    """Stop machine NAME if it is running."""
    run_operation(make_driver(ctx, name).remove)


@main.command()
@machine_argument
@click.pass_context
def restart(ctx: click.Context, name: str) -> None:
    """Stop, then start machine NAME."""
    driver = make_driver(ctx, name)
    run_operation(driver.restart)
    click.echo(f"Machine {name} running at {driver.spec.ip_address}")


@main.command()
@machine_argument
@click.pass_context
def status(ctx: click.Context, name: str) -> None:
    """Print the state of machine NAME (Running, Stopped or Error)."""
    driver = make_driver(ctx, name)
    try:
        state = driver.get_state()
    except StateProbeError as e:
        click.echo(MachineState.ERROR.value)
        fail(e)
    except MachineError as e:
        fail(e)
    click.echo(state.value)


@main.command()
@machine_argument
@click.pass_context
def ip(ctx: click.Context, name: str) -> None:
    """Print the IP address of machine NAME."""
    click.echo(run_operation(make_driver(ctx, name).get_ip))


@main.command()
@machine_argument
@click.pass_context
def url(ctx: click.Context, name: str) -> None:
    """Print the Docker URL of machine NAME."""
    click.echo(run_operation(make_driver(ctx, name).get_url))
