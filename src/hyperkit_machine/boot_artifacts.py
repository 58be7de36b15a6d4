"""Kernel and initrd extraction from a boot image.

Pipeline:
1. Attach the ISO read-only at <state_dir>/b2d-image
2. Kernel options: first ``append`` line of isolinux.cfg (unless preset)
3. Kernel/initrd discovery by file name (unless preset)
4. Copy both into the state directory
5. Detach, always

The image itself is never modified; re-running overwrites earlier artifacts.
"""

from __future__ import annotations

import os
import shutil
import subprocess
from collections.abc import Iterator
from dataclasses import dataclass
from pathlib import Path
from typing import Protocol

from hyperkit_machine import constants
from hyperkit_machine._logging import get_logger
from hyperkit_machine.exceptions import BootArtifactError, MountError
from hyperkit_machine.models import MachineSpec

logger = get_logger(__name__)


class ImageMounter(Protocol):
    """Attach/detach a read-only disk image at a mount point."""

    def attach(self, image: Path, mount_point: Path) -> None: ...

    def detach(self, mount_point: Path) -> None: ...


class HdiutilMounter:
    """ImageMounter backed by macOS hdiutil."""

    def __init__(self, hdiutil_bin: Path = Path("/usr/bin/hdiutil")) -> None:
        self.hdiutil_bin = hdiutil_bin

    def attach(self, image: Path, mount_point: Path) -> None:
        self._run("attach", str(image), "-mountpoint", str(mount_point), "-readonly", "-nobrowse")

    def detach(self, mount_point: Path) -> None:
        self._run("detach", str(mount_point))

    def _run(self, *args: str) -> None:
        cmd = [str(self.hdiutil_bin), *args]
        logger.debug("Running", extra={"cmd": cmd})
        try:
            result = subprocess.run(cmd, capture_output=True, text=True, check=False)
        except OSError as e:
            raise MountError(f"hdiutil {args[0]} failed: {e}", context={"cmd": cmd}) from e
        if result.returncode != 0:
            raise MountError(
                f"hdiutil {args[0]} failed with exit code {result.returncode}: {result.stderr.strip()}",
                context={"cmd": cmd, "returncode": result.returncode},
                stderr=result.stderr,
            )


@dataclass(frozen=True, slots=True)
class BootFiles:
    """Result of scanning a mounted boot image."""

    kernel: Path | None
    initrd: Path | None


def _walk_files(root: Path) -> Iterator[Path]:
    """Yield every file under ``root`` in a stable (sorted) order."""
    for dirpath, dirnames, filenames in os.walk(root):
        dirnames.sort()
        for filename in sorted(filenames):
            yield Path(dirpath) / filename


def find_boot_files(root: Path) -> BootFiles:
    """First kernel-named and first initrd-named file under ``root``."""
    kernel: Path | None = None
    initrd: Path | None = None
    for path in _walk_files(root):
        if kernel is None and constants.KERNEL_RE.search(path.name):
            kernel = path
        elif initrd is None and constants.INITRD_MARKER in path.name:
            initrd = path
        if kernel is not None and initrd is not None:
            break
    return BootFiles(kernel=kernel, initrd=initrd)


def find_isolinux_config(root: Path) -> Path | None:
    for path in _walk_files(root):
        if path.name == constants.ISOLINUX_CONFIG_NAME:
            return path
    return None


def read_kernel_options(config: Path) -> str:
    """Options of the first ``append`` directive in an isolinux config, or ""."""
    with config.open(errors="replace") as f:
        for line in f:
            match = constants.KERNEL_OPTION_RE.search(line)
            if match:
                return match.group(1).strip()
    return ""


class BootArtifactExtractor:
    """Prepare kernel, initrd and command line for one machine."""

    def __init__(self, spec: MachineSpec, state_dir: Path, mounter: ImageMounter) -> None:
        self.spec = spec
        self.state_dir = state_dir
        self.mounter = mounter

    @property
    def mount_point(self) -> Path:
        return self.state_dir / constants.ISO_MOUNT_PATH

    def extract(self, iso_path: Path) -> None:
        """Run the full pipeline against ``iso_path``.

        Raises:
            MountError: Attach failed, or detach failed after a successful extraction.
            BootArtifactError: Command line, kernel or initrd missing, or a copy failed.
        """
        mount_point = self.mount_point
        mount_point.mkdir(parents=True, exist_ok=True)

        logger.debug(f"Mounting {iso_path.name}")
        self.mounter.attach(iso_path, mount_point)
        try:
            self._extract_mounted(mount_point)
        except Exception:
            self._detach(mount_point, after_failure=True)
            raise
        self._detach(mount_point, after_failure=False)

    def _detach(self, mount_point: Path, *, after_failure: bool) -> None:
        logger.debug(f"Unmounting {mount_point}")
        try:
            self.mounter.detach(mount_point)
        except MountError as e:
            if not after_failure:
                raise
            logger.error(f"Failed to unmount {mount_point} after extraction error: {e.message}")

    def _extract_mounted(self, mount_point: Path) -> None:
        logger.debug("Extracting Kernel Options...")
        self._extract_kernel_options(mount_point)

        if not self.spec.boot_kernel and not self.spec.boot_initrd:
            found = find_boot_files(mount_point)
            # Assign once, after the scan
            if found.kernel is not None:
                self.spec.boot_kernel = str(found.kernel.relative_to(mount_point))
                self.spec.vmlinuz = found.kernel.name
            if found.initrd is not None:
                self.spec.boot_initrd = str(found.initrd.relative_to(mount_point))
                self.spec.initrd = found.initrd.name

        if not self.spec.boot_kernel or not self.spec.boot_initrd:
            raise BootArtifactError(
                "Can't extract Kernel and Ramdisk file",
                context={
                    "mount_point": str(mount_point),
                    "kernel": self.spec.boot_kernel,
                    "initrd": self.spec.boot_initrd,
                },
            )

        kernel_src = mount_point / self.spec.boot_kernel
        initrd_src = mount_point / self.spec.boot_initrd
        self.spec.vmlinuz = self.spec.vmlinuz or kernel_src.name
        self.spec.initrd = self.spec.initrd or initrd_src.name

        self._copy(kernel_src, self.state_dir / self.spec.vmlinuz)
        self._copy(initrd_src, self.state_dir / self.spec.initrd)

    def _extract_kernel_options(self, mount_point: Path) -> None:
        if not self.spec.cmdline:
            config = find_isolinux_config(mount_point)
            try:
                options = read_kernel_options(config) if config is not None else ""
            except OSError as e:
                raise BootArtifactError(f"reading {config}: {e}", context={"config": str(config)}) from e
            if not options:
                raise BootArtifactError(
                    f"Not able to parse {constants.ISOLINUX_CONFIG_NAME}",
                    context={"mount_point": str(mount_point), "config": str(config) if config else None},
                )
            self.spec.cmdline = options
        logger.debug(f"Extracted Options {self.spec.cmdline!r}")

    @staticmethod
    def _copy(src: Path, dest: Path) -> None:
        logger.debug(f"Extracting {src} into {dest}")
        try:
            shutil.copyfile(src, dest)
        except OSError as e:
            raise BootArtifactError(
                f"copying {src} to {dest}: {e}",
                context={"src": str(src), "dest": str(dest)},
            ) from e
