"""Disk image and state-directory helpers shared by the driver operations.

make_disk_image() prepares everything a first boot needs:

    <state_dir>/boot2docker.iso   copied from a local path or downloaded
    <state_dir>/id_rsa(.pub)      SSH identity for the guest user
    <state_dir>/disk.img          sparse raw disk, prefixed with a tar that
                                  asks boot2docker to format it and carries
                                  the public key

An existing disk is never recreated, so a machine keeps its data.
"""

from __future__ import annotations

import io
import os
import shutil
import tarfile
import tempfile
from pathlib import Path
from typing import Protocol
from urllib.error import HTTPError, URLError
from urllib.parse import urlparse
from urllib.request import Request, urlopen

import paramiko

from hyperkit_machine import constants
from hyperkit_machine._logging import get_logger
from hyperkit_machine.exceptions import BootArtifactError, PermanentError

logger = get_logger(__name__)

FORMAT_ME_MAGIC = "boot2docker, please format-me"
_DOWNLOAD_CHUNK_SIZE = 1024 * 256
_DOWNLOAD_TIMEOUT_SECONDS = 60


class Restartable(Protocol):
    def stop(self) -> None: ...

    def start(self) -> None: ...


def fetch_iso(source: str, destination: Path) -> None:
    """Copy ``source`` (local path, file:// or http(s):// URL) to ``destination``.

    Raises:
        BootArtifactError: The image could not be read or downloaded.
    """
    parsed = urlparse(source)
    if parsed.scheme in ("http", "https"):
        _download(source, destination)
        return

    local = Path(parsed.path if parsed.scheme == "file" else source).expanduser()
    logger.info(f"Copying {local} to {destination}")
    try:
        shutil.copyfile(local, destination)
    except OSError as e:
        raise BootArtifactError(f"copying boot image {local}: {e}", context={"source": source}) from e


def _download(url: str, destination: Path) -> None:
    logger.info(f"Downloading {url} to {destination}")
    req = Request(url, headers={"User-Agent": "hyperkit-machine"})
    try:
        response = urlopen(req, timeout=_DOWNLOAD_TIMEOUT_SECONDS)  # noqa: S310
    except HTTPError as e:
        raise BootArtifactError(f"HTTP error downloading {url}: {e.code} {e.reason}", context={"url": url}) from e
    except URLError as e:
        raise BootArtifactError(f"Failed to download {url}: {e.reason}", context={"url": url}) from e

    with response, tempfile.NamedTemporaryFile(delete=False, dir=destination.parent) as tmp:
        tmp_path = Path(tmp.name)
        try:
            while chunk := response.read(_DOWNLOAD_CHUNK_SIZE):
                tmp.write(chunk)
        except OSError as e:
            tmp.close()
            tmp_path.unlink(missing_ok=True)
            raise BootArtifactError(f"Failed to download {url}: {e}", context={"url": url}) from e
    tmp_path.replace(destination)


def generate_ssh_key(key_path: Path, bits: int = 2048) -> str:
    """Write a new RSA identity to ``key_path`` and ``key_path``.pub.

    Returns:
        The public key in authorized_keys format.
    """
    key = paramiko.RSAKey.generate(bits)
    key.write_private_key_file(str(key_path))
    public = f"{key.get_name()} {key.get_base64()}\n"
    key_path.with_name(key_path.name + ".pub").write_text(public)
    return public


def format_me_tar(public_key: str) -> bytes:
    """Tar that boot2docker recognizes on a blank disk: format it and install the key."""
    buf = io.BytesIO()
    with tarfile.open(fileobj=buf, mode="w", format=tarfile.GNU_FORMAT) as tar:

        def add(name: str, data: bytes, mode: int = 0o644) -> None:
            info = tarfile.TarInfo(name)
            info.size = len(data)
            info.mode = mode
            tar.addfile(info, io.BytesIO(data))

        add(FORMAT_ME_MAGIC, FORMAT_ME_MAGIC.encode())
        ssh_dir = tarfile.TarInfo(".ssh")
        ssh_dir.type = tarfile.DIRTYPE
        ssh_dir.mode = 0o700
        tar.addfile(ssh_dir)
        add(".ssh/key.pub", public_key.encode())
        add(".ssh/authorized_keys", public_key.encode())
    return buf.getvalue()


def create_raw_disk(disk_path: Path, size_mb: int, public_key: str) -> None:
    """Create a sparse raw disk of ``size_mb`` (decimal) megabytes.

    Raises:
        FileExistsError: ``disk_path`` already exists.
    """
    with disk_path.open("xb") as f:
        f.write(format_me_tar(public_key))
        f.truncate(size_mb * 1_000_000)


def fix_permissions(path: Path) -> None:
    """Hand ``path`` back to the sudo caller when running elevated."""
    uid = os.environ.get("SUDO_UID")
    gid = os.environ.get("SUDO_GID")
    if os.geteuid() != 0 or not uid or not gid:
        return
    for root, dirs, files in os.walk(path):
        os.chown(root, int(uid), int(gid))
        for name in dirs + files:
            os.chown(os.path.join(root, name), int(uid), int(gid), follow_symlinks=False)


class CommonHelpers:
    """Per-machine state directory layout and first-boot preparation."""

    def __init__(self, machine_name: str, store_path: Path) -> None:
        self.machine_name = machine_name
        self.store_path = Path(store_path).expanduser()

    @property
    def state_dir(self) -> Path:
        return self.store_path / "machines" / self.machine_name

    def resolve_store_path(self, name: str) -> Path:
        return self.state_dir / name

    def get_disk_path(self) -> Path:
        return self.resolve_store_path(constants.DISK_FILE_NAME)

    def get_ssh_key_path(self) -> Path:
        return self.resolve_store_path(constants.SSH_KEY_FILE_NAME)

    def make_disk_image(self, boot2docker_url: str, disk_size_mb: int) -> None:
        """Fetch the boot image and create the data disk if it does not exist yet.

        Raises:
            BootArtifactError: No boot image source, or the image could not be fetched.
            PermanentError: Key or disk creation failed.
        """
        if not boot2docker_url:
            raise BootArtifactError("no boot image configured (boot2docker_url is empty)")

        self.state_dir.mkdir(parents=True, exist_ok=True)
        fetch_iso(boot2docker_url, self.resolve_store_path(constants.ISO_FILENAME))

        disk_path = self.get_disk_path()
        if disk_path.exists():
            logger.debug(f"Reusing existing disk {disk_path}")
            return

        logger.info("Creating ssh key and raw disk image", extra={"disk": str(disk_path), "size_mb": disk_size_mb})
        try:
            public_key = generate_ssh_key(self.get_ssh_key_path())
            create_raw_disk(disk_path, disk_size_mb, public_key)
            fix_permissions(self.state_dir)
        except (OSError, paramiko.SSHException) as e:
            raise PermanentError(f"creating disk image {disk_path}: {e}", context={"disk": str(disk_path)}) from e

    @staticmethod
    def restart(machine: Restartable) -> None:
        machine.stop()
        machine.start()
