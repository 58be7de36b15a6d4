"""NFS export registry backed by the host exports file.

Each registered export lives in its own block so it can be removed again
by identifier without touching exports managed by anyone else:

    # BEGIN - hyperkit-machine default-/Users/me/src
    /Users/me/src 192.168.64.2 -alldirs -mapall=me
    # END - hyperkit-machine default-/Users/me/src

Candidate files are validated with ``nfsd -F <file> checkexports`` before
they replace the real exports file, so a conflicting export never lands.
"""

from __future__ import annotations

import os
import subprocess
import tempfile
from pathlib import Path

from hyperkit_machine import constants
from hyperkit_machine._logging import get_logger
from hyperkit_machine.exceptions import ExportConflictError, ExportError

logger = get_logger(__name__)


def export_entry(identifier: str, export: str) -> str:
    return f"# BEGIN - {identifier}\n{export}\n# END - {identifier}\n"


def remove_entry(exports: str, identifier: str) -> str:
    """Return ``exports`` without the block registered under ``identifier``."""
    begin = f"# BEGIN - {identifier}"
    end = f"# END - {identifier}"
    kept: list[str] = []
    inside = False
    for line in exports.splitlines(keepends=True):
        stripped = line.rstrip("\n")
        if stripped == begin:
            inside = True
            continue
        if inside:
            if stripped == end:
                inside = False
            continue
        kept.append(line)
    return "".join(kept)


def contains_entry(exports: str, identifier: str) -> bool:
    return f"# BEGIN - {identifier}" in exports.splitlines()


class NfsExports:
    """Add/remove identified export blocks and reload nfsd."""

    def __init__(
        self,
        exports_file: Path = Path(constants.EXPORTS_FILE),
        nfsd_bin: Path = Path("/sbin/nfsd"),
    ) -> None:
        self.exports_file = exports_file
        self.nfsd_bin = nfsd_bin

    def read(self) -> str:
        try:
            return self.exports_file.read_text()
        except FileNotFoundError:
            return ""
        except OSError as e:
            raise ExportError(f"reading {self.exports_file}: {e}") from e

    def add(self, identifier: str, export: str) -> str:
        """Register ``export`` under ``identifier``, replacing an older block of the same name.

        Returns:
            The new exports file content.

        Raises:
            ExportConflictError: nfsd reports a conflict with an existing export.
            ExportError: Validation or writing failed for another reason.
        """
        exports = remove_entry(self.read(), identifier)
        if exports and not exports.endswith("\n"):
            exports += "\n"
        new_exports = exports + export_entry(identifier, export)

        self._verify(new_exports, identifier)
        self._write(new_exports, identifier)
        logger.debug("Added NFS export", extra={"identifier": identifier, "export": export})
        return new_exports

    def remove(self, identifier: str) -> str:
        """Drop the block registered under ``identifier`` (no-op if absent).

        Raises:
            ExportError: The exports file could not be read or written.
        """
        exports = self.read()
        if not contains_entry(exports, identifier):
            logger.debug("NFS export not registered, nothing to remove", extra={"identifier": identifier})
            return exports
        new_exports = remove_entry(exports, identifier)
        self._write(new_exports, identifier)
        logger.debug("Removed NFS export", extra={"identifier": identifier})
        return new_exports

    def reload_daemon(self) -> None:
        """Make nfsd pick up the exports file.

        Raises:
            ExportError: ``nfsd update`` failed.
        """
        result = self._run([str(self.nfsd_bin), "update"], sudo=True)
        if result.returncode != 0:
            raise ExportError(
                f"reloading nfsd failed with exit code {result.returncode}: {result.stderr.strip()}",
                context={"returncode": result.returncode},
            )

    def _verify(self, exports: str, identifier: str) -> None:
        with tempfile.NamedTemporaryFile("w", prefix="exports", delete=False) as tmp:
            tmp.write(exports)
            tmp_path = Path(tmp.name)
        try:
            result = self._run([str(self.nfsd_bin), "-F", str(tmp_path), "checkexports"], sudo=False)
        finally:
            tmp_path.unlink(missing_ok=True)

        if result.returncode == 0:
            return
        stderr = result.stderr.strip()
        if constants.NFS_CONFLICT_MARKER in stderr:
            raise ExportConflictError(f"Error verifying exports: {stderr}", identifier=identifier)
        raise ExportError(
            f"Error verifying exports (exit code {result.returncode}): {stderr}",
            context={"returncode": result.returncode},
            identifier=identifier,
        )

    def _write(self, exports: str, identifier: str) -> None:
        """Replace the exports file atomically, keeping its permission bits."""
        try:
            mode = self.exports_file.stat().st_mode & 0o777
        except FileNotFoundError:
            mode = 0o644
        except OSError as e:
            raise ExportError(f"stat {self.exports_file}: {e}", identifier=identifier) from e

        tmp_path: Path | None = None
        try:
            with tempfile.NamedTemporaryFile(
                "w", dir=self.exports_file.parent, prefix=".exports", delete=False
            ) as tmp:
                tmp_path = Path(tmp.name)
                tmp.write(exports)
                tmp.flush()
                os.fsync(tmp.fileno())
            tmp_path.chmod(mode)
            tmp_path.replace(self.exports_file)
        except OSError as e:
            if tmp_path is not None:
                tmp_path.unlink(missing_ok=True)
            raise ExportError(f"writing {self.exports_file}: {e}", identifier=identifier) from e

    @staticmethod
    def _run(cmd: list[str], *, sudo: bool) -> subprocess.CompletedProcess[str]:
        if sudo and os.geteuid() != 0:
            cmd = ["sudo", *cmd]
        logger.debug("Running", extra={"cmd": cmd})
        try:
            return subprocess.run(cmd, capture_output=True, text=True, check=False)
        except OSError as e:
            raise ExportError(f"running {cmd[0]}: {e}", context={"cmd": cmd}) from e
