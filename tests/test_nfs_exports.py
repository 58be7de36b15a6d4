"""Tests for the exports-file registry (block editing and nfsd invocation)."""

import subprocess
from pathlib import Path
from unittest.mock import patch

import pytest

from hyperkit_machine.exceptions import ExportConflictError, ExportError
from hyperkit_machine.nfs_exports import NfsExports, contains_entry, export_entry, remove_entry

ID = "hyperkit-machine default-/Users/me/src"
EXPORT = "/Users/me/src 192.168.64.2 -alldirs -mapall=me"


def completed(returncode: int = 0, stderr: str = "") -> subprocess.CompletedProcess[str]:
    return subprocess.CompletedProcess(args=[], returncode=returncode, stdout="", stderr=stderr)


@pytest.fixture
def exports_file(tmp_path: Path) -> Path:
    path = tmp_path / "exports"
    path.write_text("/opt/shared -ro\n")
    return path


@pytest.fixture
def run():
    with patch("hyperkit_machine.nfs_exports.subprocess.run", return_value=completed()) as mock_run:
        yield mock_run


class TestBlockEditing:
    def test_export_entry(self) -> None:
        assert export_entry(ID, EXPORT) == f"# BEGIN - {ID}\n{EXPORT}\n# END - {ID}\n"

    def test_remove_entry_keeps_foreign_lines(self) -> None:
        text = "/opt/shared -ro\n" + export_entry(ID, EXPORT) + "/srv -ro\n"
        assert remove_entry(text, ID) == "/opt/shared -ro\n/srv -ro\n"

    def test_remove_entry_only_matching_identifier(self) -> None:
        other = "hyperkit-machine other-/Users/me/src"
        text = export_entry(ID, EXPORT) + export_entry(other, EXPORT)
        assert remove_entry(text, ID) == export_entry(other, EXPORT)

    def test_contains_entry(self) -> None:
        assert contains_entry(export_entry(ID, EXPORT), ID)
        assert not contains_entry(export_entry(ID, EXPORT), "hyperkit-machine default-/Users")


class TestNfsExports:
    def test_add_appends_block_after_validation(self, exports_file: Path, run) -> None:
        registry = NfsExports(exports_file, Path("/sbin/nfsd"))
        registry.add(ID, EXPORT)

        assert exports_file.read_text() == "/opt/shared -ro\n" + export_entry(ID, EXPORT)
        cmd = run.call_args.args[0]
        assert cmd[0] == "/sbin/nfsd"
        assert cmd[1] == "-F"
        assert cmd[3] == "checkexports"
        assert not Path(cmd[2]).exists()

    def test_add_replaces_existing_block(self, exports_file: Path, run) -> None:
        registry = NfsExports(exports_file)
        registry.add(ID, EXPORT)
        registry.add(ID, "/Users/me/src 192.168.64.9 -alldirs -mapall=me")
        text = exports_file.read_text()
        assert text.count(f"# BEGIN - {ID}") == 1
        assert "192.168.64.9" in text
        assert "192.168.64.2" not in text

    def test_add_to_missing_file(self, tmp_path: Path, run) -> None:
        path = tmp_path / "exports"
        NfsExports(path).add(ID, EXPORT)
        assert path.read_text() == export_entry(ID, EXPORT)

    def test_conflict_is_distinguished_and_file_untouched(self, exports_file: Path, run) -> None:
        run.return_value = completed(1, "exports:2: /Users/me/src conflicts with existing export /Users/me\n")
        with pytest.raises(ExportConflictError) as exc_info:
            NfsExports(exports_file).add(ID, EXPORT)
        assert exc_info.value.identifier == ID
        assert exports_file.read_text() == "/opt/shared -ro\n"

    def test_other_validation_failure(self, exports_file: Path, run) -> None:
        run.return_value = completed(1, "exports:2: bad option\n")
        with pytest.raises(ExportError) as exc_info:
            NfsExports(exports_file).add(ID, EXPORT)
        assert not isinstance(exc_info.value, ExportConflictError)

    def test_remove(self, exports_file: Path, run) -> None:
        registry = NfsExports(exports_file)
        registry.add(ID, EXPORT)
        registry.remove(ID)
        assert exports_file.read_text() == "/opt/shared -ro\n"

    def test_remove_absent_is_noop(self, exports_file: Path, run) -> None:
        NfsExports(exports_file).remove(ID)
        assert exports_file.read_text() == "/opt/shared -ro\n"
        run.assert_not_called()

    def test_write_failure_keeps_previous_content(self, exports_file: Path, run) -> None:
        registry = NfsExports(exports_file)
        with patch("hyperkit_machine.nfs_exports.os.fsync", side_effect=OSError(28, "No space left on device")):
            with pytest.raises(ExportError, match="No space left"):
                registry.add(ID, EXPORT)
        assert exports_file.read_text() == "/opt/shared -ro\n"
        assert [p.name for p in exports_file.parent.iterdir()] == ["exports"]

    def test_write_keeps_file_mode(self, exports_file: Path, run) -> None:
        exports_file.chmod(0o644)
        NfsExports(exports_file).add(ID, EXPORT)
        assert exports_file.stat().st_mode & 0o777 == 0o644

    def test_reload_uses_sudo_when_not_root(self, exports_file: Path, run) -> None:
        with patch("hyperkit_machine.nfs_exports.os.geteuid", return_value=501):
            NfsExports(exports_file, Path("/sbin/nfsd")).reload_daemon()
        assert run.call_args.args[0] == ["sudo", "/sbin/nfsd", "update"]

    def test_reload_as_root(self, exports_file: Path, run) -> None:
        with patch("hyperkit_machine.nfs_exports.os.geteuid", return_value=0):
            NfsExports(exports_file, Path("/sbin/nfsd")).reload_daemon()
        assert run.call_args.args[0] == ["/sbin/nfsd", "update"]

    def test_reload_failure(self, exports_file: Path, run) -> None:
        run.return_value = completed(1, "nfsd: not running\n")
        with patch("hyperkit_machine.nfs_exports.os.geteuid", return_value=0):
            with pytest.raises(ExportError, match="not running"):
                NfsExports(exports_file).reload_daemon()

    def test_missing_nfsd_binary(self, exports_file: Path) -> None:
        with patch("hyperkit_machine.nfs_exports.subprocess.run", side_effect=FileNotFoundError("nfsd")):
            with pytest.raises(ExportError):
                NfsExports(exports_file).add(ID, EXPORT)
