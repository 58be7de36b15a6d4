"""Tests for kernel/initrd extraction from a mounted boot image.

The image is a plain directory tree copied into the mount point by
FakeMounter, so no hdiutil is needed.
"""

from pathlib import Path
from unittest.mock import patch

import pytest

from hyperkit_machine.boot_artifacts import (
    BootArtifactExtractor,
    HdiutilMounter,
    find_boot_files,
    read_kernel_options,
)
from hyperkit_machine.exceptions import BootArtifactError, MountError
from hyperkit_machine.models import MachineSpec
from tests.fakes import FakeMounter, write_image_tree

CMDLINE = "loglevel=3 user=docker console=ttyS0 noembed nomodeset norestore base"


@pytest.fixture
def image_tree(tmp_path: Path) -> Path:
    return write_image_tree(tmp_path / "image")


def extract(spec: MachineSpec, state_dir: Path, mounter: FakeMounter) -> None:
    BootArtifactExtractor(spec, state_dir, mounter).extract(state_dir / "boot2docker.iso")


# ============================================================================
# Pure helpers
# ============================================================================


class TestFindBootFiles:
    def test_finds_first_kernel_and_initrd(self, image_tree: Path) -> None:
        found = find_boot_files(image_tree)
        assert found.kernel == image_tree / "boot" / "vmlinuz64"
        assert found.initrd == image_tree / "boot" / "initrd.img"

    @pytest.mark.parametrize("name", ["vmlinuz", "vmlinux", "bzImage", "vmlinuz64", "bzImage2"])
    def test_kernel_names(self, tmp_path: Path, name: str) -> None:
        (tmp_path / name).write_bytes(b"k")
        assert find_boot_files(tmp_path).kernel == tmp_path / name

    def test_nothing_found(self, tmp_path: Path) -> None:
        (tmp_path / "README").write_text("hi")
        found = find_boot_files(tmp_path)
        assert found.kernel is None
        assert found.initrd is None

    def test_scan_does_not_touch_spec(self, image_tree: Path) -> None:
        """The scan is pure: it only returns paths."""
        spec = MachineSpec()
        find_boot_files(image_tree)
        assert spec.boot_kernel == ""
        assert spec.vmlinuz == ""


class TestReadKernelOptions:
    def test_two_space_indent(self, tmp_path: Path) -> None:
        cfg = tmp_path / "isolinux.cfg"
        cfg.write_text(f"label b2d\n  append {CMDLINE}\n")
        assert read_kernel_options(cfg) == CMDLINE

    def test_tab_indent(self, tmp_path: Path) -> None:
        cfg = tmp_path / "isolinux.cfg"
        cfg.write_text("label b2d\n\tappend quiet base\n")
        assert read_kernel_options(cfg) == "quiet base"

    def test_first_append_wins(self, tmp_path: Path) -> None:
        cfg = tmp_path / "isolinux.cfg"
        cfg.write_text("  append first\n  append second\n")
        assert read_kernel_options(cfg) == "first"

    def test_no_append(self, tmp_path: Path) -> None:
        cfg = tmp_path / "isolinux.cfg"
        cfg.write_text("default b2d\nappend unindented\n")
        assert read_kernel_options(cfg) == ""


# ============================================================================
# Extraction pipeline
# ============================================================================


class TestBootArtifactExtractor:
    def test_full_extraction(self, state_dir: Path, image_tree: Path) -> None:
        spec = MachineSpec()
        mounter = FakeMounter(image_tree)
        extract(spec, state_dir, mounter)

        assert spec.cmdline == CMDLINE
        assert spec.vmlinuz == "vmlinuz64"
        assert spec.initrd == "initrd.img"
        assert spec.boot_kernel == str(Path("boot") / "vmlinuz64")
        assert spec.boot_initrd == str(Path("boot") / "initrd.img")
        assert (state_dir / "vmlinuz64").read_bytes() == b"kernel"
        assert (state_dir / "initrd.img").read_bytes() == b"initrd"
        assert mounter.attached == [state_dir / "b2d-image"]
        assert not mounter.mounted

    def test_preset_cmdline_is_kept(self, state_dir: Path, tmp_path: Path) -> None:
        tree = write_image_tree(tmp_path / "image", isolinux="no append here\n")
        spec = MachineSpec(cmdline="console=ttyS0")
        extract(spec, state_dir, FakeMounter(tree))
        assert spec.cmdline == "console=ttyS0"

    def test_unparseable_isolinux_fails_and_unmounts(self, state_dir: Path, tmp_path: Path) -> None:
        tree = write_image_tree(tmp_path / "image", isolinux="default b2d\n")
        mounter = FakeMounter(tree)
        with pytest.raises(BootArtifactError, match="isolinux.cfg"):
            extract(MachineSpec(), state_dir, mounter)
        assert not mounter.mounted

    def test_missing_kernel_fails_and_unmounts(self, state_dir: Path, image_tree: Path) -> None:
        """Forced discovery failure still detaches the image."""
        (image_tree / "boot" / "vmlinuz64").unlink()
        mounter = FakeMounter(image_tree)
        spec = MachineSpec()
        with pytest.raises(BootArtifactError, match="Can't extract Kernel and Ramdisk"):
            extract(spec, state_dir, mounter)
        assert mounter.detached == [state_dir / "b2d-image"]
        assert not mounter.mounted
        assert not (state_dir / "initrd.img").exists()

    def test_missing_initrd_fails(self, state_dir: Path, image_tree: Path) -> None:
        (image_tree / "boot" / "initrd.img").unlink()
        mounter = FakeMounter(image_tree)
        with pytest.raises(BootArtifactError):
            extract(MachineSpec(), state_dir, mounter)
        assert not mounter.mounted

    def test_preconfigured_paths_skip_scan(self, state_dir: Path, image_tree: Path) -> None:
        (image_tree / "custom").mkdir()
        (image_tree / "custom" / "kern").write_bytes(b"custom kernel")
        (image_tree / "custom" / "rd").write_bytes(b"custom rd")
        spec = MachineSpec(boot_kernel="custom/kern", boot_initrd="custom/rd")
        extract(spec, state_dir, FakeMounter(image_tree))
        assert spec.vmlinuz == "kern"
        assert spec.initrd == "rd"
        assert (state_dir / "kern").read_bytes() == b"custom kernel"

    def test_rerun_overwrites_artifacts(self, state_dir: Path, image_tree: Path) -> None:
        spec = MachineSpec()
        extract(spec, state_dir, FakeMounter(image_tree))
        (image_tree / "boot" / "vmlinuz64").write_bytes(b"kernel v2")
        extract(spec, state_dir, FakeMounter(image_tree))
        assert (state_dir / "vmlinuz64").read_bytes() == b"kernel v2"

    def test_detach_failure_after_success_is_raised(self, state_dir: Path, image_tree: Path) -> None:
        with pytest.raises(MountError, match="resource busy"):
            extract(MachineSpec(), state_dir, FakeMounter(image_tree, detach_fails=True))

    def test_detach_failure_does_not_mask_primary_error(self, state_dir: Path, image_tree: Path) -> None:
        (image_tree / "boot" / "vmlinuz64").unlink()
        mounter = FakeMounter(image_tree, detach_fails=True)
        with pytest.raises(BootArtifactError):
            extract(MachineSpec(), state_dir, mounter)
        assert len(mounter.detached) == 1


class TestHdiutilMounter:
    def test_attach_is_read_only(self, tmp_path: Path) -> None:
        with patch("hyperkit_machine.boot_artifacts.subprocess.run") as run:
            run.return_value.returncode = 0
            HdiutilMounter(Path("/usr/bin/hdiutil")).attach(tmp_path / "b.iso", tmp_path / "mnt")
        cmd = run.call_args.args[0]
        assert cmd == [
            "/usr/bin/hdiutil",
            "attach",
            str(tmp_path / "b.iso"),
            "-mountpoint",
            str(tmp_path / "mnt"),
            "-readonly",
            "-nobrowse",
        ]

    def test_failure_carries_stderr(self, tmp_path: Path) -> None:
        with patch("hyperkit_machine.boot_artifacts.subprocess.run") as run:
            run.return_value.returncode = 1
            run.return_value.stderr = "hdiutil: detach failed - No such file or directory\n"
            with pytest.raises(MountError) as exc_info:
                HdiutilMounter().detach(tmp_path / "mnt")
        assert "No such file" in exc_info.value.stderr
