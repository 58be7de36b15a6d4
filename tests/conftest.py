"""Shared pytest fixtures for hyperkit-machine tests."""

from pathlib import Path

import pytest

from hyperkit_machine.settings import Settings
from tests.fakes import FakeProcessTable


@pytest.fixture
def state_dir(tmp_path: Path) -> Path:
    """Empty machine state directory <store>/machines/default."""
    path = tmp_path / "store" / "machines" / "default"
    path.mkdir(parents=True)
    return path


@pytest.fixture
def sleeps() -> list[float]:
    """Records requested sleeps instead of sleeping."""
    return []


@pytest.fixture
def fake_sleep(sleeps: list[float]):
    return sleeps.append


@pytest.fixture
def process_table() -> FakeProcessTable:
    return FakeProcessTable()


@pytest.fixture
def fast_settings(tmp_path: Path) -> Settings:
    """Settings with small budgets and every host path inside tmp_path."""
    return Settings(
        store_path=tmp_path / "store",
        dhcpd_leases_file=tmp_path / "dhcpd_leases",
        vmnet_plist=tmp_path / "com.apple.vmnet.plist",
        exports_file=tmp_path / "exports",
        ip_wait_attempts=3,
        guest_network_wait_attempts=4,
        ip_wait_delay_seconds=2.0,
        ssh_wait_attempts=3,
        ssh_wait_delay_seconds=1.0,
    )
