"""Pytest configuration and fixtures for RouterOS upgrade tests."""

import pytest
from pathlib import Path

import yaml

# Add src and tests to path for imports
import sys
_project_root = Path(__file__).parent.parent
sys.path.insert(0, str(_project_root / "src"))
sys.path.insert(0, str(_project_root))

from tests.helpers import MockFleet, REGISTRY_HEADER, registry_row


# =============================================================================
# Configuration Fixtures
# =============================================================================

@pytest.fixture
def test_work_dir(tmp_path) -> Path:
    """
    Provides a fresh temporary work directory for each test.

    Creates the standard directory structure used by the application.
    """
    work_dir = tmp_path / "routeros-upgrade"

    dirs = [
        "config",
        "os",
        "backups",
        "logs/structured",
        "logs/text",
    ]

    for d in dirs:
        (work_dir / d).mkdir(parents=True, exist_ok=True)

    return work_dir


@pytest.fixture
def test_config(test_work_dir) -> "Config":
    """
    Provides a test configuration pointing to temp directories.

    Reboot waits are shortened so state machine tests do not sleep.
    """
    from routeros_upgrade.config import Config

    config_data = {
        "ssh": {
            "port": 22,
            "timeout": 5,
            "cli_suffix": "+tce200w"
        },
        "probe": {
            "attempts": 2,
            "timeout": 1
        },
        "reboot": {
            "settle_delay": 0,
            "poll_interval": 1,
            "poll_attempts": 3,
            "timeout": 600
        },
        "logging": {
            "level": "DEBUG"
        }
    }

    config_file = test_work_dir / "config" / "config.yaml"
    with open(config_file, 'w') as f:
        yaml.safe_dump(config_data, f)

    return Config(config_file=str(config_file), work_dir=str(test_work_dir))


# =============================================================================
# Repository and Registry Fixtures
# =============================================================================

@pytest.fixture
def package_repo(test_work_dir) -> Path:
    """
    Provides a package repository with a 7.18 series.

    7.18/ holds routeros 7.18.0 and 7.18.2 plus a wireless addon for 7.18.2,
    all for arm64.
    """
    repo = test_work_dir / "os"
    series = repo / "7.18"
    series.mkdir(parents=True, exist_ok=True)

    for name in (
        "routeros-7.18.0-arm64.npk",
        "routeros-7.18.2-arm64.npk",
        "wireless-7.18.2-arm64.npk",
        "wireless-7.18.0-arm64.npk",
    ):
        (series / name).write_bytes(b"NPK\x00" + name.encode())

    return repo


@pytest.fixture
def registry_file(tmp_path) -> Path:
    """Provides a registry with Router1 and Router2 on 7.16.2 and empty status."""
    path = tmp_path / "mikrotik.csv"
    path.write_text(
        REGISTRY_HEADER
        + registry_row("Router1", "10.0.0.1", mac="AA:BB:CC:DD:EE:01")
        + registry_row("Router2", "10.0.0.2", mac="AA:BB:CC:DD:EE:02"),
        newline=""
    )
    return path


# =============================================================================
# Device Fixtures
# =============================================================================

@pytest.fixture
def fleet() -> MockFleet:
    """
    Provides a MockFleet with Router1 (10.0.0.1) and Router2 (10.0.0.2).

    Usage:
        def test_something(fleet):
            fleet.devices["10.0.0.2"].reachable = False
    """
    mock = MockFleet()
    mock.add_device("10.0.0.1", identity="Router1", version="7.16.2")
    mock.add_device("10.0.0.2", identity="Router2", version="7.16.2")
    return mock


@pytest.fixture
def credential_manager(tmp_path) -> "CredentialManager":
    """Provides a CredentialManager that never prompts."""
    from routeros_upgrade.credentials import CredentialManager, Credentials

    cred_dir = tmp_path / "creds"
    cred_dir.mkdir()
    return CredentialManager(
        prompt=lambda: Credentials(username="admin", password="s3cret"),
        cli_suffix="+tce200w",
        temp_dir=cred_dir
    )


@pytest.fixture
def sleeps() -> list:
    """Collects requested sleep durations instead of sleeping."""
    return []


@pytest.fixture
def upgrade_manager_factory(test_config, fleet, sleeps):
    """
    Provides a factory for UpgradeManager wired to the mock fleet.

    Usage:
        manager = upgrade_manager_factory(registry=store, simulate=False)
    """
    from routeros_upgrade.upgrade_manager import UpgradeManager

    def factory(registry=None, simulate=False):
        return UpgradeManager(
            test_config,
            registry=registry,
            simulate=simulate,
            session_factory=fleet.connect,
            prober=fleet.probe,
            sleep=sleeps.append,
            clock=lambda: 0.0
        )

    return factory


@pytest.fixture(autouse=True)
def reset_logging():
    """Drop handlers attached by setup_logging() so they do not outlive a test."""
    import logging

    yield
    logger = logging.getLogger("routeros_upgrade")
    for handler in list(logger.handlers):
        handler.close()
    logger.handlers.clear()
    logger.setLevel(logging.NOTSET)


# =============================================================================
# Markers
# =============================================================================

def pytest_configure(config):
    """Register custom markers."""
    config.addinivalue_line(
        "markers", "slow: marks tests as slow (deselect with '-m \"not slow\"')"
    )
    config.addinivalue_line(
        "markers", "integration: marks tests as integration tests"
    )
