"""Tests for batch orchestration."""

import re

import click
import pytest

from routeros_upgrade.credentials import CredentialManager
from routeros_upgrade.exceptions import (
    InterruptedRun, RegistryFormatError, VersionNotFoundError
)
from routeros_upgrade.models import DeviceRecord, FailureKind, LatestFix
from routeros_upgrade.orchestrator import BatchOrchestrator
from routeros_upgrade.registry import RegistryStore


TIMESTAMP = r"\d{4}-\d{2}-\d{2} \d{2}:\d{2}:\d{2} [+-]\d{4}"


@pytest.fixture
def store(registry_file):
    return RegistryStore(registry_file)


@pytest.fixture
def orchestrator_factory(test_config, credential_manager, upgrade_manager_factory, package_repo):
    """Build an orchestrator over the test repository and mock fleet."""
    def factory(registry=None, simulate=False, manager=None):
        manager = manager or upgrade_manager_factory(registry=registry, simulate=simulate)
        return BatchOrchestrator(test_config, manager, credential_manager, registry=registry)
    return factory


class TestBatchRun:
    """Test processing a device list."""

    def test_one_success_one_ping_failure(self, orchestrator_factory, store, fleet, credential_manager):
        """Router2 is down: Router1 is upgraded and Router2 recorded as PingFail."""
        fleet.devices["10.0.0.2"].reachable = False
        orchestrator = orchestrator_factory(registry=store)

        result = orchestrator.run(store.filter("Router"), LatestFix(7, 18))

        router1 = store.get("Router1")
        router2 = store.get("Router2")
        assert re.match(rf"^SUCCESS: Updated to 7\.18\.2 {TIMESTAMP}$", router1.status)
        assert router1.version == "7.18.2"
        assert re.match(rf"^FAILED:PingFail {TIMESTAMP}$", router2.status)
        assert router2.version == "7.16.2"

        assert result.target_version == "7.18.2"
        assert result.succeeded == ["Router1"]
        assert result.failed == ["Router2"]
        assert result.summary_line() == "Summary: Failed upgrades for hosts: Router2"
        assert credential_manager.outstanding == set()

    def test_all_successful(self, orchestrator_factory, store):
        result = orchestrator_factory(registry=store).run(store.read_all(), LatestFix(7, 18))

        assert result.failed == []
        assert result.summary_line() == "Summary: All updates were successful."

    def test_failure_does_not_stop_batch(self, orchestrator_factory, store, fleet):
        fleet.devices["10.0.0.1"].export_output = ""

        result = orchestrator_factory(registry=store).run(store.read_all(), LatestFix(7, 18))

        assert [a.failure for a in result.attempts] == [FailureKind.BACKUP_FAILED, None]
        assert fleet.devices["10.0.0.2"].version == "7.18.2"

    def test_devices_processed_in_order(self, orchestrator_factory, store, fleet):
        records = list(reversed(store.read_all()))

        result = orchestrator_factory(registry=store).run(records, LatestFix(7, 18))

        assert [a.identity for a in result.attempts] == ["Router2", "Router1"]
        assert [c["host"] for c in fleet.connect_calls][:1] == ["10.0.0.2"]

    def test_duplicate_identities_processed_once(self, orchestrator_factory, fleet):
        record = DeviceRecord.for_host("10.0.0.1")

        result = orchestrator_factory().run([record, record], LatestFix(7, 18))

        assert len(result.attempts) == 1
        assert fleet.devices["10.0.0.1"].reboots == 1

    def test_direct_mode_without_registry(self, orchestrator_factory, registry_file):
        before = registry_file.read_bytes()

        result = orchestrator_factory().run([DeviceRecord.for_host("10.0.0.1")], LatestFix(7, 18))

        assert result.succeeded == ["10.0.0.1"]
        assert registry_file.read_bytes() == before

    def test_simulated_batch(self, orchestrator_factory, store, registry_file):
        before = registry_file.read_bytes()

        result = orchestrator_factory(registry=store, simulate=True).run(store.read_all(), LatestFix(7, 18))

        assert result.simulated
        assert result.failed == []
        assert registry_file.read_bytes() == before

    def test_one_credential_file_per_device(self, orchestrator_factory, store, credential_manager, monkeypatch):
        scopes = []
        original = credential_manager.session

        def counting_session():
            scopes.append(1)
            return original()

        monkeypatch.setattr(credential_manager, "session", counting_session)
        orchestrator_factory(registry=store).run(store.read_all(), LatestFix(7, 18))

        assert len(scopes) == 2


class TestUnexpectedErrors:
    """Test errors outside the per-device failure kinds."""

    def test_unexpected_exception_recorded(self, orchestrator_factory, store, upgrade_manager_factory, monkeypatch):
        manager = upgrade_manager_factory(registry=store)
        original = manager.upgrade_device

        def flaky(record, release, handle):
            if record.identity == "Router1":
                raise RuntimeError("parser exploded")
            return original(record, release, handle)

        monkeypatch.setattr(manager, "upgrade_device", flaky)
        result = orchestrator_factory(registry=store, manager=manager).run(store.read_all(), LatestFix(7, 18))

        assert result.attempts[0].failure == FailureKind.UNKNOWN
        assert result.attempts[1].succeeded
        assert store.get("Router1").status.startswith("FAILED:UnknownError ")

    def test_structural_error_aborts(self, orchestrator_factory, store, upgrade_manager_factory, monkeypatch):
        manager = upgrade_manager_factory(registry=store)

        def broken(record, release, handle):
            raise RegistryFormatError("mikrotik.csv", "file is empty")

        monkeypatch.setattr(manager, "upgrade_device", broken)
        with pytest.raises(RegistryFormatError):
            orchestrator_factory(registry=store, manager=manager).run(store.read_all(), LatestFix(7, 18))

    def test_interrupt_propagates_and_cleans_up(
        self, orchestrator_factory, store, upgrade_manager_factory, credential_manager, monkeypatch
    ):
        manager = upgrade_manager_factory(registry=store)
        seen = []

        def interrupted(record, release, handle):
            seen.append(handle.path)
            raise InterruptedRun(15)

        monkeypatch.setattr(manager, "upgrade_device", interrupted)
        with pytest.raises(InterruptedRun):
            orchestrator_factory(registry=store, manager=manager).run(store.read_all(), LatestFix(7, 18))

        assert len(seen) == 1
        assert not seen[0].exists()
        assert store.get("Router1").status == ""

    def test_prompt_abort_leaves_registry_untouched(self, test_config, upgrade_manager_factory, store, registry_file, package_repo, tmp_path):
        def aborted():
            raise click.Abort()

        before = registry_file.read_bytes()
        manager = upgrade_manager_factory(registry=store)
        orchestrator = BatchOrchestrator(
            test_config, manager, CredentialManager(prompt=aborted, temp_dir=tmp_path), registry=store
        )

        with pytest.raises(click.Abort):
            orchestrator.run(store.read_all(), LatestFix(7, 18))

        assert registry_file.read_bytes() == before


class TestResolveRelease:
    """Test release resolution from configuration."""

    def test_resolves_from_image_dir(self, orchestrator_factory):
        release = orchestrator_factory().resolve_release(LatestFix(7, 18))
        assert release.version == "7.18.2"

    def test_missing_version_aborts_before_devices(self, orchestrator_factory, fleet):
        with pytest.raises(VersionNotFoundError):
            orchestrator_factory().run([DeviceRecord.for_host("10.0.0.1")], LatestFix(7, 99))
        assert fleet.devices["10.0.0.1"].probes == 0

    def test_configured_architecture(self, orchestrator_factory, test_config, package_repo):
        (package_repo / "7.18" / "routeros-7.18.2-mipsbe.npk").write_bytes(b"NPK")
        test_config.set("repository.architecture", "mipsbe", save=False)

        release = orchestrator_factory().resolve_release(LatestFix(7, 18))

        assert release.architecture == "mipsbe"
        assert release.addons == []
