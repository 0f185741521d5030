"""Batch orchestration across many devices."""

from typing import Callable, List, Optional

import click

from routeros_upgrade.config import Config
from routeros_upgrade.credentials import CredentialManager
from routeros_upgrade.exceptions import (
    DeviceNotFoundError, InterruptedRun, RegistryFormatError, StructuralError
)
from routeros_upgrade.logging_config import get_logger, log_with_context
from routeros_upgrade.models import (
    BatchResult, DeviceRecord, FailureKind, ResolvedRelease, UpgradeAttempt, VersionSpec
)
from routeros_upgrade.registry import RegistryStore
from routeros_upgrade.upgrade_manager import UpgradeManager
from routeros_upgrade.version_resolver import resolve


class BatchOrchestrator:
    """
    Runs the upgrade state machine over a device list.

    Devices are processed strictly one after another. A device failure is
    recorded and the batch moves on; only structural errors end the run.
    """

    def __init__(
        self,
        config: Config,
        manager: UpgradeManager,
        credential_manager: CredentialManager,
        registry: Optional[RegistryStore] = None,
        resolver: Callable[..., ResolvedRelease] = resolve
    ):
        """
        Initialize batch orchestrator.

        Args:
            config: Configuration instance
            manager: Per-device state machine
            credential_manager: Provides one credential scope per device
            registry: Registry outcomes are written to (None for direct mode)
            resolver: Version resolver (spec, repository_root, architecture=, base_component=)
        """
        self.config = config
        self.manager = manager
        self.credentials = credential_manager
        self.registry = registry
        self.logger = get_logger("routeros_upgrade.orchestrator")
        self._resolver = resolver

    def resolve_release(self, spec: VersionSpec) -> ResolvedRelease:
        """
        Resolve the target release once for the whole batch.

        Raises:
            VersionNotFoundError: If the repository has no matching base package
            ArchitectureError: If the architecture cannot be determined
        """
        return self._resolver(
            spec,
            self.config.image_dir,
            architecture=self.config.architecture,
            base_component=self.config.base_component
        )

    def run(self, records: List[DeviceRecord], spec: VersionSpec) -> BatchResult:
        """
        Upgrade every device in order.

        Args:
            records: Devices to process (already filtered)
            spec: Requested version

        Returns:
            BatchResult with one attempt per unique identity

        Raises:
            StructuralError: Version resolution or a run-wide failure
            InterruptedRun: A termination signal arrived
        """
        return self.run_release(records, self.resolve_release(spec))

    def run_release(self, records: List[DeviceRecord], release: ResolvedRelease) -> BatchResult:
        """Upgrade every device in order to an already resolved release."""
        result = BatchResult(target_version=release.version, simulated=self.manager.simulate)

        unique: List[DeviceRecord] = []
        seen = set()
        for record in records:
            if record.identity in seen:
                self.logger.warning(f"Skipping duplicate identity {record.identity}")
                continue
            seen.add(record.identity)
            unique.append(record)

        mode = "Simulating" if self.manager.simulate else "Processing"
        self.logger.info(f"{mode} upgrades to {release.version} for {len(unique)} host(s)")

        for position, record in enumerate(unique, start=1):
            log_with_context(
                self.logger,
                "info",
                f"[{position}/{len(unique)}] Running upgrade on {record.host}",
                device=record.host,
                identity=record.identity
            )
            result.attempts.append(self._run_one(record, release))

        if result.failed:
            self.logger.error(result.summary_line())
        else:
            self.logger.info(result.summary_line())
        return result

    def _run_one(self, record: DeviceRecord, release: ResolvedRelease) -> UpgradeAttempt:
        try:
            with self.credentials.session() as handle:
                return self.manager.upgrade_device(record, release, handle)
        except (StructuralError, InterruptedRun, click.Abort, KeyboardInterrupt):
            raise
        except Exception as e:
            self.logger.error(f"Unexpected error upgrading {record.identity}: {e}", exc_info=True)
            attempt = UpgradeAttempt(
                identity=record.identity,
                target_version=release.version,
                previous_version=record.version,
                simulated=self.manager.simulate
            )
            attempt.fail(FailureKind.UNKNOWN, str(e))
            self._record_failure(attempt)
            return attempt

    def _record_failure(self, attempt: UpgradeAttempt) -> None:
        if self.registry is None or self.manager.simulate:
            return
        try:
            self.registry.set_status(attempt.identity, attempt.status_text())
        except (DeviceNotFoundError, RegistryFormatError, OSError) as e:
            self.logger.error(f"Could not record failure for {attempt.identity}: {e}")
