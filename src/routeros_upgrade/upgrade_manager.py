"""Per-device upgrade state machine."""

import os
import re
import time
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Callable, Optional

from routeros_upgrade import constants
from routeros_upgrade.config import Config
from routeros_upgrade.credentials import CredentialHandle, Credentials
from routeros_upgrade.device_session import Command, RouterOSSession, SessionFactory, probe_host
from routeros_upgrade.exceptions import (
    AuthenticationFailed, BackupError, ConnectionRefused, SessionError, SessionTimeout,
    TransferError, TransportFailure, UpgradeFailedError
)
from routeros_upgrade.logging_config import get_logger, log_with_context
from routeros_upgrade.models import (
    AttemptState, DeviceRecord, FailureKind, ResolvedRelease, UpgradeAttempt, in_progress_status
)
from routeros_upgrade.registry import RegistryStore
from routeros_upgrade.utils.file_ops import atomic_write_text


class UpgradePhase(Enum):
    """Upgrade phase, used as logging context."""
    PROBE = "probe"
    CONNECT = "connect"
    BACKUP = "backup"
    TRANSFER = "transfer"
    APPLY = "apply"
    REBOOT = "reboot"
    VERIFY = "verify"


SESSION_FAILURES = (
    (AuthenticationFailed, FailureKind.AUTH_FAILED),
    (SessionTimeout, FailureKind.CONNECT_TIMEOUT),
    (ConnectionRefused, FailureKind.CONNECTION_REFUSED),
    (TransportFailure, FailureKind.TRANSPORT_FAILED),
)


def session_failure_kind(error: SessionError) -> FailureKind:
    """Map a connect failure to its failure kind."""
    for error_type, kind in SESSION_FAILURES:
        if isinstance(error, error_type):
            return kind
    return FailureKind.TRANSPORT_FAILED


def major_version(version: str) -> Optional[int]:
    match = re.match(r"^(\d+)\.", version or "")
    return int(match.group(1)) if match else None


class UpgradeManager:
    """Drives one device at a time through the upgrade states."""

    def __init__(
        self,
        config: Config,
        registry: Optional[RegistryStore] = None,
        simulate: bool = False,
        session_factory: SessionFactory = RouterOSSession.connect,
        prober: Callable[..., bool] = probe_host,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], float] = time.monotonic
    ):
        """
        Initialize upgrade manager.

        Args:
            config: Configuration instance
            registry: Registry to record outcomes in (None for direct mode)
            simulate: Test mode; nothing on the device or in the registry changes
            session_factory: Opens a device session (host, credentials, timeout=, port=)
            prober: Liveness check (host, attempts=, timeout=)
            sleep: Delay function
            clock: Monotonic clock used for the reboot window
        """
        self.config = config
        self.registry = registry
        self.simulate = simulate
        self.logger = get_logger("routeros_upgrade.manager")
        self._session_factory = session_factory
        self._prober = prober
        self._sleep = sleep
        self._clock = clock

    def _log(self, level: str, message: str, record: DeviceRecord, phase: Optional[UpgradePhase] = None) -> None:
        log_with_context(
            self.logger,
            level,
            message,
            device=record.host,
            identity=record.identity,
            phase=phase.value if phase else None
        )

    def _test_mode(self, message: str, record: DeviceRecord, phase: UpgradePhase) -> None:
        self._log("info", f"[TEST MODE] Would {message}", record, phase)

    def _probe(self, host: str) -> bool:
        return self._prober(
            host,
            attempts=self.config.probe_attempts,
            timeout=self.config.probe_timeout
        )

    def _connect(self, host: str, credentials: Credentials) -> RouterOSSession:
        return self._session_factory(
            host,
            credentials,
            timeout=self.config.ssh_timeout,
            port=self.config.ssh_port
        )

    def upgrade_device(
        self,
        record: DeviceRecord,
        release: ResolvedRelease,
        credentials: CredentialHandle
    ) -> UpgradeAttempt:
        """
        Upgrade a single device.

        Per-device failures are captured in the returned attempt and written
        to the registry; they are not raised.

        Args:
            record: Registry row (or a direct-mode record)
            release: Resolved target release
            credentials: Credential handle for this attempt

        Returns:
            Finished UpgradeAttempt (VERIFIED or FAILED)
        """
        attempt = UpgradeAttempt(
            identity=record.identity,
            target_version=release.version,
            previous_version=record.version,
            simulated=self.simulate
        )
        host = record.host
        self._log("info", f"Starting upgrade of {record.identity} ({host}) to {release.version}", record)

        # PENDING -> REACHABLE
        if not self._probe(host):
            attempt.fail(FailureKind.PING_FAIL, f"Host {host} is not reachable")
            self._log("warning", f"Host {host} is not reachable, skipping upgrade", record, UpgradePhase.PROBE)
            return self._finish(record, attempt)

        attempt.advance(AttemptState.REACHABLE)
        if self.registry is not None and not self.simulate:
            self.registry.set_status(record.identity, in_progress_status(release.version))

        creds = credentials.load()

        try:
            session = self._connect(host, creds)
        except SessionError as e:
            attempt.fail(session_failure_kind(e), str(e))
            self._log("error", str(e), record, UpgradePhase.CONNECT)
            return self._finish(record, attempt)

        with session:
            try:
                running = session.installed_version()
            except SessionError as e:
                attempt.fail(session_failure_kind(e), str(e))
                self._log("error", str(e), record, UpgradePhase.CONNECT)
                return self._finish(record, attempt)

            if running:
                attempt.previous_version = running
            self._log("info", f"{record.identity} is running {running or 'an unknown version'}", record, UpgradePhase.CONNECT)

            if running == release.version:
                attempt.already_current = True
                attempt.reported_version = running
                attempt.advance(AttemptState.VERIFIED)
                self._log("info", f"{record.identity} already at target version {running}", record)
                return self._finish(record, attempt)

            if not self._backup_step(session, record, attempt):
                return self._finish(record, attempt)
            if not self._transfer_step(session, record, release, attempt):
                return self._finish(record, attempt)
            if not self._apply_step(session, record, attempt):
                return self._finish(record, attempt)

        if self.simulate:
            self._test_mode(f"wait for {record.identity} to reboot and verify {release.version}", record, UpgradePhase.REBOOT)
            attempt.advance(AttemptState.REBOOTED)
            attempt.advance(AttemptState.VERIFIED)
            return self._finish(record, attempt)

        self._reboot_and_verify(record, release, creds, attempt)
        return self._finish(record, attempt)

    def _backup_step(self, session: RouterOSSession, record: DeviceRecord, attempt: UpgradeAttempt) -> bool:
        """REACHABLE -> BACKED_UP."""
        if self.simulate:
            self._test_mode(f"export configuration of {record.identity} to {self.config.backup_dir}", record, UpgradePhase.BACKUP)
            attempt.advance(AttemptState.BACKED_UP)
            return True

        try:
            backup_file = self.backup_configuration(session, record.identity, attempt.previous_version)
        except (BackupError, SessionError, OSError) as e:
            attempt.fail(FailureKind.BACKUP_FAILED, str(e))
            self._log("error", f"Backup failed for {record.identity}: {e}", record, UpgradePhase.BACKUP)
            return False

        self._log("info", f"Configuration exported to {backup_file}", record, UpgradePhase.BACKUP)
        attempt.advance(AttemptState.BACKED_UP)
        return True

    def backup_configuration(self, session: RouterOSSession, identity: str, version: str) -> Path:
        """
        Export the device configuration to the backup directory.

        Args:
            session: Open device session
            identity: Device identity (used in the file name)
            version: Running version (selects the export flags)

        Returns:
            Path of the backup file

        Raises:
            BackupError: If the export failed or the file is empty or unreadable
        """
        major = major_version(version)
        show_sensitive = major is None or major >= 7
        result = session.exec(Command.export(show_sensitive=show_sensitive))
        if not result.ok:
            raise BackupError(f"export on {session.host} failed: {result.output.strip() or result.error.strip()}")
        if not result.output.strip():
            raise BackupError(f"export on {session.host} returned no data")

        safe_identity = re.sub(r"[^A-Za-z0-9._-]", "_", identity)
        stamp = datetime.now().strftime(constants.BACKUP_TIMESTAMP_FORMAT)
        backup_file = self.config.backup_dir / f"{safe_identity}_{stamp}{constants.BACKUP_EXTENSION}"
        atomic_write_text(backup_file, result.output)

        if not backup_file.is_file() or backup_file.stat().st_size == 0:
            raise BackupError(f"backup file {backup_file} is empty")
        if not os.access(backup_file, os.R_OK):
            raise BackupError(f"backup file {backup_file} is not readable")
        with open(backup_file, "r") as f:
            if not f.read(1):
                raise BackupError(f"backup file {backup_file} is empty")

        return backup_file

    def _transfer_step(
        self,
        session: RouterOSSession,
        record: DeviceRecord,
        release: ResolvedRelease,
        attempt: UpgradeAttempt
    ) -> bool:
        """BACKED_UP -> TRANSFERRED."""
        for artifact in release.artifacts:
            if self.simulate:
                self._test_mode(f"upload {artifact.filename} to {record.identity}", record, UpgradePhase.TRANSFER)
                continue

            self._log("info", f"Uploading {artifact.filename} to {record.identity}", record, UpgradePhase.TRANSFER)
            try:
                session.transfer_to(artifact.path)
            except TransferError as e:
                attempt.fail(FailureKind.TRANSFER_FAILED, str(e), reason=e.reason)
                self._log("error", str(e), record, UpgradePhase.TRANSFER)
                return False

        attempt.advance(AttemptState.TRANSFERRED)
        return True

    def _apply_step(self, session: RouterOSSession, record: DeviceRecord, attempt: UpgradeAttempt) -> bool:
        """TRANSFERRED -> APPLIED."""
        if self.simulate:
            self._test_mode(f"reboot {record.identity} to install {attempt.target_version}", record, UpgradePhase.APPLY)
            attempt.advance(AttemptState.APPLIED)
            return True

        try:
            self.reboot(session, record.identity)
        except UpgradeFailedError as e:
            attempt.fail(FailureKind.APPLY_FAILED, str(e))
            self._log("error", str(e), record, UpgradePhase.APPLY)
            return False

        attempt.advance(AttemptState.APPLIED)
        return True

    def reboot(self, session: RouterOSSession, identity: str) -> None:
        """
        Reboot the device; uploaded packages are installed during boot.

        A connection dropped by the reboot counts as success.

        Raises:
            UpgradeFailedError: If the device rejected the command
        """
        self.logger.info(f"Rebooting {identity}")
        try:
            result = session.exec(Command.reboot(), confirm=True)
        except (SessionTimeout, TransportFailure) as e:
            self.logger.debug(f"Connection to {identity} closed during reboot: {e}")
            return

        # -1: channel closed before an exit status was sent
        if not result.ok and result.exit_status != -1:
            raise UpgradeFailedError(identity, UpgradePhase.APPLY.value, result.output.strip() or result.error.strip())

    def _reboot_and_verify(
        self,
        record: DeviceRecord,
        release: ResolvedRelease,
        creds: Credentials,
        attempt: UpgradeAttempt
    ) -> None:
        """APPLIED -> REBOOTED -> VERIFIED, with one extra reboot if needed."""
        reported = self.wait_for_version(record, creds)
        if reported is None:
            attempt.fail(FailureKind.VERIFY_TIMEOUT, f"{record.identity} did not come back after reboot")
            self._log("error", attempt.detail, record, UpgradePhase.REBOOT)
            return

        if reported == attempt.previous_version and reported != release.version:
            self._log(
                "warning",
                f"{record.identity} still reports {reported} after reboot, rebooting once more",
                record,
                UpgradePhase.REBOOT
            )
            try:
                with self._connect(record.host, creds) as session:
                    self.reboot(session, record.identity)
            except (SessionError, UpgradeFailedError) as e:
                attempt.fail(FailureKind.VERIFY_TIMEOUT, f"extra reboot of {record.identity} failed: {e}")
                self._log("error", attempt.detail, record, UpgradePhase.REBOOT)
                return

            reported = self.wait_for_version(record, creds)
            if reported is None or reported == attempt.previous_version:
                attempt.reported_version = reported or ""
                attempt.fail(
                    FailureKind.VERIFY_TIMEOUT,
                    f"{record.identity} still not on {release.version} after extra reboot"
                )
                self._log("error", attempt.detail, record, UpgradePhase.REBOOT)
                return

        attempt.reported_version = reported
        attempt.advance(AttemptState.REBOOTED)

        if reported != release.version:
            attempt.fail(
                FailureKind.VERSION_MISMATCH,
                f"{record.identity} reports {reported}, expected {release.version}"
            )
            self._log("error", attempt.detail, record, UpgradePhase.VERIFY)
            return

        attempt.advance(AttemptState.VERIFIED)
        self._log("info", f"{record.identity} verified at {reported}", record, UpgradePhase.VERIFY)

    def wait_for_version(self, record: DeviceRecord, creds: Credentials) -> Optional[str]:
        """
        Wait for a rebooting device and read its version.

        Sleeps for the settle delay, then polls reachability and the reported
        version until one is read, the poll attempts run out, or the reboot
        timeout elapses.

        Returns:
            Reported version, or None if the device never answered
        """
        settle = self.config.reboot_settle_delay
        interval = self.config.reboot_poll_interval
        max_attempts = self.config.reboot_poll_attempts

        self._log("info", f"Waiting {settle:g}s for {record.identity} to restart", record, UpgradePhase.REBOOT)
        self._sleep(settle)
        deadline = self._clock() + self.config.reboot_timeout

        for poll in range(1, max_attempts + 1):
            if self._probe(record.host):
                try:
                    with self._connect(record.host, creds) as session:
                        version = session.installed_version()
                    if version:
                        self.logger.debug(f"{record.identity} answered poll {poll} with version {version}")
                        return version
                except SessionError as e:
                    self.logger.debug(f"{record.identity} not ready yet (poll {poll}/{max_attempts}): {e}")
            else:
                self.logger.debug(f"{record.identity} not reachable yet (poll {poll}/{max_attempts})")

            if poll == max_attempts or self._clock() >= deadline:
                break
            self._sleep(interval)

        return None

    def _finish(self, record: DeviceRecord, attempt: UpgradeAttempt) -> UpgradeAttempt:
        """Log the outcome and write it to the registry."""
        if attempt.succeeded:
            self._log("info", f"Upgrade of {record.identity} finished: {attempt.status_text()}", record)
        else:
            self._log("error", f"Upgrade of {record.identity} failed: {attempt.failure_label}", record)

        if self.registry is None or self.simulate:
            return attempt

        version = None
        if attempt.succeeded:
            version = attempt.target_version
        elif attempt.failure == FailureKind.VERSION_MISMATCH:
            version = attempt.reported_version

        self.registry.set_status(record.identity, attempt.status_text(), version=version)
        return attempt
