"""Data models for devices, releases and upgrade attempts."""

from dataclasses import dataclass, field, asdict
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

from routeros_upgrade import constants


def local_timestamp(now: Optional[datetime] = None) -> str:
    """Render a registry timestamp (local time with UTC offset)."""
    now = now or datetime.now().astimezone()
    return now.strftime(constants.STATUS_TIMESTAMP_FORMAT)


class AttemptState(Enum):
    """Per-device upgrade state machine states."""
    PENDING = "pending"
    REACHABLE = "reachable"
    BACKED_UP = "backed_up"
    TRANSFERRED = "transferred"
    APPLIED = "applied"
    REBOOTED = "rebooted"
    VERIFIED = "verified"
    FAILED = "failed"


class FailureKind(Enum):
    """Failure reasons, valued by their registry status label."""
    PING_FAIL = "PingFail"
    AUTH_FAILED = "InvalidCredentials"
    CONNECT_TIMEOUT = "SSHTimeout"
    CONNECTION_REFUSED = "ConnectionRefused"
    TRANSPORT_FAILED = "SSHConnectionFailed"
    BACKUP_FAILED = "BackupFailed"
    TRANSFER_FAILED = "TransferFailed"
    APPLY_FAILED = "ApplyFailed"
    VERIFY_TIMEOUT = "VerifyTimeout"
    VERSION_MISMATCH = "VersionMismatch"
    UNKNOWN = "UnknownError"


@dataclass
class DeviceRecord:
    """One row of the device registry."""
    identity: str
    ip_addr: str = ""
    mac_addr: str = ""
    interface: str = ""
    platform: str = constants.PLATFORM_TAG
    board_name: str = ""
    version: str = ""
    status: str = ""

    @property
    def host(self) -> str:
        """Address used to reach the device."""
        return self.ip_addr or self.identity

    @classmethod
    def for_host(cls, host: str) -> "DeviceRecord":
        """Build an unregistered record for a directly addressed host."""
        return cls(identity=host, ip_addr=host)

    @classmethod
    def from_row(cls, row: Dict[str, str]) -> "DeviceRecord":
        """Build a record from a registry row keyed by column name."""
        return cls(**{name: row.get(name, "") for name in constants.REGISTRY_COLUMNS})

    def to_row(self) -> List[str]:
        """Field values in registry column order."""
        return [getattr(self, name) for name in constants.REGISTRY_COLUMNS]

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary."""
        return asdict(self)


@dataclass(frozen=True)
class ExactVersion:
    """A fully specified release, e.g. 7.18.2."""
    major: int
    minor: int
    patch: int

    @property
    def series(self) -> str:
        return f"{self.major}.{self.minor}"

    def __str__(self) -> str:
        return f"{self.major}.{self.minor}.{self.patch}"


@dataclass(frozen=True)
class LatestFix:
    """The highest fix release of a major.minor series, e.g. 7.18."""
    major: int
    minor: int

    @property
    def series(self) -> str:
        return f"{self.major}.{self.minor}"

    def __str__(self) -> str:
        return self.series


VersionSpec = Union[ExactVersion, LatestFix]


@dataclass(frozen=True)
class PackageArtifact:
    """A firmware package file in the repository."""
    version: str
    component: str
    architecture: str
    path: Path

    @property
    def filename(self) -> str:
        return self.path.name


@dataclass
class ResolvedRelease:
    """Exact target version plus every package to transfer."""
    version: str
    architecture: str
    artifacts: List[PackageArtifact] = field(default_factory=list)

    @property
    def base(self) -> PackageArtifact:
        return self.artifacts[0]

    @property
    def addons(self) -> List[PackageArtifact]:
        return self.artifacts[1:]


@dataclass
class UpgradeAttempt:
    """
    One run of the state machine against one device.

    Only ``status_text()`` turns the attempt into the registry's free-text
    status; everything before that boundary works on the enums.
    """
    identity: str
    target_version: str
    state: AttemptState = AttemptState.PENDING
    failure: Optional[FailureKind] = None
    failure_reason: str = ""
    previous_version: str = ""
    reported_version: str = ""
    detail: str = ""
    simulated: bool = False
    already_current: bool = False
    started_at: datetime = field(default_factory=lambda: datetime.now().astimezone())
    finished_at: Optional[datetime] = None
    history: List[AttemptState] = field(default_factory=list)

    def advance(self, state: AttemptState) -> None:
        """Move to the next state."""
        self.history.append(self.state)
        self.state = state
        if state in (AttemptState.VERIFIED, AttemptState.FAILED):
            self.finished_at = datetime.now().astimezone()

    def fail(self, kind: FailureKind, detail: str = "", reason: str = "") -> None:
        """Move to the failure terminal state."""
        self.failure = kind
        self.failure_reason = reason
        self.detail = detail
        self.advance(AttemptState.FAILED)

    @property
    def succeeded(self) -> bool:
        return self.state == AttemptState.VERIFIED

    @property
    def failure_label(self) -> str:
        """Failure kind as written to the registry, e.g. TransferFailed:NoRouteToHost."""
        if self.failure is None:
            return ""
        if self.failure_reason:
            return f"{self.failure.value}:{self.failure_reason}"
        return self.failure.value

    def status_text(self, now: Optional[datetime] = None) -> str:
        """Render the terminal outcome as a registry status string."""
        timestamp = local_timestamp(now or self.finished_at)
        if self.succeeded:
            verb = "Already at" if self.already_current else "Updated to"
            return f"{constants.STATUS_SUCCESS}: {verb} {self.target_version} {timestamp}"
        return f"{constants.STATUS_FAILED}:{self.failure_label} {timestamp}"

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary."""
        return {
            "identity": self.identity,
            "target_version": self.target_version,
            "state": self.state.value,
            "failure": self.failure_label,
            "previous_version": self.previous_version,
            "reported_version": self.reported_version,
            "detail": self.detail,
            "simulated": self.simulated,
            "started_at": self.started_at.isoformat(),
            "finished_at": self.finished_at.isoformat() if self.finished_at else "",
        }


def in_progress_status(target_version: str, now: Optional[datetime] = None) -> str:
    """Interim marker written once a device is confirmed reachable."""
    return f"{constants.STATUS_PENDING}: Upgrading to {target_version} {local_timestamp(now)}"


@dataclass
class BatchResult:
    """Outcome of one orchestrator run."""
    target_version: str
    attempts: List[UpgradeAttempt] = field(default_factory=list)
    simulated: bool = False

    @property
    def failed(self) -> List[str]:
        """Identities that failed, in processing order."""
        return [a.identity for a in self.attempts if not a.succeeded]

    @property
    def succeeded(self) -> List[str]:
        return [a.identity for a in self.attempts if a.succeeded]

    def summary_line(self) -> str:
        if self.failed:
            return f"Summary: Failed upgrades for hosts: {' '.join(self.failed)}"
        return "Summary: All updates were successful."
