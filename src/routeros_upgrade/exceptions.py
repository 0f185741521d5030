"""Custom exceptions for the RouterOS upgrade manager."""


class RouterOSUpgradeError(Exception):
    """Base exception for all RouterOS upgrade errors."""
    pass


# ============================================================================
# Structural errors - abort the run before any device is touched
# ============================================================================

class StructuralError(RouterOSUpgradeError):
    """Base exception for errors that abort the whole run."""
    pass


class InvalidVersionSpecError(StructuralError):
    """Exception raised when a version specifier is malformed."""

    def __init__(self, value: str):
        """
        Initialize invalid version spec error.

        Args:
            value: The rejected user input
        """
        self.value = value
        message = (
            f"Invalid version '{value}': expected major.minor or "
            f"major.minor.patch (e.g. 7.18 or 7.18.2)"
        )
        super().__init__(message)


class VersionNotFoundError(StructuralError):
    """Exception raised when the repository has no matching base package."""

    def __init__(self, spec: str, search_dir: str):
        """
        Initialize version not found error.

        Args:
            spec: Requested version (as typed by the operator)
            search_dir: Repository directory that was searched
        """
        self.spec = spec
        self.search_dir = search_dir
        message = f"No base package for version {spec} found in {search_dir}"
        super().__init__(message)


class ArchitectureError(StructuralError):
    """Exception raised when the package architecture cannot be determined."""
    pass


class ConfigurationError(StructuralError):
    """Exception raised for configuration errors."""
    pass


class PreflightError(StructuralError):
    """Exception raised when a pre-flight check fails."""
    pass


class RegistryFormatError(StructuralError):
    """Exception raised when the registry file is missing or malformed."""

    def __init__(self, path: str, reason: str):
        """
        Initialize registry format error.

        Args:
            path: Registry file path
            reason: What is wrong with it
        """
        self.path = path
        self.reason = reason
        super().__init__(f"Registry {path}: {reason}")


class InvalidFilterError(StructuralError):
    """Exception raised when a host filter is not a valid pattern."""
    pass


class NoMatchingDevicesError(StructuralError):
    """Exception raised when a filter matches no registry rows."""

    def __init__(self, path: str, pattern: str):
        """
        Initialize no matching devices error.

        Args:
            path: Registry file path
            pattern: Filter pattern
        """
        self.path = path
        self.pattern = pattern
        super().__init__(f"No hosts found in {path} matching filter '{pattern}'")


class DiscoveryError(StructuralError):
    """Exception raised when neighbor discovery returns nothing usable."""
    pass


class DeviceNotFoundError(RouterOSUpgradeError):
    """Exception raised when an identity is not in the registry."""

    def __init__(self, identity: str):
        """
        Initialize device not found error.

        Args:
            identity: Device identity
        """
        self.identity = identity
        super().__init__(f"Device not found in registry: {identity}")


# ============================================================================
# Per-device errors - captured by the orchestrator, batch continues
# ============================================================================

class DeviceError(RouterOSUpgradeError):
    """Base exception for failures scoped to a single device."""
    pass


class SessionError(DeviceError):
    """Base exception for remote session failures."""

    def __init__(self, host: str, reason: str):
        """
        Initialize session error.

        Args:
            host: Device address
            reason: Error reason
        """
        self.host = host
        self.reason = reason
        super().__init__(f"SSH session to {host} failed: {reason}")


class AuthenticationFailed(SessionError):
    """The device rejected the credentials."""
    pass


class SessionTimeout(SessionError):
    """The connection or a command timed out."""
    pass


class ConnectionRefused(SessionError):
    """The device refused the TCP connection."""
    pass


class TransportFailure(SessionError):
    """Any other SSH transport failure."""
    pass


class TransferError(DeviceError):
    """Exception raised when copying a package to a device fails."""

    PERMISSION_DENIED = "PermissionDenied"
    NO_ROUTE_TO_HOST = "NoRouteToHost"
    GENERIC = "Generic"

    def __init__(self, host: str, path: str, reason: str, details: str = ""):
        """
        Initialize transfer error.

        Args:
            host: Device address
            path: Local file being transferred
            reason: Classified reason (one of the class constants)
            details: Underlying error text
        """
        self.host = host
        self.path = path
        self.reason = reason
        self.details = details
        message = f"Transfer of {path} to {host} failed ({reason})"
        if details:
            message += f": {details}"
        super().__init__(message)


class BackupError(DeviceError):
    """Exception raised when the configuration export is missing or empty."""
    pass


class UpgradeFailedError(DeviceError):
    """Exception raised when an upgrade step fails."""

    def __init__(self, identity: str, phase: str, reason: str):
        """
        Initialize upgrade failed error.

        Args:
            identity: Device identity
            phase: Upgrade phase where failure occurred
            reason: Failure reason
        """
        self.identity = identity
        self.phase = phase
        self.reason = reason
        super().__init__(f"Upgrade failed for {identity} during {phase}: {reason}")


# ============================================================================
# Control flow
# ============================================================================

class InterruptedRun(RouterOSUpgradeError):
    """Raised when a termination signal arrives during a run."""

    def __init__(self, signum: int):
        """
        Initialize interrupted run.

        Args:
            signum: Signal number that was received
        """
        self.signum = signum
        super().__init__(f"Run interrupted by signal {signum}")
