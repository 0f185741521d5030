"""Configuration management: work directory, options file and pre-flight checks."""

import json
import os
import shutil
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Any, Dict, Optional

from routeros_upgrade import constants
from routeros_upgrade.exceptions import ConfigurationError, PreflightError
from routeros_upgrade.logging_config import get_logger
from routeros_upgrade.utils.file_ops import (
    atomic_write_json, atomic_write_yaml, safe_read_yaml, ensure_directory_structure
)


# ============================================================================
# Work directory
# ============================================================================

class WorkDirSource(Enum):
    """Setting the work directory was taken from."""
    FLAG = "--work-dir"
    ENVIRONMENT = f"${constants.WORK_DIR_ENV_VAR}"
    POINTER_FILE = f"~/{constants.WORK_DIR_POINTER_FILE}"
    DEFAULT = "default"


@dataclass(frozen=True)
class WorkDir:
    """Resolved work directory."""
    path: Path
    source: WorkDirSource

    def describe(self) -> str:
        return f"Work directory: {self.path} (from {self.source.value})"


def pointer_file_path() -> Path:
    """Per-user file that remembers the work directory."""
    return Path.home() / constants.WORK_DIR_POINTER_FILE


def _pointer_file_work_dir() -> Optional[str]:
    path = pointer_file_path()
    if not path.is_file():
        return None

    try:
        with open(path, "r") as f:
            data = json.load(f)
    except (json.JSONDecodeError, OSError) as e:
        raise ConfigurationError(f"Cannot read work directory pointer {path}: {e}")

    if not isinstance(data, dict) or not data.get("work_dir"):
        raise ConfigurationError(f"Work directory pointer {path} has no work_dir entry")
    return str(data["work_dir"])


def resolve_work_dir(flag_value: Optional[str] = None) -> WorkDir:
    """
    Pick the work directory.

    The first setting present wins: the --work-dir flag, the
    ROUTEROS_UPGRADE_HOME environment variable, the pointer file written by
    ``remember_work_dir()``, then ~/routeros-upgrade.

    Args:
        flag_value: Value of --work-dir, if given

    Raises:
        ConfigurationError: If the pointer file exists but cannot be used
    """
    lookups = (
        (WorkDirSource.FLAG, lambda: flag_value),
        (WorkDirSource.ENVIRONMENT, lambda: os.getenv(constants.WORK_DIR_ENV_VAR)),
        (WorkDirSource.POINTER_FILE, _pointer_file_work_dir),
    )
    for source, lookup in lookups:
        value = lookup()
        if value:
            return WorkDir(Path(value).expanduser().resolve(), source)

    return WorkDir(constants.DEFAULT_WORK_DIR, WorkDirSource.DEFAULT)


def remember_work_dir(work_dir: Path) -> Path:
    """
    Store work_dir in the pointer file so later runs find it without flags.

    Returns:
        Path of the pointer file
    """
    path = pointer_file_path()
    atomic_write_json(path, {"work_dir": str(Path(work_dir).expanduser().resolve())})
    return path


# ============================================================================
# Options file
# ============================================================================


# Numeric settings that must be strictly positive
POSITIVE_SETTINGS = {
    "ssh.timeout": constants.DEFAULT_SSH_TIMEOUT,
    "ssh.port": constants.DEFAULT_SSH_PORT,
    "probe.attempts": constants.DEFAULT_PROBE_ATTEMPTS,
    "probe.timeout": constants.DEFAULT_PROBE_TIMEOUT,
    "reboot.poll_interval": constants.DEFAULT_REBOOT_POLL_INTERVAL,
    "reboot.poll_attempts": constants.DEFAULT_REBOOT_POLL_ATTEMPTS,
    "reboot.timeout": constants.DEFAULT_REBOOT_TIMEOUT,
}

# Numeric settings where zero is allowed
NON_NEGATIVE_SETTINGS = {
    "reboot.settle_delay": constants.DEFAULT_REBOOT_SETTLE_DELAY,
}


class Config:
    """Application configuration manager."""

    def __init__(self, config_file: Optional[Path] = None, work_dir: Optional[Path] = None):
        """
        Initialize configuration.

        Args:
            config_file: Path to YAML options file (defaults to work_dir/config/config.yaml)
            work_dir: Working directory (resolved with resolve_work_dir before calling)

        Raises:
            ConfigurationError: If an explicit options file is missing or is not valid YAML
        """
        self.work_dir = Path(work_dir) if work_dir else constants.DEFAULT_WORK_DIR

        if config_file:
            self.config_file = Path(config_file).expanduser()
            if not self.config_file.is_file():
                raise ConfigurationError(f"Options file {self.config_file} does not exist")
        else:
            self.config_file = self.work_dir / constants.CONFIG_SUBDIR / constants.CONFIG_FILE_NAME

        self._config: Dict[str, Any] = {}
        self._load_config()

    def _load_config(self) -> None:
        """Load configuration from file or fall back to defaults."""
        try:
            self._config = safe_read_yaml(self.config_file, self._get_default_config())
        except ValueError as e:
            raise ConfigurationError(str(e))

    def _get_default_config(self) -> Dict[str, Any]:
        """Get default configuration."""
        return {
            "paths": {
                "image_dir": constants.DIR_IMAGES,
                "backup_dir": constants.DIR_BACKUPS,
                "logs_dir": constants.DIR_LOGS
            },
            "ssh": {
                "port": constants.DEFAULT_SSH_PORT,
                "timeout": constants.DEFAULT_SSH_TIMEOUT,
                "cli_suffix": constants.DEFAULT_CLI_SUFFIX
            },
            "probe": {
                "attempts": constants.DEFAULT_PROBE_ATTEMPTS,
                "timeout": constants.DEFAULT_PROBE_TIMEOUT
            },
            "reboot": {
                "settle_delay": constants.DEFAULT_REBOOT_SETTLE_DELAY,
                "poll_interval": constants.DEFAULT_REBOOT_POLL_INTERVAL,
                "poll_attempts": constants.DEFAULT_REBOOT_POLL_ATTEMPTS,
                "timeout": constants.DEFAULT_REBOOT_TIMEOUT
            },
            "repository": {
                "base_component": constants.DEFAULT_BASE_COMPONENT,
                "architecture": ""
            },
            "logging": {
                "level": constants.DEFAULT_LOG_LEVEL
            }
        }

    def ensure_directories(self) -> None:
        """Create the standard work directory layout."""
        ensure_directory_structure(self.work_dir, [
            constants.DIR_CONFIG,
            constants.DIR_IMAGES,
            constants.DIR_BACKUPS,
            constants.DIR_LOGS_STRUCTURED,
            constants.DIR_LOGS_TEXT,
        ])

    def save(self) -> None:
        """Save configuration to file."""
        atomic_write_yaml(self.config_file, self._config)

    def get(self, key: str, default: Any = None) -> Any:
        """
        Get configuration value by dot-notation key.

        Args:
            key: Configuration key (e.g., "ssh.timeout")
            default: Default value if key not found

        Returns:
            Configuration value
        """
        keys = key.split('.')
        value = self._config

        for k in keys:
            if isinstance(value, dict) and k in value:
                value = value[k]
            else:
                return default

        return value

    def set(self, key: str, value: Any, save: bool = True) -> None:
        """
        Set configuration value by dot-notation key.

        Args:
            key: Configuration key (e.g., "ssh.timeout")
            value: Value to set
            save: Write the file immediately
        """
        keys = key.split('.')
        config = self._config

        for k in keys[:-1]:
            if not isinstance(config.get(k), dict):
                config[k] = {}
            config = config[k]

        config[keys[-1]] = value
        if save:
            self.save()

    def as_dict(self) -> Dict[str, Any]:
        """Effective configuration (file values over defaults)."""
        merged = self._get_default_config()
        for section, values in self._config.items():
            if isinstance(values, dict) and isinstance(merged.get(section), dict):
                merged[section].update(values)
            else:
                merged[section] = values
        return merged

    def get_path(self, relative_path: str) -> Path:
        """
        Get absolute path for a path setting.

        Relative paths are taken from the work directory; "~" is expanded.

        Args:
            relative_path: Relative or absolute path

        Returns:
            Absolute Path object
        """
        path = Path(os.path.expandvars(str(relative_path))).expanduser()
        if path.is_absolute():
            return path
        return self.work_dir / path

    def validate(self) -> None:
        """
        Validate numeric settings.

        Raises:
            ConfigurationError: If a timeout or count is not a positive number
        """
        for key, default in POSITIVE_SETTINGS.items():
            value = self._number(key, default)
            if value <= 0:
                raise ConfigurationError(f"{key} must be a positive number (got {self.get(key)!r})")

        for key, default in NON_NEGATIVE_SETTINGS.items():
            value = self._number(key, default)
            if value < 0:
                raise ConfigurationError(f"{key} must not be negative (got {self.get(key)!r})")

    def _number(self, key: str, default: float) -> float:
        value = self.get(key, default)
        if isinstance(value, bool):
            raise ConfigurationError(f"{key} must be a number (got {value!r})")
        try:
            return float(value)
        except (TypeError, ValueError):
            raise ConfigurationError(f"{key} must be a number (got {value!r})")

    @property
    def image_dir(self) -> Path:
        """Get package repository root."""
        return self.get_path(self.get("paths.image_dir", constants.DIR_IMAGES))

    @property
    def backup_dir(self) -> Path:
        """Get directory for configuration exports."""
        return self.get_path(self.get("paths.backup_dir", constants.DIR_BACKUPS))

    @property
    def logs_dir(self) -> Path:
        """Get log directory."""
        return self.get_path(self.get("paths.logs_dir", constants.DIR_LOGS))

    @property
    def ssh_port(self) -> int:
        return int(self._number("ssh.port", constants.DEFAULT_SSH_PORT))

    @property
    def ssh_timeout(self) -> float:
        """Get SSH connect/command timeout in seconds."""
        return self._number("ssh.timeout", constants.DEFAULT_SSH_TIMEOUT)

    @property
    def cli_suffix(self) -> str:
        """Get RouterOS console options appended to the login name."""
        return str(self.get("ssh.cli_suffix", constants.DEFAULT_CLI_SUFFIX) or "")

    @property
    def probe_attempts(self) -> int:
        return int(self._number("probe.attempts", constants.DEFAULT_PROBE_ATTEMPTS))

    @property
    def probe_timeout(self) -> float:
        return self._number("probe.timeout", constants.DEFAULT_PROBE_TIMEOUT)

    @property
    def reboot_settle_delay(self) -> float:
        """Get wait after a reboot command before the first poll, in seconds."""
        return self._number("reboot.settle_delay", constants.DEFAULT_REBOOT_SETTLE_DELAY)

    @property
    def reboot_poll_interval(self) -> float:
        return self._number("reboot.poll_interval", constants.DEFAULT_REBOOT_POLL_INTERVAL)

    @property
    def reboot_poll_attempts(self) -> int:
        return int(self._number("reboot.poll_attempts", constants.DEFAULT_REBOOT_POLL_ATTEMPTS))

    @property
    def reboot_timeout(self) -> float:
        """Get overall window for a device to come back after reboot, in seconds."""
        return self._number("reboot.timeout", constants.DEFAULT_REBOOT_TIMEOUT)

    @property
    def base_component(self) -> str:
        return str(self.get("repository.base_component", constants.DEFAULT_BASE_COMPONENT))

    @property
    def architecture(self) -> Optional[str]:
        """Get configured package architecture (None means infer)."""
        return self.get("repository.architecture") or None

    @property
    def log_level(self) -> str:
        return str(self.get("logging.level", constants.DEFAULT_LOG_LEVEL))


# ============================================================================
# Pre-flight
# ============================================================================

def preflight_checks(config: Config, logging_enabled: bool = False) -> None:
    """
    Verify the environment before any device is touched.

    Args:
        config: Configuration instance
        logging_enabled: Whether file logging was requested

    Raises:
        ConfigurationError: If a numeric setting is invalid
        PreflightError: If a required command or directory is missing
    """
    logger = get_logger("routeros_upgrade.preflight")

    config.validate()

    for command in constants.REQUIRED_COMMANDS:
        if shutil.which(command) is None:
            raise PreflightError(f"Required command '{command}' not found in PATH")

    image_dir = config.image_dir
    if not image_dir.is_dir():
        raise PreflightError(f"Image directory {image_dir} does not exist")

    backup_dir = config.backup_dir
    if not backup_dir.is_dir():
        raise PreflightError(f"Backup directory {backup_dir} does not exist")
    if not os.access(backup_dir, os.W_OK):
        raise PreflightError(f"Backup directory {backup_dir} is not writable")

    if logging_enabled:
        logs_dir = config.logs_dir
        try:
            logs_dir.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise PreflightError(f"Cannot create log directory {logs_dir}: {e}")
        if not os.access(logs_dir, os.W_OK):
            raise PreflightError(f"Log directory {logs_dir} is not writable")

    logger.debug(f"Pre-flight: image_dir={image_dir}, backup_dir={backup_dir}")
    logger.info("Pre-flight checks passed")
