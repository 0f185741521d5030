"""Application-wide constants."""

from pathlib import Path

# Work directory lookup: --work-dir, then WORK_DIR_ENV_VAR, then the
# pointer file in the home directory, then DEFAULT_WORK_DIR
DEFAULT_WORK_DIR = Path.home() / "routeros-upgrade"
WORK_DIR_ENV_VAR = "ROUTEROS_UPGRADE_HOME"
WORK_DIR_POINTER_FILE = ".routeros-upgrade.config.json"

# Note: These are relative paths within work_dir, not absolute paths
CONFIG_SUBDIR = "config"
CONFIG_FILE_NAME = "config.yaml"

# Directory structure
DIR_CONFIG = "config"
DIR_IMAGES = "os"
DIR_BACKUPS = "backups"
DIR_LOGS = "logs"
DIR_LOGS_STRUCTURED = "logs/structured"
DIR_LOGS_TEXT = "logs/text"

# Registry file layout
REGISTRY_COLUMNS = (
    "identity",
    "ip_addr",
    "mac_addr",
    "interface",
    "platform",
    "board_name",
    "version",
    "status",
)
PLATFORM_TAG = "MikroTik"

# Registry status markers
STATUS_SUCCESS = "SUCCESS"
STATUS_PENDING = "PENDING"
STATUS_FAILED = "FAILED"
STATUS_TIMESTAMP_FORMAT = "%Y-%m-%d %H:%M:%S %z"

# Backup artifacts
BACKUP_TIMESTAMP_FORMAT = "%Y%m%d_%H%M%S"
BACKUP_EXTENSION = ".rsc"

# Package repository
DEFAULT_BASE_COMPONENT = "routeros"
PACKAGE_EXTENSION = "npk"

# RouterOS console options appended to the login name:
# t = no terminal auto-detection, c = no colors, e = dumb terminal, 200w = width
DEFAULT_CLI_SUFFIX = "+tce200w"

# Default configuration values
DEFAULT_SSH_PORT = 22
DEFAULT_SSH_TIMEOUT = 30
DEFAULT_PROBE_ATTEMPTS = 2
DEFAULT_PROBE_TIMEOUT = 2
DEFAULT_REBOOT_SETTLE_DELAY = 60
DEFAULT_REBOOT_POLL_INTERVAL = 15
DEFAULT_REBOOT_POLL_ATTEMPTS = 40
DEFAULT_REBOOT_TIMEOUT = 600
DEFAULT_LOG_LEVEL = "INFO"

# Credential temp files
CREDENTIAL_FILE_PREFIX = "routeros_cred_"
CREDENTIAL_FILE_MODE = 0o600

# External commands required on PATH
REQUIRED_COMMANDS = ("ping",)
