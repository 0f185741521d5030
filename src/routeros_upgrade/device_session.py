"""SSH command and file transfer session to a RouterOS device."""

import errno
import re
import socket
import subprocess
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Dict, Optional, Tuple

import paramiko
from paramiko.ssh_exception import NoValidConnectionsError

from routeros_upgrade import constants
from routeros_upgrade.credentials import Credentials
from routeros_upgrade.exceptions import (
    AuthenticationFailed, ConnectionRefused, SessionTimeout, TransferError, TransportFailure
)
from routeros_upgrade.logging_config import get_logger


TOKEN_PATTERN = re.compile(r"^[a-z][a-z0-9-]*$")
BARE_VALUE_PATTERN = re.compile(r"^[A-Za-z0-9._:/@+-]+$")

# RouterOS reports command errors on the first stdout line with a zero exit status
ERROR_MARKERS = ("bad command name", "syntax error", "expected end of command", "failure:", "no such item")


def quote_value(value: str) -> str:
    """Quote an argument value for the RouterOS console."""
    value = str(value)
    if BARE_VALUE_PATTERN.fullmatch(value):
        return value
    escaped = value.replace("\\", "\\\\").replace('"', '\\"').replace("$", "\\$")
    return f'"{escaped}"'


@dataclass(frozen=True)
class Command:
    """
    A RouterOS console command.

    Menu path, action, flags and argument names are restricted to console
    tokens; only argument values are free text and those are always quoted.

    Example:
        Command(("system", "resource"), "print").render()
        -> "/system resource print"
    """
    menu: Tuple[str, ...]
    action: str
    flags: Tuple[str, ...] = ()
    args: Tuple[Tuple[str, str], ...] = ()
    put_value: bool = False

    def __post_init__(self):
        for token in self.menu + (self.action,) + self.flags + tuple(k for k, _ in self.args):
            if not TOKEN_PATTERN.fullmatch(token):
                raise ValueError(f"Invalid RouterOS command token: {token!r}")

    def render(self) -> str:
        parts = ["/" + " ".join(self.menu + (self.action,))]
        parts.extend(self.flags)
        parts.extend(f"{key}={quote_value(value)}" for key, value in self.args)
        text = " ".join(parts)
        if self.put_value:
            return f":put [{text} as-value]"
        return text

    def __str__(self) -> str:
        return self.render()

    @classmethod
    def resource(cls) -> "Command":
        return cls(("system", "resource"), "print")

    @classmethod
    def export(cls, show_sensitive: bool = True) -> "Command":
        """Full configuration export; show-sensitive is RouterOS 7 only."""
        return cls((), "export", flags=("show-sensitive",) if show_sensitive else ())

    @classmethod
    def reboot(cls) -> "Command":
        return cls(("system",), "reboot")

    @classmethod
    def neighbors(cls) -> "Command":
        return cls(("ip", "neighbor"), "print", put_value=True)


@dataclass
class CommandResult:
    """Output of one remote command."""
    command: str
    output: str
    exit_status: int
    error: str = ""

    @property
    def first_line(self) -> str:
        for line in self.output.splitlines():
            if line.strip():
                return line.strip()
        return ""

    @property
    def ok(self) -> bool:
        """Zero exit status and no console error at the top of the output."""
        if self.exit_status != 0:
            return False
        lowered = self.first_line.lower()
        return not any(lowered.startswith(marker) for marker in ERROR_MARKERS)


def strip_channel(version: str) -> str:
    """Drop the release channel, e.g. "7.16.2 (stable)" -> "7.16.2"."""
    return re.sub(r"\s*\(.*\)\s*$", "", version or "").strip()


def parse_resource_output(text: str) -> Dict[str, str]:
    """
    Parse "/system resource print" output.

    Args:
        text: Console output, one "key: value" pair per line

    Returns:
        Dictionary keyed by field name ("version", "architecture-name", ...)
        with the version's release channel removed
    """
    info: Dict[str, str] = {}
    for line in text.splitlines():
        key, sep, value = line.partition(":")
        if not sep:
            continue
        key = key.strip()
        if key and " " not in key:
            info[key] = value.strip()

    if "version" in info:
        info["version"] = strip_channel(info["version"])
    return info


def _is_refused(error: NoValidConnectionsError) -> bool:
    errors = getattr(error, "errors", {}) or {}
    return bool(errors) and all(
        getattr(e, "errno", None) == errno.ECONNREFUSED for e in errors.values()
    )


class RouterOSSession:
    """One authenticated SSH channel to a device."""

    def __init__(self, host: str, client: paramiko.SSHClient, timeout: float):
        """
        Initialize session around a connected client.

        Args:
            host: Device address
            client: Connected paramiko SSHClient
            timeout: Per-command timeout in seconds
        """
        self.host = host
        self.timeout = timeout
        self.logger = get_logger("routeros_upgrade.session")
        self._client = client
        self._sftp: Optional[paramiko.SFTPClient] = None

    @classmethod
    def connect(
        cls,
        host: str,
        credentials: Credentials,
        timeout: float = constants.DEFAULT_SSH_TIMEOUT,
        port: int = constants.DEFAULT_SSH_PORT,
        client_factory: Callable[[], paramiko.SSHClient] = paramiko.SSHClient
    ) -> "RouterOSSession":
        """
        Open an SSH session.

        Args:
            host: Device address
            credentials: Login credentials (CLI suffix already applied)
            timeout: Connect and command timeout in seconds
            port: SSH port
            client_factory: SSHClient constructor, replaceable for testing

        Returns:
            Connected session

        Raises:
            AuthenticationFailed: Credentials rejected
            SessionTimeout: Connect timed out
            ConnectionRefused: Port closed
            TransportFailure: Any other SSH or socket failure
        """
        logger = get_logger("routeros_upgrade.session")
        client = client_factory()
        client.set_missing_host_key_policy(paramiko.AutoAddPolicy())

        try:
            client.connect(
                host,
                port=port,
                username=credentials.login,
                password=credentials.password,
                timeout=timeout,
                banner_timeout=timeout,
                auth_timeout=timeout,
                allow_agent=False,
                look_for_keys=False
            )
        except paramiko.AuthenticationException as e:
            client.close()
            raise AuthenticationFailed(host, f"authentication failed: {e}")
        except socket.timeout as e:
            client.close()
            raise SessionTimeout(host, f"connection timed out after {timeout}s: {e}")
        except NoValidConnectionsError as e:
            client.close()
            if _is_refused(e):
                raise ConnectionRefused(host, str(e))
            raise TransportFailure(host, str(e))
        except ConnectionRefusedError as e:
            client.close()
            raise ConnectionRefused(host, str(e))
        except (paramiko.SSHException, OSError) as e:
            client.close()
            raise TransportFailure(host, str(e))

        logger.debug(f"Connected to {host}:{port} as {credentials.login}")
        return cls(host, client, timeout)

    def exec(self, command: Command, confirm: bool = False, timeout: Optional[float] = None) -> CommandResult:
        """
        Run one command and wait for it to finish.

        Args:
            command: Command to run
            confirm: Answer "y" to a confirmation prompt
            timeout: Override the session timeout

        Returns:
            CommandResult

        Raises:
            SessionTimeout: The command did not complete in time
            TransportFailure: The channel failed
        """
        text = command.render()
        self.logger.debug(f"[{self.host}] exec: {text}")

        try:
            stdin, stdout, stderr = self._client.exec_command(text, timeout=timeout or self.timeout)
            if confirm:
                stdin.write("y\n")
                stdin.flush()
            output = stdout.read().decode("utf-8", errors="replace")
            error = stderr.read().decode("utf-8", errors="replace")
            exit_status = stdout.channel.recv_exit_status()
        except socket.timeout as e:
            raise SessionTimeout(self.host, f"command '{text}' timed out: {e}")
        except (paramiko.SSHException, OSError) as e:
            raise TransportFailure(self.host, f"command '{text}' failed: {e}")

        return CommandResult(command=text, output=output, exit_status=exit_status, error=error)

    def resource(self) -> Dict[str, str]:
        """Read "/system resource print" as a dictionary."""
        return parse_resource_output(self.exec(Command.resource()).output)

    def installed_version(self) -> str:
        """Running RouterOS version without release channel."""
        return self.resource().get("version", "")

    def _get_sftp(self) -> paramiko.SFTPClient:
        if self._sftp is None:
            try:
                self._sftp = self._client.open_sftp()
            except (paramiko.SSHException, OSError) as e:
                raise TransportFailure(self.host, f"cannot open SFTP channel: {e}")
        return self._sftp

    def transfer_to(self, local_path: Path, remote_path: Optional[str] = None) -> str:
        """
        Upload a file to the device.

        Args:
            local_path: File to send
            remote_path: Destination name (defaults to the local file name)

        Returns:
            Remote path written

        Raises:
            TransferError: Upload failed, with a classified reason
        """
        local_path = Path(local_path)
        remote_path = remote_path or local_path.name
        self.logger.debug(f"[{self.host}] upload {local_path} -> {remote_path}")

        try:
            self._get_sftp().put(str(local_path), remote_path)
        except TransportFailure as e:
            raise TransferError(self.host, str(local_path), classify_transfer_error(e), e.reason)
        except (paramiko.SSHException, OSError) as e:
            raise TransferError(self.host, str(local_path), classify_transfer_error(e), str(e))

        return remote_path

    def close(self) -> None:
        """Close SFTP and SSH channels."""
        if self._sftp is not None:
            try:
                self._sftp.close()
            except (paramiko.SSHException, OSError) as e:
                self.logger.debug(f"[{self.host}] SFTP close failed: {e}")
            self._sftp = None
        self._client.close()

    def __enter__(self) -> "RouterOSSession":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()


SessionFactory = Callable[..., RouterOSSession]


def classify_transfer_error(error: Exception) -> str:
    """Map an upload failure to PermissionDenied, NoRouteToHost or Generic."""
    code = getattr(error, "errno", None)
    text = str(error).lower()

    if isinstance(error, PermissionError) or code == errno.EACCES or "permission denied" in text:
        return TransferError.PERMISSION_DENIED
    if code == errno.EHOSTUNREACH or "no route to host" in text:
        return TransferError.NO_ROUTE_TO_HOST
    return TransferError.GENERIC


def probe_host(
    host: str,
    attempts: int = constants.DEFAULT_PROBE_ATTEMPTS,
    timeout: float = constants.DEFAULT_PROBE_TIMEOUT,
    runner: Callable[..., subprocess.CompletedProcess] = subprocess.run
) -> bool:
    """
    ICMP liveness check using the system ping binary.

    Args:
        host: Device address
        attempts: Number of single-packet pings to try
        timeout: Per-attempt reply timeout in seconds
        runner: subprocess.run replacement for testing

    Returns:
        True as soon as one ping is answered
    """
    wait = str(max(1, int(round(timeout))))
    for _ in range(max(1, int(attempts))):
        result = runner(
            ["ping", "-c", "1", "-W", wait, host],
            stdout=subprocess.DEVNULL,
            stderr=subprocess.DEVNULL,
            check=False
        )
        if result.returncode == 0:
            return True
    return False
