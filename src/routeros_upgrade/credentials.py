"""Credential collection and short-lived credential files."""

import atexit
import os
import signal
import tempfile
from contextlib import contextmanager
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, Dict, Iterator, Optional, Set

import click

from routeros_upgrade import constants
from routeros_upgrade.exceptions import ConfigurationError, InterruptedRun
from routeros_upgrade.logging_config import get_logger


@dataclass(frozen=True)
class Credentials:
    """RouterOS login credentials."""
    username: str
    password: str = field(repr=False)
    cli_suffix: str = ""

    @property
    def login(self) -> str:
        """Login name with the console options suffix (e.g. admin+tce200w)."""
        if self.cli_suffix and not self.username.endswith(self.cli_suffix):
            return f"{self.username}{self.cli_suffix}"
        return self.username


@dataclass(frozen=True)
class CredentialHandle:
    """Reference to a credential file handed to the session layer."""
    path: Path

    def load(self) -> Credentials:
        """
        Read credentials back from the file.

        Returns:
            Credentials with the login name as written

        Raises:
            ConfigurationError: If the file is missing a field
        """
        values: Dict[str, str] = {}
        with open(self.path, "r") as f:
            for line in f:
                key, sep, value = line.rstrip("\n").partition("=")
                if sep:
                    values[key] = value

        if "username" not in values or "password" not in values:
            raise ConfigurationError(f"Credential file {self.path} is incomplete")
        return Credentials(username=values["username"], password=values["password"])


def prompt_credentials() -> Credentials:
    """Ask the operator for a username and password."""
    username = click.prompt("Username", err=True).strip()
    password = click.prompt("Password", hide_input=True, err=True)
    return Credentials(username=username, password=password)


class CredentialManager:
    """
    Supplies credentials to device sessions.

    Credentials are prompted for once and kept in memory for the process
    lifetime. Each attempt gets its own mode 0600 file through ``session()``;
    the file is removed when the scope exits, at interpreter exit, and on
    SIGTERM/SIGHUP once ``install_signal_handlers()`` has been called.
    """

    def __init__(
        self,
        prompt: Optional[Callable[[], Credentials]] = None,
        cli_suffix: str = constants.DEFAULT_CLI_SUFFIX,
        temp_dir: Optional[Path] = None
    ):
        """
        Initialize credential manager.

        Args:
            prompt: Callable returning Credentials (defaults to an interactive prompt)
            cli_suffix: Console options appended to the login name
            temp_dir: Directory for credential files (defaults to the system temp dir)
        """
        self.cli_suffix = cli_suffix
        self.temp_dir = Path(temp_dir) if temp_dir else None
        self.logger = get_logger("routeros_upgrade.credentials")
        self._prompt = prompt or prompt_credentials
        self._credentials: Optional[Credentials] = None
        self._outstanding: Set[Path] = set()
        self._previous_handlers: Dict[int, object] = {}

        atexit.register(self.cleanup)

    def credentials(self) -> Credentials:
        """
        Get credentials, prompting on first use.

        Raises:
            ConfigurationError: If the username or password is empty
        """
        if self._credentials is None:
            entered = self._prompt()
            if not entered.username or not entered.password:
                raise ConfigurationError("Username and password must not be empty")
            if "\n" in entered.username or "\n" in entered.password:
                raise ConfigurationError("Username and password must be single-line values")
            self._credentials = Credentials(
                username=entered.username,
                password=entered.password,
                cli_suffix=self.cli_suffix
            )
        return self._credentials

    @contextmanager
    def session(self) -> Iterator[CredentialHandle]:
        """
        Provide a credential file for the duration of one attempt.

        Yields:
            CredentialHandle pointing at the file
        """
        creds = self.credentials()
        fd, temp_path = tempfile.mkstemp(
            prefix=constants.CREDENTIAL_FILE_PREFIX,
            suffix=".txt",
            dir=self.temp_dir
        )
        path = Path(temp_path)
        self._outstanding.add(path)

        try:
            os.fchmod(fd, constants.CREDENTIAL_FILE_MODE)
            with os.fdopen(fd, "w") as f:
                f.write(f"username={creds.login}\n")
                f.write(f"password={creds.password}\n")
            self.logger.debug(f"Credential file created: {path}")
            yield CredentialHandle(path)
        finally:
            self._remove(path)

    def _remove(self, path: Path) -> None:
        try:
            path.unlink()
            self.logger.debug(f"Credential file removed: {path}")
        except FileNotFoundError:
            pass
        self._outstanding.discard(path)

    @property
    def outstanding(self) -> Set[Path]:
        """Credential files that currently exist."""
        return set(self._outstanding)

    def cleanup(self) -> None:
        """Remove every outstanding credential file."""
        for path in list(self._outstanding):
            self._remove(path)

    def _handle_signal(self, signum, frame):
        self.logger.warning(f"Received signal {signum}, cleaning up")
        self.cleanup()
        raise InterruptedRun(signum)

    def install_signal_handlers(self) -> None:
        """Turn SIGTERM and SIGHUP into InterruptedRun so scopes unwind."""
        for name in ("SIGTERM", "SIGHUP"):
            signum = getattr(signal, name, None)
            if signum is not None:
                self._previous_handlers[signum] = signal.signal(signum, self._handle_signal)

    def restore_signal_handlers(self) -> None:
        """Put back the handlers replaced by install_signal_handlers()."""
        for signum, handler in self._previous_handlers.items():
            signal.signal(signum, handler)
        self._previous_handlers.clear()
