"""CSV device registry with keyed reads and atomic row updates."""

import csv
import dataclasses
import io
import os
import re
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Dict, List, Optional, Tuple

from routeros_upgrade import constants
from routeros_upgrade.exceptions import (
    DeviceNotFoundError, InvalidFilterError, NoMatchingDevicesError, RegistryFormatError
)
from routeros_upgrade.logging_config import get_logger
from routeros_upgrade.models import DeviceRecord
from routeros_upgrade.utils.file_ops import atomic_write_text


Mutator = Callable[[DeviceRecord], Optional[DeviceRecord]]


@dataclass
class _Row:
    """One record of the file as read: its raw text and parsed values."""
    raw: str
    values: Optional[Dict[str, str]] = None

    @property
    def line_ending(self) -> str:
        if self.raw.endswith("\r\n"):
            return "\r\n"
        if self.raw.endswith("\n"):
            return "\n"
        return ""


def _split_records(text: str) -> List[str]:
    """
    Split CSV text into raw records, keeping line endings.

    A quoted field may span lines; a record ends at the first line break
    where the number of quote characters seen so far is even.
    """
    records = []
    pending = ""
    for line in re.findall(r"[^\n]*\n|[^\n]+$", text):
        pending += line
        if pending.count('"') % 2 == 0:
            records.append(pending)
            pending = ""
    if pending:
        records.append(pending)
    return records


def _parse_record(raw: str) -> List[str]:
    rows = list(csv.reader(io.StringIO(raw, newline="")))
    return rows[0] if rows else []


def render_row(values: List[str], line_ending: str = "\n") -> str:
    """Render one row with every field quoted and quotes doubled."""
    buffer = io.StringIO()
    writer = csv.writer(buffer, quoting=csv.QUOTE_ALL, lineterminator=line_ending)
    writer.writerow(values)
    return buffer.getvalue()


def render_registry(records: List[DeviceRecord]) -> str:
    """Render a complete registry (header plus rows)."""
    parts = [render_row(list(constants.REGISTRY_COLUMNS))]
    parts.extend(render_row(record.to_row()) for record in records)
    return "".join(parts)


def resolve_registry_path(name: str, for_write: bool = False) -> Path:
    """
    Locate a registry file.

    Names with a directory part are used as given. A bare file name is looked
    up in the current directory first, then in the home directory.

    Args:
        name: File name or path
        for_write: The file is about to be created (build mode)

    Returns:
        Resolved path

    Raises:
        RegistryFormatError: If the file (or its directory) is not usable
    """
    path = Path(name).expanduser()

    if path.is_absolute() or path.parent != Path("."):
        if not path.parent.is_dir():
            raise RegistryFormatError(str(path), f"directory {path.parent} does not exist")
        if not for_write:
            _check_usable(path)
        return path

    local = Path.cwd() / path
    home = Path.home() / path

    if for_write:
        return local if os.access(Path.cwd(), os.W_OK) else home

    if local.is_file() and os.access(local, os.R_OK | os.W_OK):
        return local

    get_logger("routeros_upgrade.registry").warning(
        f"CSV {local} not found or not readable/writable, trying {home}"
    )
    _check_usable(home)
    return home


def _check_usable(path: Path) -> None:
    if not path.is_file():
        raise RegistryFormatError(str(path), "file does not exist")
    if not os.access(path, os.R_OK):
        raise RegistryFormatError(str(path), "file is not readable")
    if not os.access(path, os.W_OK):
        raise RegistryFormatError(str(path), "file is not writable")


class RegistryStore:
    """
    The device registry file.

    Only one process may write a registry file at a time; there is no
    cross-process locking.
    """

    def __init__(self, path: Path):
        """
        Initialize registry store.

        Args:
            path: Path to the registry CSV
        """
        self.path = Path(path)
        self.logger = get_logger("routeros_upgrade.registry")

    @classmethod
    def create(cls, path: Path, records: List[DeviceRecord]) -> "RegistryStore":
        """
        Write a new registry, replacing any existing file.

        Args:
            path: Destination path
            records: Rows in output order

        Returns:
            Store bound to the new file
        """
        atomic_write_text(Path(path), render_registry(records))
        store = cls(path)
        store.logger.info(f"Wrote {len(records)} device(s) to {path}")
        return store

    def _load(self) -> Tuple[List[str], List[_Row], Dict[str, int]]:
        """
        Read and validate the whole file.

        Returns:
            (header, rows including the header row, identity -> row position)
        """
        try:
            with open(self.path, "r", newline="") as f:
                text = f.read()
        except FileNotFoundError:
            raise RegistryFormatError(str(self.path), "file does not exist")
        except OSError as e:
            raise RegistryFormatError(str(self.path), f"cannot read file: {e}")

        raw_records = _split_records(text)
        if not raw_records:
            raise RegistryFormatError(str(self.path), "file is empty")

        header = [name.strip() for name in _parse_record(raw_records[0])]
        missing = [name for name in constants.REGISTRY_COLUMNS if name not in header]
        if missing:
            raise RegistryFormatError(str(self.path), f"header is missing column(s): {', '.join(missing)}")

        rows = [_Row(raw=raw_records[0])]
        index: Dict[str, int] = {}

        for line_no, raw in enumerate(raw_records[1:], start=2):
            if not raw.strip():
                rows.append(_Row(raw=raw))
                continue

            fields = _parse_record(raw)
            if len(fields) != len(header):
                raise RegistryFormatError(
                    str(self.path),
                    f"record {line_no} has {len(fields)} field(s), expected {len(header)}"
                )

            values = dict(zip(header, fields))
            identity = values["identity"]
            if identity in index:
                self.logger.warning(
                    f"Duplicate identity '{identity}' in {self.path} (record {line_no}); "
                    f"only the first occurrence is updated"
                )
            else:
                index[identity] = len(rows)
            rows.append(_Row(raw=raw, values=values))

        return header, rows, index

    def read_all(self) -> List[DeviceRecord]:
        """
        Read every device in file order.

        Raises:
            RegistryFormatError: If the file is missing or malformed
        """
        _, rows, _ = self._load()
        return [DeviceRecord.from_row(row.values) for row in rows[1:] if row.values is not None]

    def get(self, identity: str) -> DeviceRecord:
        """
        Get one device by identity.

        Raises:
            DeviceNotFoundError: If no row has this identity
        """
        _, rows, index = self._load()
        if identity not in index:
            raise DeviceNotFoundError(identity)
        return DeviceRecord.from_row(rows[index[identity]].values)

    def update_by_identity(self, identity: str, mutator: Mutator) -> DeviceRecord:
        """
        Apply a change to one row and persist atomically.

        The file is re-read, ``mutator`` is applied to the first row with the
        given identity, and the result replaces the original file. Every other
        row is written back exactly as it was read.

        Args:
            identity: Row key
            mutator: Receives a copy of the record; may modify it in place or
                return a replacement

        Returns:
            The updated record

        Raises:
            DeviceNotFoundError: If no row has this identity
            RegistryFormatError: If the file is missing or malformed
            ValueError: If the mutator changes the identity
        """
        header, rows, index = self._load()
        if identity not in index:
            raise DeviceNotFoundError(identity)

        position = index[identity]
        row = rows[position]
        current = DeviceRecord.from_row(row.values)

        candidate = dataclasses.replace(current)
        result = mutator(candidate)
        updated = result if result is not None else candidate

        if updated.identity != identity:
            raise ValueError(f"Registry update may not change identity ({identity} -> {updated.identity})")

        if updated == current:
            self.logger.debug(f"No change for {identity} in {self.path}")
            return updated

        values = dict(row.values)
        values.update(updated.to_dict())
        rows[position] = _Row(
            raw=render_row([values[name] for name in header], row.line_ending),
            values=values
        )

        atomic_write_text(self.path, "".join(r.raw for r in rows))
        self.logger.debug(f"Updated {identity} in {self.path}")
        return updated

    def set_status(self, identity: str, status: str, version: Optional[str] = None) -> DeviceRecord:
        """Set the status (and optionally the version) of one row."""
        def mutate(record: DeviceRecord) -> None:
            record.status = status
            if version is not None:
                record.version = version

        return self.update_by_identity(identity, mutate)

    def filter(self, pattern: str) -> List[DeviceRecord]:
        """
        Select devices by board name or identity.

        The pattern is a case-insensitive regular expression searched in
        ``board_name`` and then ``identity``. Duplicate identities collapse
        to their first occurrence.

        Args:
            pattern: Regular expression

        Returns:
            Matching records in file order

        Raises:
            InvalidFilterError: If the pattern does not compile
            NoMatchingDevicesError: If nothing matches
        """
        try:
            regex = re.compile(pattern, re.IGNORECASE)
        except re.error as e:
            raise InvalidFilterError(f"Invalid filter '{pattern}': {e}")

        matched: List[DeviceRecord] = []
        seen = set()
        for record in self.read_all():
            if record.identity in seen:
                continue
            if regex.search(record.board_name) or regex.search(record.identity):
                matched.append(record)
                seen.add(record.identity)

        if not matched:
            raise NoMatchingDevicesError(str(self.path), pattern)

        self.logger.info(f"Hosts matched by filter '{pattern}':")
        for record in matched:
            self.logger.info(f"  Identity: {record.identity}, Model: {record.board_name}")
        return matched
