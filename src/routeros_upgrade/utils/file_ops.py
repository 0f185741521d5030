"""Atomic file operations for registry, YAML and JSON data."""

import json
import os
import tempfile
from pathlib import Path
from typing import Any, Dict

import yaml


def atomic_write_text(file_path: Path, text: str, newline: str = "") -> None:
    """
    Write text to a file atomically.

    Writes to a temporary file in the destination directory first, then
    moves it over the final location. Readers see either the old or the new
    content, never a partial file, and an interruption leaves the original
    untouched.

    Args:
        file_path: Destination file path
        text: Content to write
        newline: Newline translation passed to open() ("" keeps text as-is)
    """
    file_path = Path(file_path)
    file_path.parent.mkdir(parents=True, exist_ok=True)

    # Write to temporary file in the same directory
    fd, temp_path = tempfile.mkstemp(
        dir=file_path.parent,
        prefix=f".{file_path.name}.",
        suffix=".tmp"
    )

    try:
        with os.fdopen(fd, 'w', newline=newline) as f:
            f.write(text)
            f.flush()
            os.fsync(f.fileno())

        # Keep the original file's permissions
        if file_path.exists():
            os.chmod(temp_path, file_path.stat().st_mode & 0o777)

        # Atomic move
        os.replace(temp_path, file_path)
    except BaseException:
        # Clean up temp file on error or interrupt
        try:
            os.unlink(temp_path)
        except OSError:
            pass
        raise


def atomic_write_json(file_path: Path, data: Dict[str, Any]) -> None:
    """
    Write JSON data to a file atomically.

    Args:
        file_path: Destination file path
        data: Dictionary to write as JSON
    """
    atomic_write_text(file_path, json.dumps(data, indent=2, sort_keys=True) + "\n")


def atomic_write_yaml(file_path: Path, data: Dict[str, Any]) -> None:
    """
    Write YAML data to a file atomically.

    Args:
        file_path: Destination file path
        data: Dictionary to write as YAML
    """
    atomic_write_text(file_path, yaml.safe_dump(data, default_flow_style=False, sort_keys=True))


def read_yaml(file_path: Path) -> Dict[str, Any]:
    """
    Read YAML data from a file.

    Args:
        file_path: Path to YAML file

    Returns:
        Dictionary containing YAML data (empty for an empty file)

    Raises:
        FileNotFoundError: If file doesn't exist
        yaml.YAMLError: If file contains invalid YAML
        ValueError: If the document is not a mapping
    """
    with open(file_path, 'r') as f:
        data = yaml.safe_load(f)

    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ValueError(f"Expected a mapping at top level of {file_path}")
    return data


def safe_read_yaml(file_path: Path, default: Dict[str, Any] = None) -> Dict[str, Any]:
    """
    Read YAML data from a file, returning default if file doesn't exist.

    Args:
        file_path: Path to YAML file
        default: Default value to return if file doesn't exist

    Returns:
        Dictionary containing YAML data or default value
    """
    if default is None:
        default = {}

    try:
        return read_yaml(file_path)
    except FileNotFoundError:
        return default
    except yaml.YAMLError as e:
        raise ValueError(f"Invalid YAML in {file_path}: {e}")


def ensure_directory_structure(base_path: Path, directories: list[str]) -> None:
    """
    Ensure all required directories exist.

    Args:
        base_path: Base directory path
        directories: List of subdirectory paths relative to base_path
    """
    for directory in directories:
        dir_path = base_path / directory
        dir_path.mkdir(parents=True, exist_ok=True)
