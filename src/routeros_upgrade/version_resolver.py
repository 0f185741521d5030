"""Resolve a requested firmware version against the package repository."""

import re
from pathlib import Path
from typing import Iterable, List, Optional, Tuple

from routeros_upgrade import constants
from routeros_upgrade.exceptions import (
    ArchitectureError, InvalidVersionSpecError, VersionNotFoundError
)
from routeros_upgrade.logging_config import get_logger
from routeros_upgrade.models import (
    ExactVersion, LatestFix, PackageArtifact, ResolvedRelease, VersionSpec
)


logger = get_logger("routeros_upgrade.resolver")

VERSION_SPEC_PATTERN = re.compile(r"^(\d+)\.(\d+)(?:\.(\d+))?$")

# <component>-<version>-<architecture>.<ext>, e.g. routeros-7.18.2-arm64.npk
ARTIFACT_PATTERN = re.compile(
    r"^(?P<component>[A-Za-z][A-Za-z0-9_]*(?:-[A-Za-z][A-Za-z0-9_]*)*)"
    r"-(?P<version>\d+\.\d+(?:\.\d+)?)"
    r"-(?P<architecture>[A-Za-z0-9_]+)"
    r"\.(?P<ext>[A-Za-z0-9]+)$"
)


def parse_version_spec(text: str) -> VersionSpec:
    """
    Parse operator input into a version specifier.

    Args:
        text: "major.minor" or "major.minor.patch"

    Returns:
        LatestFix for two components, ExactVersion for three

    Raises:
        InvalidVersionSpecError: If the input does not match the pattern
    """
    value = (text or "").strip()
    match = VERSION_SPEC_PATTERN.match(value)
    if not match:
        raise InvalidVersionSpecError(text)

    major, minor, patch = match.groups()
    if patch is None:
        return LatestFix(int(major), int(minor))
    return ExactVersion(int(major), int(minor), int(patch))


def version_key(version: str) -> Tuple[int, ...]:
    """
    Numeric sort key for a dotted version.

    A two-part version sorts as patch 0.
    """
    parts = [int(p) for p in version.split(".")]
    while len(parts) < 3:
        parts.append(0)
    return tuple(parts)


def parse_artifact_name(path: Path) -> Optional[PackageArtifact]:
    """
    Parse a package file name.

    Args:
        path: Package file path

    Returns:
        PackageArtifact, or None if the name does not follow the layout
    """
    match = ARTIFACT_PATTERN.match(path.name)
    if not match or match.group("ext") != constants.PACKAGE_EXTENSION:
        return None
    return PackageArtifact(
        version=match.group("version"),
        component=match.group("component"),
        architecture=match.group("architecture"),
        path=path
    )


def series_directory(repository_root: Path, series: str) -> Optional[Path]:
    """Locate the directory holding one major.minor series."""
    for name in (series, f"v{series}"):
        candidate = Path(repository_root) / name
        if candidate.is_dir():
            return candidate
    return None


def list_artifacts(directory: Path) -> List[PackageArtifact]:
    """List parseable package files in a directory, sorted by file name."""
    artifacts = []
    for path in sorted(Path(directory).iterdir()):
        if not path.is_file():
            continue
        artifact = parse_artifact_name(path)
        if artifact is None:
            logger.debug(f"Ignoring non-package file {path.name}")
            continue
        artifacts.append(artifact)
    return artifacts


def _matches_spec(version: str, spec: VersionSpec) -> bool:
    if isinstance(spec, ExactVersion):
        return version == str(spec)
    return version == spec.series or version.startswith(f"{spec.series}.")


def select_release(
    spec: VersionSpec,
    artifacts: Iterable[PackageArtifact],
    architecture: Optional[str] = None,
    base_component: str = constants.DEFAULT_BASE_COMPONENT,
    search_dir: str = ""
) -> ResolvedRelease:
    """
    Pick the release and package set from a repository listing.

    Args:
        spec: Requested version
        artifacts: Packages found in the series directory
        architecture: Package architecture, or None to infer it
        base_component: Component name of the main firmware image
        search_dir: Directory name used in error messages

    Returns:
        ResolvedRelease with the base package first, then addons

    Raises:
        VersionNotFoundError: If no base package matches
        ArchitectureError: If the architecture cannot be inferred
    """
    artifacts = list(artifacts)

    bases = [
        a for a in artifacts
        if a.component == base_component and _matches_spec(a.version, spec)
    ]
    if architecture:
        bases = [a for a in bases if a.architecture == architecture]

    if not bases:
        raise VersionNotFoundError(str(spec), search_dir)

    version = max((a.version for a in bases), key=version_key)
    candidates = [a for a in bases if a.version == version]

    if architecture is None:
        architectures = sorted({a.architecture for a in candidates})
        if len(architectures) > 1:
            raise ArchitectureError(
                f"Version {version} is available for several architectures "
                f"({', '.join(architectures)}); set repository.architecture"
            )
        architecture = architectures[0]

    base = next(a for a in candidates if a.architecture == architecture)
    addons = sorted(
        (
            a for a in artifacts
            if a.version == version
            and a.architecture == architecture
            and a.component != base_component
        ),
        key=lambda a: a.component
    )

    return ResolvedRelease(version=version, architecture=architecture, artifacts=[base] + addons)


def resolve(
    spec: VersionSpec,
    repository_root: Path,
    architecture: Optional[str] = None,
    base_component: str = constants.DEFAULT_BASE_COMPONENT
) -> ResolvedRelease:
    """
    Resolve a version specifier to an exact release and its packages.

    Args:
        spec: ExactVersion or LatestFix
        repository_root: Root of the package repository
        architecture: Package architecture, or None to infer it
        base_component: Component name of the main firmware image

    Returns:
        ResolvedRelease

    Raises:
        VersionNotFoundError: If the series directory or base package is missing
        ArchitectureError: If the architecture cannot be inferred
    """
    directory = series_directory(repository_root, spec.series)
    if directory is None:
        raise VersionNotFoundError(str(spec), str(Path(repository_root) / spec.series))

    release = select_release(
        spec,
        list_artifacts(directory),
        architecture=architecture,
        base_component=base_component,
        search_dir=str(directory)
    )

    logger.info(
        f"Resolved {spec} to {release.version} ({release.architecture}): "
        f"{', '.join(a.filename for a in release.artifacts)}"
    )
    return release
