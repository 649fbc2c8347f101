"""
ZFS module version compatibility checks.

ZFS releases fall into two epochs with different compatibility rules: the
legacy 0.8.x series, where any 0.8 patch release is interchangeable, and the
modern 2.x series, where any minor or patch release works. A module from one
epoch is never accepted when the build requirement comes from the other.
"""

from __future__ import annotations

import os
import re

from archinstall import debug
from packaging.version import InvalidVersion, Version

from titan_zfs.exceptions import VersionUnparsable
from titan_zfs.shared import KernelFamily

# Oldest legacy release the data service still runs against
MIN_ZFS_VERSION = "0.8.0"

LEGACY_BUILD_VERSION = "0.8.2"
MODERN_BUILD_VERSION = "2.1.5"

ZFS_BUILD_VERSION_ENV = "ZFS_BUILD_VERSION"

_MODERN_FAMILIES = {KernelFamily.VIRTUALIZED_NO_MODULE, KernelFamily.WINDOWS_SUBSYSTEM}

_RELEASE_PATTERN = re.compile(r"^\d+\.\d+(\.\d+)?$")

_LEGACY = "legacy"
_MODERN = "modern"


def trim_qualifier(version: str) -> str:
    """Drop a trailing build qualifier, e.g. "2.1.5-1ubuntu6" -> "2.1.5"."""
    return version.strip().split("-", 1)[0]


def parse_zfs_version(version: str) -> Version:
    """
    Parse a ZFS module version of the form major.minor[.patch][-qualifier].

    Raises:
        VersionUnparsable: If the string is empty or not a plain release number
    """
    base = trim_qualifier(version or "")
    if not _RELEASE_PATTERN.match(base):
        raise VersionUnparsable(f"Unparsable ZFS version: {version!r}")
    try:
        return Version(base)
    except InvalidVersion as e:
        raise VersionUnparsable(f"Unparsable ZFS version: {version!r}") from e


def _epoch(version: Version) -> str | None:
    if version.major == 0 and version.minor == 8:
        return _LEGACY
    if version.major == 2:
        return _MODERN
    return None


def zfs_version_compatible(required: str, candidate: str) -> bool:
    """
    Check whether an already installed module can serve a build requirement.

    Args:
        required: The ZFS version the host should be running (e.g. "0.8.2")
        candidate: The version reported by a module or the running kernel

    Returns:
        True if the candidate is acceptable, False otherwise. Empty or
        unparsable versions are never acceptable.
    """
    try:
        required_version = parse_zfs_version(required)
        candidate_version = parse_zfs_version(candidate)
    except VersionUnparsable as e:
        debug(f"Treating version as incompatible: {e}")
        return False

    required_epoch = _epoch(required_version)
    candidate_epoch = _epoch(candidate_version)

    if required_epoch == _LEGACY and candidate_epoch == _LEGACY:
        return candidate_version >= Version(MIN_ZFS_VERSION)

    if required_epoch == _MODERN and candidate_epoch == _MODERN:
        return True

    if required_epoch != candidate_epoch:
        debug(f"ZFS {candidate} and {required} belong to different release epochs")
        return False

    return candidate_version.major == required_version.major and candidate_version.minor >= required_version.minor


def zfs_version_matches(required: str, candidate: str) -> bool:
    """Exact match after qualifier trimming; used for freshly built modules."""
    if not required or not candidate:
        return False
    return trim_qualifier(required) == trim_qualifier(candidate)


def get_zfs_build_version(family: KernelFamily | None = None) -> str:
    """
    Return the ZFS version to build or fetch for this host.

    The ZFS_BUILD_VERSION environment variable wins over the per-family default.
    """
    override = os.environ.get(ZFS_BUILD_VERSION_ENV, "").strip()
    if override:
        debug(f"Using ZFS build version from {ZFS_BUILD_VERSION_ENV}: {override}")
        return override

    if family in _MODERN_FAMILIES:
        return MODERN_BUILD_VERSION
    return LEGACY_BUILD_VERSION
