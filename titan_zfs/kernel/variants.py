"""
Kernel identity of the running host.

This module defines the KernelIdentity dataclass that captures everything the
provisioner needs to know about the running kernel. It is computed once per
run and never mutated.
"""

from __future__ import annotations

import os
from dataclasses import dataclass, replace
from typing import Any

from archinstall import debug
from archinstall.lib.general import SysCommand

from titan_zfs.shared import KernelFamily

KERNEL_RELEASE_ENV = "KERNEL_RELEASE"
KERNEL_UNAME_ENV = "KERNEL_UNAME"


@dataclass(frozen=True)
class KernelIdentity:
    """Immutable description of a kernel.

    ``version`` is the upstream part of the release (before the first "-"),
    ``variant`` the distribution or vendor suffix after it.
    """

    release: str  # e.g., "5.15.90.1-microsoft-standard-WSL2"
    uname: str  # full "uname -a" line
    version: str  # e.g., "5.15.90.1"
    variant: str  # e.g., "microsoft-standard-WSL2"
    family: KernelFamily = KernelFamily.UNCLASSIFIED

    def __post_init__(self) -> None:
        if not self.release:
            raise ValueError("Kernel release cannot be empty")

    @classmethod
    def from_release(cls, release: str, uname: str = "") -> KernelIdentity:
        """Split a release string into its upstream version and variant."""
        release = release.strip()
        version, _, variant = release.partition("-")
        return cls(release=release, uname=uname.strip(), version=version, variant=variant or release)

    @classmethod
    def detect(cls) -> KernelIdentity:
        """Read the running kernel, honoring KERNEL_RELEASE / KERNEL_UNAME overrides."""
        release = os.environ.get(KERNEL_RELEASE_ENV) or SysCommand("uname -r").decode().strip()
        uname = os.environ.get(KERNEL_UNAME_ENV) or SysCommand("uname -a").decode().strip()
        debug(f"Detected kernel release {release}")
        return cls.from_release(release, uname)

    def with_family(self, family: KernelFamily) -> KernelIdentity:
        return replace(self, family=family)

    @property
    def upstream_version(self) -> str:
        """Release without the WSL2 vendor suffix, as used in WSL2 kernel tags."""
        return self.release.replace("-microsoft-standard-WSL2", "")

    def to_dict(self) -> dict[str, Any]:
        return {
            "release": self.release,
            "uname": self.uname,
            "version": self.version,
            "variant": self.variant,
            "family": self.family.value,
        }

    def __str__(self) -> str:
        return f"{self.release} [{self.family.value}]"
