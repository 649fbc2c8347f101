"""
Kernel identification and ZFS module provisioning.

This module ties together kernel family classification, the remediation
strategies that get a compatible ZFS module onto the host, and the custom
kernel build used where modules cannot be loaded at all.
"""

from .build_service import ZFSBuildService
from .builder import BuildProgressReporter, KernelBuildDriver, KernelBuildResult
from .fallback import AttemptResult, FallbackStrategy, ModuleProvisioner, ProvisioningResult, RemediationStrategy
from .registry import FamilyRule, KernelFamilyRegistry, get_kernel_registry
from .variants import KernelIdentity

__all__ = [
    "AttemptResult",
    "BuildProgressReporter",
    "FallbackStrategy",
    "FamilyRule",
    "KernelBuildDriver",
    "KernelBuildResult",
    "KernelFamilyRegistry",
    "KernelIdentity",
    "ModuleProvisioner",
    "ProvisioningResult",
    "RemediationStrategy",
    "ZFSBuildService",
    "get_kernel_registry",
]
