from __future__ import annotations

from enum import Enum


class KernelFamily(Enum):
    """Host kernel classification used to pick a provisioning path."""

    VIRTUALIZED_CONTAINER = "virtualized-container"
    VIRTUALIZED_NO_MODULE = "virtualized-no-module"
    WINDOWS_SUBSYSTEM = "windows-subsystem"
    DISTRIBUTION_STANDARD = "distribution-standard"
    DISTRIBUTION_ENTERPRISE = "distribution-enterprise"
    UNCLASSIFIED = "unclassified"


class ProvisioningState(Enum):
    UNKNOWN = "unknown"
    CHECKING = "checking"
    AVAILABLE = "available"
    REMEDIATING = "remediating"
    PROVISIONED = "provisioned"
    FAILED = "failed"


class RemediationStage(Enum):
    LOAD_EXISTING = "load-existing"
    FETCH_PRECOMPILED = "fetch-precompiled"
    BUILD_FROM_SOURCE = "build-from-source"
    BUILTIN_KERNEL = "builtin-kernel"


class Outcome(Enum):
    """Result of a single remediation attempt."""

    SUCCESS = "success"
    FALLTHROUGH = "fallthrough"
    FATAL = "fatal"


class FailureReason(Enum):
    NO_COMPATIBLE_MODULE = "no-compatible-module"
