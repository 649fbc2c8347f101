"""
Remediation strategies and the module provisioner.

This module provides the RemediationStrategy classes, one per way of getting
a ZFS module onto the host, the FallbackStrategy that orders them for a
kernel family, and the ModuleProvisioner that runs them until one succeeds.
Strategies never raise: each reports an Outcome plus a human readable detail,
and the provisioner only surfaces its own terminal state.
"""

from __future__ import annotations

import shutil
import tarfile
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from pathlib import Path
from typing import ClassVar

from archinstall import debug, error, info, warn
from archinstall.lib.exceptions import SysCallError
from archinstall.lib.general import SysCommand

from titan_zfs.config_io import ProvisionerConfig
from titan_zfs.exceptions import BuildFailure, LoadFailure, NoCompatibleModule, TitanZFSError
from titan_zfs.shared import FailureReason, KernelFamily, Outcome, ProvisioningState, RemediationStage
from titan_zfs.validation import get_zfs_build_version, zfs_version_compatible, zfs_version_matches
from titan_zfs.zfs.kmod_setup import BUILTIN_MARKER, AvailabilityProber, InstallMarker, ZFSModuleLoader

from .build_service import ZFSBuildService
from .builder import KernelBuildDriver
from .registry import KernelFamilyRegistry, get_kernel_registry
from .variants import KernelIdentity


@dataclass
class AttemptResult:
    """What a single remediation attempt achieved."""

    stage: RemediationStage
    outcome: Outcome
    detail: str
    location: str | None = None  # module directory or "builtin" on success

    def __str__(self) -> str:
        return f"{self.stage.value}: {self.outcome.value} ({self.detail})"


class RemediationStrategy(ABC):
    stage: ClassVar[RemediationStage]

    @abstractmethod
    def attempt(self, required_version: str) -> AttemptResult:
        """Try to make a ZFS module matching ``required_version`` usable."""

    def success(self, detail: str, location: str, stage: RemediationStage | None = None) -> AttemptResult:
        return AttemptResult(stage or self.stage, Outcome.SUCCESS, detail, location)

    def fallthrough(self, detail: str) -> AttemptResult:
        debug(f"{self.stage.value} did not succeed: {detail}")
        return AttemptResult(self.stage, Outcome.FALLTHROUGH, detail)

    def fatal(self, detail: str) -> AttemptResult:
        return AttemptResult(self.stage, Outcome.FATAL, detail)


class LoadExistingStrategy(RemediationStrategy):
    """Reuse a module that is already loaded or already on disk.

    ``candidates`` pairs each module root with whether it needs an exact
    version match: modules compiled for us by an earlier run must match the
    requested version exactly, system modules only need to be compatible.
    """

    stage = RemediationStage.LOAD_EXISTING

    def __init__(self, prober: AvailabilityProber, loader: ZFSModuleLoader, candidates: list[tuple[Path, bool]]) -> None:
        self.prober = prober
        self.loader = loader
        self.candidates = candidates

    def _running_location(self) -> str:
        if self.prober.has_kernel_support() and not self.prober.is_module_loaded():
            return BUILTIN_MARKER
        return str(self.candidates[0][0]) if self.candidates else "/"

    def attempt(self, required_version: str) -> AttemptResult:
        if self.prober.is_zfs_loaded():
            running = self.prober.get_running_zfs_version()
            if zfs_version_compatible(required_version, running):
                info(f"System is running ZFS version {running}")
                self.loader.ensure_device_node()
                return self.success(f"running ZFS {running}", self._running_location())

        notes = []
        for directory, exact in self.candidates:
            version = self.loader.get_module_version(directory)
            if not version:
                notes.append(f"no ZFS module in {directory}")
                continue

            accepted = zfs_version_matches(required_version, version) if exact else zfs_version_compatible(required_version, version)
            if not accepted:
                notes.append(f"ZFS {version} in {directory} incompatible with {required_version}")
                continue

            info(f"Version {version} in {directory} compatible")
            try:
                self.loader.load(directory)
            except LoadFailure as e:
                notes.append(str(e))
                continue
            return self.success(f"loaded ZFS {version} from {directory}", str(directory))

        return self.fallthrough("; ".join(notes) or "no module directories to check")


class FetchPrecompiledStrategy(RemediationStrategy):
    """Download a module prebuilt for exactly this kernel release."""

    stage = RemediationStage.FETCH_PRECOMPILED

    def __init__(self, loader: ZFSModuleLoader, config: ProvisionerConfig, kernel_release: str) -> None:
        self.loader = loader
        self.config = config
        self.kernel_release = kernel_release

    def asset_url(self, required_version: str) -> str:
        name = self.config.asset_name_template.format(version=required_version, release=self.kernel_release)
        return f"{self.config.asset_base_url.rstrip('/')}/{name}"

    def _extract(self, archive: Path, destination: Path) -> None:
        with tarfile.open(archive, "r:gz") as tar:
            tar.extractall(destination, filter="data")

    def attempt(self, required_version: str) -> AttemptResult:
        info(f"Checking if precompiled ZFS is available for '{self.kernel_release}'")
        dstdir = self.config.precompiled_dir
        url = self.asset_url(required_version)

        try:
            shutil.rmtree(dstdir, ignore_errors=True)
            dstdir.mkdir(parents=True, exist_ok=True)
            archive = dstdir / "zfs.tar.gz"
            SysCommand(f"curl -fsSL -o {archive} {url}")
            self._extract(archive, dstdir)
            archive.unlink(missing_ok=True)
        except SysCallError as e:
            return self.fallthrough(f"no precompiled module at {url}: {e}")
        except (tarfile.TarError, OSError) as e:
            return self.fallthrough(f"failed to extract {url}: {e}")

        info(f"Precompiled ZFS for {self.kernel_release} extracted to {dstdir}")
        version = self.loader.get_module_version(dstdir)
        if not zfs_version_compatible(required_version, version):
            return self.fallthrough(f"precompiled ZFS {version or 'unknown'} incompatible with {required_version}")

        try:
            self.loader.load(dstdir)
        except LoadFailure as e:
            return self.fallthrough(str(e))
        return self.success(f"loaded precompiled ZFS {version}", str(dstdir))


class BuildFromSourceStrategy(RemediationStrategy):
    """Compile ZFS in the build container, then load the result.

    A build that yields no module but leaves the kernel reporting ZFS support
    means ZFS was compiled into the kernel; that is accepted as built-in.
    """

    stage = RemediationStage.BUILD_FROM_SOURCE

    def __init__(self, service: ZFSBuildService, loader: ZFSModuleLoader, prober: AvailabilityProber, output_dir: Path) -> None:
        self.service = service
        self.loader = loader
        self.prober = prober
        self.output_dir = output_dir

    def attempt(self, required_version: str) -> AttemptResult:
        info(f"Building ZFS kernel modules (this could take 30 minutes, submit a request for {self.loader.kernel_release} prebuilt binaries)")
        try:
            self.service.build(required_version, self.output_dir)
        except BuildFailure as e:
            return self.fallthrough(str(e))

        module = self.loader.find_module(self.output_dir)
        if module is not None:
            try:
                self.loader.load(self.output_dir)
            except LoadFailure as e:
                return self.fallthrough(str(e))
            return self.success(f"loaded compiled ZFS {required_version} from {module}", str(self.output_dir))

        if self.prober.has_kernel_support():
            info("No kernel modules were built, ZFS is built into the kernel")
            return self.success("ZFS built into the kernel", BUILTIN_MARKER, stage=RemediationStage.BUILTIN_KERNEL)

        return self.fallthrough("build produced no module and the kernel has no built-in ZFS")


class KernelRebuildStrategy(RemediationStrategy):
    """Full custom kernel build for kernels that cannot load modules."""

    stage = RemediationStage.BUILTIN_KERNEL

    def __init__(self, driver: KernelBuildDriver) -> None:
        self.driver = driver

    def attempt(self, required_version: str) -> AttemptResult:
        result = self.driver.build(required_version)
        if not result.success:
            return self.fatal(result.get_summary())
        return self.success(result.get_summary(), BUILTIN_MARKER)


class FallbackStrategy:
    """Orders remediation stages for a kernel family.

    Stages always run cheapest first. Kernels without dynamic module support
    skip straight to a kernel rebuild, since no module could be loaded anyway.
    """

    @staticmethod
    def get_stage_plan(family: KernelFamily, registry: KernelFamilyRegistry) -> list[RemediationStage]:
        if not registry.supports_dynamic_modules(family):
            return [RemediationStage.BUILTIN_KERNEL]
        return [RemediationStage.LOAD_EXISTING, RemediationStage.FETCH_PRECOMPILED, RemediationStage.BUILD_FROM_SOURCE]


@dataclass
class ProvisioningResult:
    state: ProvisioningState
    required_version: str | None = None
    kernel: KernelIdentity | None = None
    stage: RemediationStage | None = None
    reason: FailureReason | None = None
    detail: str = ""
    attempts: list[AttemptResult] = field(default_factory=list)

    @property
    def succeeded(self) -> bool:
        return self.state in (ProvisioningState.AVAILABLE, ProvisioningState.PROVISIONED)

    def get_summary(self) -> str:
        if self.state is ProvisioningState.AVAILABLE:
            return "ZFS is already fully available"
        if self.state is ProvisioningState.PROVISIONED and self.stage is not None:
            return f"ZFS {self.required_version} provisioned via {self.stage.value}: {self.detail}"
        reason = self.reason.value if self.reason else "unknown"
        return f"ZFS provisioning failed ({reason}): {self.detail}"

    def raise_for_failure(self) -> None:
        if not self.succeeded:
            raise NoCompatibleModule(self.get_summary())


class ModuleProvisioner:
    """Makes sure a compatible ZFS is usable before the data service starts.

    One instance drives one run; ``state`` tracks where that run is.
    """

    def __init__(
        self,
        config: ProvisionerConfig | None = None,
        prober: AvailabilityProber | None = None,
        registry: KernelFamilyRegistry | None = None,
        build_service: ZFSBuildService | None = None,
        marker: InstallMarker | None = None,
        identity: KernelIdentity | None = None,
        strategies: list[RemediationStrategy] | None = None,
    ) -> None:
        self.config = config or ProvisionerConfig()
        self.prober = prober or AvailabilityProber()
        self.registry = registry or get_kernel_registry()
        self.build_service = build_service or ZFSBuildService(self.config.builder_image, self.config.docker_socket)
        self.marker = marker or InstallMarker(self.config.marker_file)
        self.strategies = strategies
        self.state = ProvisioningState.UNKNOWN
        self.stage: RemediationStage | None = None
        self._identity = identity

    def kernel_identity(self) -> KernelIdentity:
        if self._identity is None:
            self._identity = KernelIdentity.detect()
        if self._identity.family is KernelFamily.UNCLASSIFIED:
            self._identity = self.registry.identify(self._identity)
        return self._identity

    def module_loader(self, identity: KernelIdentity) -> ZFSModuleLoader:
        return ZFSModuleLoader(self.prober, identity.release)

    def build_strategies(self, identity: KernelIdentity) -> list[RemediationStrategy]:
        loader = self.module_loader(identity)
        factories = {
            RemediationStage.LOAD_EXISTING: lambda: LoadExistingStrategy(
                self.prober,
                loader,
                [(self.config.system_module_root, False), (self.config.compiled_dir, True)],
            ),
            RemediationStage.FETCH_PRECOMPILED: lambda: FetchPrecompiledStrategy(loader, self.config, identity.release),
            RemediationStage.BUILD_FROM_SOURCE: lambda: BuildFromSourceStrategy(self.build_service, loader, self.prober, self.config.compiled_dir),
            RemediationStage.BUILTIN_KERNEL: lambda: KernelRebuildStrategy(KernelBuildDriver(self.config, identity)),
        }
        plan = FallbackStrategy.get_stage_plan(identity.family, self.registry)
        debug(f"Remediation plan for {identity}: {[s.value for s in plan]}")
        return [factories[stage]() for stage in plan]

    def _check_running_module(self, identity: KernelIdentity, required_version: str) -> str | None:
        """Apply the policy for an incompatible module that is already loaded.

        Returns a failure detail when the run cannot continue.
        """
        if not self.prober.is_zfs_loaded():
            return None
        running = self.prober.get_running_zfs_version()
        if not running or zfs_version_compatible(required_version, running):
            return None

        if not self.config.unload_incompatible:
            error(f"System is running ZFS {running} incompatible with {required_version}, upgrade and retry")
            return f"loaded ZFS {running} is incompatible with {required_version}"

        if not self.prober.is_module_loaded():
            error(f"ZFS {running} is built into the kernel and cannot be unloaded")
            return f"built-in ZFS {running} is incompatible with {required_version}"

        warn(f"Unloading incompatible ZFS {running}")
        try:
            self.module_loader(identity).unload(self.marker.read() or self.config.system_module_root)
        except SysCallError as e:
            return f"could not unload incompatible ZFS {running}: {e}"
        return None

    def _fail(self, result: ProvisioningResult, detail: str) -> ProvisioningResult:
        self.state = ProvisioningState.FAILED
        result.state = self.state
        result.reason = FailureReason.NO_COMPATIBLE_MODULE
        result.detail = detail
        error(result.get_summary())
        return result

    def ensure(self, required_version: str | None = None) -> ProvisioningResult:
        self.state = ProvisioningState.CHECKING
        info("Checking if compatible ZFS is available")

        if self.prober.is_fully_available():
            self.state = ProvisioningState.AVAILABLE
            info("ZFS is already fully available, nothing to do")
            return ProvisioningResult(state=self.state, required_version=required_version)

        identity = self.kernel_identity()
        required = required_version or get_zfs_build_version(identity.family)
        result = ProvisioningResult(state=self.state, required_version=required, kernel=identity)
        info(f"ZFS not fully available, provisioning ZFS {required} for {identity}")

        blocked = self._check_running_module(identity, required)
        if blocked:
            return self._fail(result, blocked)

        self.state = ProvisioningState.REMEDIATING
        strategies = self.strategies if self.strategies is not None else self.build_strategies(identity)

        for attempt_num, strategy in enumerate(strategies, 1):
            self.stage = strategy.stage
            info(f"Attempt {attempt_num}: {strategy.stage.value}")
            try:
                attempt = strategy.attempt(required)
            except (SysCallError, TitanZFSError, OSError) as e:
                attempt = AttemptResult(strategy.stage, Outcome.FALLTHROUGH, f"unexpected error: {e}")
            result.attempts.append(attempt)

            if attempt.outcome is Outcome.SUCCESS:
                try:
                    self.marker.write(attempt.location or BUILTIN_MARKER)
                except OSError as e:
                    warn(f"Could not record installed ZFS location in {self.marker.path}: {e}")
                self.state = ProvisioningState.PROVISIONED
                result.state = self.state
                result.stage = attempt.stage
                result.detail = attempt.detail
                info(result.get_summary())
                return result

            warn(f"Attempt {attempt_num} failed: {attempt.detail}")
            if attempt.outcome is Outcome.FATAL:
                break

        return self._fail(result, "; ".join(str(a) for a in result.attempts) or "no remediation strategies")

    def unload(self) -> bool:
        """Unload the module a previous run installed. Returns True if one was unloaded."""
        location = self.marker.read()
        if location is None or not self.prober.is_zfs_loaded():
            debug("No ZFS module recorded or loaded, nothing to unload")
            return False
        if location == BUILTIN_MARKER:
            info("ZFS is built into the kernel and cannot be unloaded")
            return False

        self.module_loader(self.kernel_identity()).unload(location)
        self.marker.clear()
        return True

    def verify(self) -> bool:
        """Check that ZFS is configured properly after provisioning."""
        loader = self.module_loader(self.kernel_identity())
        loader.ensure_device_node()
        if not loader.sanity_check():
            error("ZFS not configured properly, contact help")
            return False
        return True
