import os
import re
import stat
from dataclasses import dataclass
from pathlib import Path
from shutil import which

from archinstall import debug, error, info, warn
from archinstall.lib.exceptions import SysCallError
from archinstall.lib.general import SysCommand

from titan_zfs.exceptions import LoadFailure

BUILTIN_MARKER = "builtin"

_KERNEL_SUPPORT = re.compile(r"^nodev.*\bzfs\b", re.MULTILINE)


@dataclass(frozen=True)
class AvailabilitySnapshot:
    kernel_support: bool
    device_node: bool
    userspace_tools: bool

    def is_fully_available(self) -> bool:
        return self.kernel_support and self.device_node and self.userspace_tools


class AvailabilityProber:
    """Read-only checks of whether ZFS is usable on this host right now.

    A resource that cannot be read counts as "not available"; probing never
    raises.
    """

    def __init__(
        self,
        filesystems: Path = Path("/proc/filesystems"),
        device: Path = Path("/dev/zfs"),
        modules: Path = Path("/proc/modules"),
        module_version: Path = Path("/sys/module/zfs/version"),
        tool: str = "zpool",
    ):
        self.filesystems = filesystems
        self.device = device
        self.modules = modules
        self.module_version = module_version
        self.tool = tool

    def has_kernel_support(self) -> bool:
        try:
            return bool(_KERNEL_SUPPORT.search(self.filesystems.read_text()))
        except OSError:
            return False

    def has_device_node(self) -> bool:
        try:
            return stat.S_ISCHR(os.stat(self.device).st_mode)
        except OSError:
            return False

    def has_userspace_tools(self) -> bool:
        return which(self.tool) is not None

    def probe(self) -> AvailabilitySnapshot:
        snapshot = AvailabilitySnapshot(
            kernel_support=self.has_kernel_support(),
            device_node=self.has_device_node(),
            userspace_tools=self.has_userspace_tools(),
        )
        debug(f"ZFS availability: {snapshot}")
        return snapshot

    def is_fully_available(self) -> bool:
        return self.probe().is_fully_available()

    def is_module_loaded(self) -> bool:
        try:
            return any(line.startswith("zfs ") for line in self.modules.read_text().splitlines())
        except OSError:
            return False

    def is_zfs_loaded(self) -> bool:
        """True when zfs is loaded as a module or compiled into the kernel."""
        return self.is_module_loaded() or self.has_kernel_support()

    def get_running_zfs_version(self) -> str:
        """Version of the running ZFS, or an empty string when unknown."""
        try:
            return self.module_version.read_text().strip()
        except OSError:
            pass

        # Built-in ZFS has no /sys/module entry, ask the userspace tools
        if which("zfs") is None:
            return ""
        try:
            output = SysCommand("zfs version").decode()
        except SysCallError as e:
            debug(f"zfs version failed: {e}")
            return ""
        for line in output.splitlines():
            if line.startswith("zfs-"):
                return line.split("-")[1]
        return ""


class InstallMarker:
    """Single-line file recording where the loaded ZFS came from.

    Holds either a module directory or the literal "builtin". Only the unload
    path reads it back.
    """

    def __init__(self, path: Path):
        self.path = path

    def write(self, location: str | Path) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        self.path.write_text(f"{location}\n")
        debug(f"Recorded installed ZFS location {location} in {self.path}")

    def read(self) -> str | None:
        try:
            value = self.path.read_text().strip()
        except OSError:
            return None
        return value or None

    def clear(self) -> None:
        self.path.unlink(missing_ok=True)


class ZFSModuleLoader:
    """Loads, inspects and unloads ZFS kernel modules from a module tree."""

    def __init__(
        self,
        prober: AvailabilityProber,
        kernel_release: str,
        misc_device: Path = Path("/sys/class/misc/zfs/dev"),
    ):
        self.prober = prober
        self.kernel_release = kernel_release
        self.misc_device = misc_device

    def modules_dir(self, directory: Path) -> Path:
        return directory / "lib" / "modules" / self.kernel_release

    def find_module(self, directory: Path) -> Path | None:
        """Locate zfs.ko for the running kernel below ``directory``."""
        modules_dir = self.modules_dir(directory)
        if not modules_dir.is_dir():
            return None
        return next(iter(sorted(modules_dir.rglob("zfs.ko"))), None)

    def get_module_version(self, directory: Path) -> str:
        """Version of the zfs module in ``directory``, empty if there is none."""
        if not self.modules_dir(directory).is_dir():
            debug(f"No module tree for {self.kernel_release} in {directory}")
            return ""
        try:
            SysCommand(f"depmod -b {directory} {self.kernel_release}")
            return SysCommand(f"modinfo -F version -b {directory} -k {self.kernel_release} zfs").decode().strip()
        except SysCallError as e:
            debug(f"No zfs module found in {directory}: {e}")
            return ""

    def load(self, directory: Path) -> None:
        """
        Load the zfs module from ``directory``.

        Raises:
            LoadFailure: If depmod or modprobe reject the module
        """
        if self.prober.has_kernel_support():
            info("ZFS is built into the kernel, no module loading needed")
            return

        debug(f"Loading zfs module from {directory}")
        try:
            SysCommand(f"depmod -b {directory} {self.kernel_release}")
            SysCommand(f"modprobe -d {directory} zfs")
            info(f"ZFS module loaded from {directory}")
        except SysCallError as e:
            warn(f"Failed to load zfs module from {directory}: {e}")
            raise LoadFailure(f"Cannot load zfs module from {directory}: {e}") from e

    def unload(self, directory: str | Path) -> None:
        debug(f"Unloading zfs module from {directory}")
        try:
            SysCommand(f"modprobe -d {directory} -r zfs")
            info("ZFS module unloaded")
        except SysCallError as e:
            error(f"Failed to unload zfs module: {e}")
            raise

    def ensure_device_node(self, device: Path = Path("/dev/zfs")) -> None:
        """Create the ZFS control device when the module did not."""
        if device.exists():
            return
        try:
            major, minor = self.misc_device.read_text().strip().split(":")
        except (OSError, ValueError) as e:
            warn(f"Cannot determine ZFS device numbers: {e}")
            return
        try:
            SysCommand(f"mknod -m 660 {device} c {major} {minor}")
            info(f"Created {device}")
        except SysCallError as e:
            warn(f"Failed to create {device}: {e}")

    @staticmethod
    def sanity_check() -> bool:
        try:
            SysCommand("zpool list")
            SysCommand("zfs list")
            return True
        except SysCallError as e:
            error(f"ZFS sanity check failed: {e}")
            return False
