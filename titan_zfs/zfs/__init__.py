import re
from pathlib import Path

from archinstall import debug, error, info, warn
from archinstall.lib.exceptions import SysCallError
from archinstall.lib.general import SysCommand
from pydantic import BaseModel, Field, field_validator

from titan_zfs.exceptions import PoolOperationError
from titan_zfs.utils import get_pool_mountpoints

_POOL_NAME = re.compile(r"^[A-Za-z][A-Za-z0-9_.:-]*$")


class DatasetConfig(BaseModel):
    name: str
    properties: dict[str, str]

    def create_options(self) -> str:
        return " ".join(f"-o {k}={v}" for k, v in self.properties.items())


DEFAULT_DATASETS = [
    DatasetConfig(name="data", properties={"mountpoint": "legacy", "compression": "lz4"}),
    DatasetConfig(name="db", properties={"mountpoint": "legacy"}),
]

# Datasets from older layouts; "repo" may have snapshots and clones below it
DEPRECATED_DATASETS = {"deathrow": False, "repo": True}


# noinspection PyMethodParameters
class StoragePool(BaseModel):
    name: str
    devices: list[str] = Field(default_factory=list)
    mountpoint: Path = Field(default=Path("/var/lib/titan/mnt"))
    cachefile: Path = Field(default=Path("/var/lib/titan/zpool.cache"))
    datasets: list[DatasetConfig] = Field(default_factory=lambda: list(DEFAULT_DATASETS))

    @field_validator("name")
    def validate_pool_name(cls, v: str) -> str:
        if not _POOL_NAME.match(v):
            raise ValueError(f"Invalid pool name: {v!r}")
        return v

    @field_validator("mountpoint", "cachefile")
    def validate_absolute_path(cls, v: Path) -> Path:
        if not v.is_absolute():
            raise ValueError(f"Path {v} must be absolute")
        return v


class HostMountNamespace:
    """Runs umount inside the mount namespace of a host process.

    The provisioner usually runs in a container; mounts made by the host ZFS
    are only visible (and removable) from the host's namespaces.
    """

    def __init__(self, target_pid: int = 1):
        self.target_pid = target_pid

    def umount_command(self, path: str) -> str:
        return f"nsenter -m -u -t {self.target_pid} -n -i umount {path}"

    def umount(self, path: str) -> None:
        SysCommand(self.umount_command(path))


class PoolLifecycleManager:
    """Create, import, upgrade, destroy and unmount the data service pool"""

    def __init__(self, namespace: HostMountNamespace | None = None):
        self.namespace = namespace or HostMountNamespace()

    @staticmethod
    def exists(name: str) -> bool:
        try:
            SysCommand(f"zpool status {name}")
            return True
        except SysCallError:
            return False

    @staticmethod
    def dataset_exists(dataset: str) -> bool:
        try:
            SysCommand(f"zfs list {dataset}")
            return True
        except SysCallError:
            return False

    @staticmethod
    def _create_dataset(pool: str, dataset: DatasetConfig) -> None:
        full_path = f"{pool}/{dataset.name}"
        debug(f"Creating dataset: {full_path}")
        SysCommand(f"zfs create {dataset.create_options()} {full_path}")

    def create(self, pool: StoragePool) -> None:
        """Creates the pool and its datasets on the given devices"""
        if self.exists(pool.name):
            error(f"Pool {pool.name} already exists")
            raise PoolOperationError(pool.name, "already exists")
        if not pool.devices:
            raise PoolOperationError(pool.name, "no devices given")

        debug(f"Creating ZFS pool {pool.name} on {' '.join(pool.devices)}")
        try:
            SysCommand(f"zpool create -m {pool.mountpoint} -o cachefile={pool.cachefile} {pool.name} {' '.join(pool.devices)}")
            for dataset in pool.datasets:
                self._create_dataset(pool.name, dataset)
            info(f"Created pool {pool.name}")
        except SysCallError as e:
            error(f"Failed to create pool: {e!s}")
            raise PoolOperationError(pool.name, f"create failed: {e!s}") from e

    def import_pool(self, cachefile: Path, name: str) -> None:
        """Imports the pool recorded in cachefile"""
        debug(f"Importing pool {name} from {cachefile}")
        try:
            SysCommand(f"zpool import -f -c {cachefile} {name}")
            info(f"Pool {name} imported successfully")
        except SysCallError as e:
            error(f"Failed to import pool: {e!s}")
            raise PoolOperationError(name, f"import failed: {e!s}") from e

    def update(self, name: str, datasets: list[DatasetConfig] | None = None) -> None:
        """Bring an existing pool to the current dataset layout.

        Deprecated datasets are destroyed and missing ones created. Running it
        again on an up to date pool changes nothing.
        """
        debug(f"Updating pool {name}")
        try:
            for dataset, recursive in DEPRECATED_DATASETS.items():
                full_path = f"{name}/{dataset}"
                if self.dataset_exists(full_path):
                    warn(f"Destroying deprecated dataset {full_path}")
                    SysCommand(f"zfs destroy {'-R ' if recursive else ''}{full_path}")

            for dataset in datasets or DEFAULT_DATASETS:
                if not self.dataset_exists(f"{name}/{dataset.name}"):
                    self._create_dataset(name, dataset)
            info(f"Pool {name} is up to date")
        except SysCallError as e:
            error(f"Failed to update pool: {e!s}")
            raise PoolOperationError(name, f"update failed: {e!s}") from e

    @staticmethod
    def mountpoints(name: str) -> list[str]:
        try:
            output = SysCommand("mount -t zfs").decode()
        except SysCallError as e:
            raise PoolOperationError(name, f"cannot list mounts: {e!s}") from e
        return get_pool_mountpoints(output, name)

    def unmount_all(self, name: str) -> list[str]:
        """Unmount every filesystem of the pool, deepest first"""
        unmounted = []
        for directory in self.mountpoints(name):
            debug(f"Unmounting {directory}")
            try:
                self.namespace.umount(directory)
            except SysCallError as e:
                error(f"Failed to unmount {directory}: {e!s}")
                raise PoolOperationError(name, f"unmount of {directory} failed: {e!s}") from e
            unmounted.append(directory)
        info(f"Unmounted {len(unmounted)} filesystems of pool {name}")
        return unmounted

    def destroy(self, name: str) -> None:
        remaining = self.mountpoints(name)
        if remaining:
            error(f"Pool {name} still has mounted filesystems: {', '.join(remaining)}")
            raise PoolOperationError(name, "filesystems still mounted, unmount them first")

        try:
            SysCommand(f"zpool destroy {name}")
            info(f"Destroyed pool {name}")
        except SysCallError as e:
            error(f"Failed to destroy pool: {e!s}")
            raise PoolOperationError(name, f"destroy failed: {e!s}") from e

    @staticmethod
    def list_datasets(name: str) -> list[str]:
        """Names of the direct child datasets of the pool, relative to it"""
        try:
            output = SysCommand(f"zfs list -H -o name -r -d 1 {name}").decode()
        except SysCallError as e:
            raise PoolOperationError(name, f"cannot list datasets: {e!s}") from e

        prefix = f"{name}/"
        return [line.strip()[len(prefix) :] for line in output.splitlines() if line.strip().startswith(prefix)]
