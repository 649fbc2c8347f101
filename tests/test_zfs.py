from pathlib import Path

import pytest
from archinstall.lib.exceptions import SysCallError
from pydantic import ValidationError

from titan_zfs.exceptions import PoolOperationError
from titan_zfs.utils import get_pool_mountpoints
from titan_zfs.zfs import DEFAULT_DATASETS, HostMountNamespace, PoolLifecycleManager, StoragePool

MOUNT_OUTPUT = """titan on /var/lib/titan/mnt type zfs (rw,xattr,noacl)
titan/data/repo1 on /var/lib/titan/mnt/repo1 type zfs (rw,xattr,noacl)
titanic/other on /srv/other type zfs (rw,xattr,noacl)
titan/data/repo1/v0 on /var/lib/titan/mnt/repo1/v0 type zfs (rw,xattr,noacl)
"""


def make_pool(name: str = "titan") -> StoragePool:
    return StoragePool(name=name, devices=["/dev/sdb"], mountpoint=Path("/var/lib/titan/mnt"), cachefile=Path("/var/lib/titan/zpool.cache"))


def test_get_pool_mountpoints():
    result = get_pool_mountpoints(MOUNT_OUTPUT, "titan")
    assert result == ["/var/lib/titan/mnt/repo1/v0", "/var/lib/titan/mnt/repo1", "/var/lib/titan/mnt"]


def test_get_pool_mountpoints_ignores_pools_sharing_a_prefix():
    assert get_pool_mountpoints(MOUNT_OUTPUT, "titanic") == ["/srv/other"]


def test_get_pool_mountpoints_empty():
    assert get_pool_mountpoints("", "titan") == []


class TestStoragePool:
    def test_defaults_use_service_layout(self) -> None:
        pool = StoragePool(name="titan")
        assert [d.name for d in pool.datasets] == ["data", "db"]
        assert pool.datasets[0].properties == {"mountpoint": "legacy", "compression": "lz4"}
        assert pool.datasets[1].properties == {"mountpoint": "legacy"}

    @pytest.mark.parametrize("name", ["", "1titan", "ti tan", "titan/data"])
    def test_invalid_pool_name(self, name: str) -> None:
        with pytest.raises(ValidationError):
            StoragePool(name=name)

    def test_relative_mountpoint_rejected(self) -> None:
        with pytest.raises(ValidationError, match="must be absolute"):
            StoragePool(name="titan", mountpoint=Path("mnt"))


class TestPoolLifecycle:
    """Pool operations against the in-memory ZFS host."""

    def test_create_then_exists_with_service_datasets(self, zfs_host) -> None:
        manager = PoolLifecycleManager()
        assert manager.exists("titan") is False

        manager.create(make_pool())

        assert manager.exists("titan") is True
        assert manager.list_datasets("titan") == ["data", "db"]
        assert "zpool create -m /var/lib/titan/mnt -o cachefile=/var/lib/titan/zpool.cache titan /dev/sdb" in zfs_host.calls
        assert "zfs create -o mountpoint=legacy -o compression=lz4 titan/data" in zfs_host.calls
        assert "zfs create -o mountpoint=legacy titan/db" in zfs_host.calls

    def test_create_existing_pool_fails(self, zfs_host) -> None:
        zfs_host.add_pool("titan", ["data", "db"])

        with pytest.raises(PoolOperationError, match="already exists") as exc_info:
            PoolLifecycleManager().create(make_pool())

        assert exc_info.value.pool == "titan"
        assert not any(call.startswith("zpool create") for call in zfs_host.calls)

    def test_create_without_devices_fails(self, zfs_host) -> None:  # noqa: ARG002
        with pytest.raises(PoolOperationError, match="no devices"):
            PoolLifecycleManager().create(StoragePool(name="titan"))

    def test_update_removes_deprecated_and_adds_missing(self, zfs_host) -> None:
        zfs_host.add_pool("titan", ["deathrow", "repo", "repo/r1", "data"])
        manager = PoolLifecycleManager()

        manager.update("titan")

        assert manager.list_datasets("titan") == ["data", "db"]
        assert "zfs destroy titan/deathrow" in zfs_host.calls
        assert "zfs destroy -R titan/repo" in zfs_host.calls
        assert "zfs create -o mountpoint=legacy titan/db" in zfs_host.calls

    def test_update_is_idempotent(self, zfs_host) -> None:
        zfs_host.add_pool("titan", ["deathrow", "repo"])
        manager = PoolLifecycleManager()
        manager.update("titan")
        first = dict(zfs_host.pools["titan"].datasets)
        zfs_host.calls.clear()

        manager.update("titan")

        assert zfs_host.pools["titan"].datasets == first
        assert not any(call.startswith(("zfs create", "zfs destroy")) for call in zfs_host.calls)

    def test_update_uses_given_layout(self, zfs_host) -> None:
        zfs_host.add_pool("titan")
        PoolLifecycleManager().update("titan", DEFAULT_DATASETS[:1])
        assert list(zfs_host.pools["titan"].datasets) == ["data"]

    def test_import_pool(self, zfs_host) -> None:
        pool = zfs_host.add_pool("titan", ["data", "db"])
        zfs_host.exported["titan"] = zfs_host.pools.pop("titan")

        PoolLifecycleManager().import_pool(Path(pool.cachefile), "titan")

        assert "titan" in zfs_host.pools
        assert zfs_host.calls[-1] == "zpool import -f -c /var/lib/titan/zpool.cache titan"

    def test_import_failure_is_chained(self, zfs_host) -> None:  # noqa: ARG002
        with pytest.raises(PoolOperationError, match="import failed") as exc_info:
            PoolLifecycleManager().import_pool(Path("/var/lib/titan/zpool.cache"), "titan")
        assert isinstance(exc_info.value.__cause__, SysCallError)

    def test_unmount_all_deepest_first(self, zfs_host) -> None:
        zfs_host.mounts = [
            ("titan", "/var/lib/titan/mnt"),
            ("titan/data/repo1", "/var/lib/titan/mnt/repo1"),
            ("titanic/other", "/srv/other"),
            ("titan/data/repo1/v0", "/var/lib/titan/mnt/repo1/v0"),
        ]

        unmounted = PoolLifecycleManager().unmount_all("titan")

        assert unmounted == ["/var/lib/titan/mnt/repo1/v0", "/var/lib/titan/mnt/repo1", "/var/lib/titan/mnt"]
        assert zfs_host.mounts == [("titanic/other", "/srv/other")]
        assert "nsenter -m -u -t 1 -n -i umount /var/lib/titan/mnt/repo1/v0" in zfs_host.calls

    def test_unmount_all_with_nothing_mounted(self, zfs_host) -> None:  # noqa: ARG002
        assert PoolLifecycleManager().unmount_all("titan") == []

    def test_destroy_refuses_while_mounted(self, zfs_host) -> None:
        manager = PoolLifecycleManager()
        manager.create(make_pool())

        with pytest.raises(PoolOperationError, match="still mounted"):
            manager.destroy("titan")
        assert manager.exists("titan") is True

        manager.unmount_all("titan")
        manager.destroy("titan")
        assert zfs_host.calls[-1] == "zpool destroy titan"
        assert manager.exists("titan") is False

    def test_destroy_missing_pool(self, zfs_host) -> None:  # noqa: ARG002
        with pytest.raises(PoolOperationError, match="destroy failed"):
            PoolLifecycleManager().destroy("titan")


def test_host_mount_namespace_command():
    assert HostMountNamespace().umount_command("/mnt/x") == "nsenter -m -u -t 1 -n -i umount /mnt/x"
    assert HostMountNamespace(target_pid=42).umount_command("/mnt/x") == "nsenter -m -u -t 42 -n -i umount /mnt/x"
