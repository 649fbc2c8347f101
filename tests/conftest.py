"""
Shared fixtures: an in-memory host that answers the zpool/zfs/mount commands
issued by the pool lifecycle code.
"""

import shlex
from collections.abc import Iterator
from dataclasses import dataclass, field
from unittest.mock import Mock, patch

import pytest
from archinstall.lib.exceptions import SysCallError


@dataclass
class FakePool:
    name: str
    mountpoint: str
    cachefile: str
    datasets: dict[str, dict[str, str]] = field(default_factory=dict)


class FakeZFSHost:
    """Interprets the subset of ZFS and mount commands the pool manager uses."""

    def __init__(self) -> None:
        self.pools: dict[str, FakePool] = {}
        self.exported: dict[str, FakePool] = {}
        self.mounts: list[tuple[str, str]] = []
        self.calls: list[str] = []

    def add_pool(self, name: str, datasets: list[str] = (), mountpoint: str = "/var/lib/titan/mnt") -> FakePool:
        pool = FakePool(name, mountpoint, "/var/lib/titan/zpool.cache", {ds: {} for ds in datasets})
        self.pools[name] = pool
        return pool

    @staticmethod
    def _fail(cmd: str) -> SysCallError:
        return SysCallError(f"{cmd} exited with 1", exit_code=1)

    @staticmethod
    def _output(text: str = "") -> Mock:
        result = Mock()
        result.decode.return_value = text
        return result

    def _dataset_exists(self, path: str) -> bool:
        pool, _, dataset = path.partition("/")
        return pool in self.pools and (not dataset or dataset in self.pools[pool].datasets)

    def __call__(self, cmd: str, *args: object, **kwargs: object) -> Mock:
        self.calls.append(cmd)
        argv = shlex.split(cmd)
        tool, verb, rest = argv[0], argv[1], argv[2:]

        if tool == "zpool" and verb == "status":
            if rest[0] not in self.pools:
                raise self._fail(cmd)
            return self._output(f"  pool: {rest[0]}\n state: ONLINE\n")

        if tool == "zpool" and verb == "create":
            opts = dict(zip(rest[0:4:2], rest[1:4:2]))
            name = rest[4]
            if name in self.pools:
                raise self._fail(cmd)
            self.pools[name] = FakePool(name, opts["-m"], opts["-o"].split("=", 1)[1])
            self.mounts.append((name, opts["-m"]))
            return self._output()

        if tool == "zpool" and verb == "import":
            name = rest[-1]
            if name not in self.exported:
                raise self._fail(cmd)
            self.pools[name] = self.exported.pop(name)
            return self._output()

        if tool == "zpool" and verb == "destroy":
            if rest[0] not in self.pools:
                raise self._fail(cmd)
            del self.pools[rest[0]]
            return self._output()

        if tool == "zfs" and verb == "create":
            path = rest[-1]
            pool, _, dataset = path.partition("/")
            if pool not in self.pools or dataset in self.pools[pool].datasets:
                raise self._fail(cmd)
            props = dict(opt.split("=", 1) for opt in rest[1:-1:2])
            self.pools[pool].datasets[dataset] = props
            return self._output()

        if tool == "zfs" and verb == "list":
            path = rest[-1]
            if not self._dataset_exists(path):
                raise self._fail(cmd)
            if "-d" in rest:
                names = [path] + [f"{path}/{ds}" for ds in self.pools[path].datasets if "/" not in ds]
                return self._output("\n".join(names) + "\n")
            return self._output(path)

        if tool == "zfs" and verb == "destroy":
            path = rest[-1]
            pool, _, dataset = path.partition("/")
            if not self._dataset_exists(path):
                raise self._fail(cmd)
            for name in [ds for ds in self.pools[pool].datasets if ds == dataset or ds.startswith(dataset + "/")]:
                if name != dataset and "-R" not in rest:
                    raise self._fail(cmd)
                del self.pools[pool].datasets[name]
            return self._output()

        if tool == "mount":
            return self._output("".join(f"{src} on {target} type zfs (rw,xattr,noacl)\n" for src, target in self.mounts))

        if tool == "nsenter":
            target = argv[-1]
            if not any(t == target for _, t in self.mounts):
                raise self._fail(cmd)
            self.mounts = [(s, t) for s, t in self.mounts if t != target]
            return self._output()

        raise AssertionError(f"Unexpected command: {cmd}")


@pytest.fixture
def zfs_host() -> Iterator[FakeZFSHost]:
    host = FakeZFSHost()
    with patch("titan_zfs.zfs.SysCommand", side_effect=host):
        yield host
