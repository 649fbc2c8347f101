import argparse
import sys
from pathlib import Path

from archinstall import error, info
from archinstall.lib.exceptions import SysCallError

from titan_zfs.config_io import DEFAULT_CONFIG_PATH, ProvisionerConfig, load_config
from titan_zfs.exceptions import NoCompatibleModule, PoolOperationError
from titan_zfs.kernel import KernelBuildDriver, KernelIdentity, ModuleProvisioner, get_kernel_registry
from titan_zfs.validation import get_zfs_build_version
from titan_zfs.zfs import PoolLifecycleManager, StoragePool

EXIT_OK = 0
EXIT_FAILED = 1
EXIT_POOL_ERROR = 2


def parse_args(argv: list[str]) -> argparse.Namespace:
    parser = argparse.ArgumentParser(prog="titan-zfs", description="Provision ZFS for the Titan data service and manage its pool")
    parser.add_argument("--config", type=Path, default=DEFAULT_CONFIG_PATH, help="JSON configuration file")
    commands = parser.add_subparsers(dest="command", required=True)

    ensure = commands.add_parser("ensure", help="Make a compatible ZFS usable on this host")
    ensure.add_argument("--version", help="Required ZFS version (default: per kernel family)")

    commands.add_parser("verify", help="Create /dev/zfs if needed and check the ZFS tools work")
    commands.add_parser("unload", help="Unload the ZFS module a previous run installed")

    build_kernel = commands.add_parser("build-kernel", help="Build a replacement kernel with ZFS built in")
    build_kernel.add_argument("--version", help="ZFS version to build in (default: per kernel family)")

    pool = commands.add_parser("pool", help="Pool lifecycle operations")
    pool_commands = pool.add_subparsers(dest="pool_command", required=True)
    for name in ("exists", "update", "destroy", "unmount", "datasets"):
        pool_commands.add_parser(name).add_argument("name")

    create = pool_commands.add_parser("create")
    create.add_argument("name")
    create.add_argument("devices", nargs="+")
    create.add_argument("--mountpoint", type=Path, required=True)
    create.add_argument("--cachefile", type=Path, required=True)

    import_pool = pool_commands.add_parser("import")
    import_pool.add_argument("name")
    import_pool.add_argument("--cachefile", type=Path, required=True)

    return parser.parse_args(argv)


def run_pool_command(ns: argparse.Namespace) -> int:
    manager = PoolLifecycleManager()
    try:
        if ns.pool_command == "exists":
            return EXIT_OK if manager.exists(ns.name) else EXIT_FAILED
        if ns.pool_command == "create":
            manager.create(StoragePool(name=ns.name, devices=ns.devices, mountpoint=ns.mountpoint, cachefile=ns.cachefile))
        elif ns.pool_command == "import":
            manager.import_pool(ns.cachefile, ns.name)
        elif ns.pool_command == "update":
            manager.update(ns.name)
        elif ns.pool_command == "destroy":
            manager.destroy(ns.name)
        elif ns.pool_command == "unmount":
            manager.unmount_all(ns.name)
        elif ns.pool_command == "datasets":
            for dataset in manager.list_datasets(ns.name):
                print(dataset)
    except PoolOperationError as e:
        error(str(e))
        return EXIT_POOL_ERROR
    return EXIT_OK


def build_kernel(config: ProvisionerConfig, version: str | None) -> int:
    identity = get_kernel_registry().identify(KernelIdentity.detect())
    result = KernelBuildDriver(config, identity).build(version or get_zfs_build_version(identity.family))
    return EXIT_OK if result.success else EXIT_FAILED


def main(argv: list[str] | None = None) -> int:
    ns = parse_args(sys.argv[1:] if argv is None else argv)
    config = load_config(ns.config)

    if ns.command == "pool":
        return run_pool_command(ns)
    if ns.command == "build-kernel":
        return build_kernel(config, ns.version)

    provisioner = ModuleProvisioner(config)
    try:
        if ns.command == "ensure":
            result = provisioner.ensure(ns.version)
            print(result.get_summary())
            result.raise_for_failure()
            return EXIT_OK
        if ns.command == "verify":
            return EXIT_OK if provisioner.verify() else EXIT_FAILED
        if ns.command == "unload":
            if provisioner.unload():
                info("ZFS module unloaded")
            return EXIT_OK
    except NoCompatibleModule:
        return EXIT_FAILED
    except SysCallError as e:
        error(f"{ns.command} failed: {e!s}")
        return EXIT_FAILED

    return EXIT_FAILED


if __name__ == "__main__":
    raise SystemExit(main())
