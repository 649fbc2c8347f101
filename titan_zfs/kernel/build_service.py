"""
Isolated ZFS build service.

The build itself happens inside the zfs-builder container image; this module
only knows the container's contract: the requested version and build mode go
in as environment variables, and the output directory is mounted at /build.
On success the container leaves kernel modules under
``lib/modules/<kernel release>`` in the output directory. A run that produces
no modules is not an error, it means ZFS was compiled into the kernel.
"""

from __future__ import annotations

from pathlib import Path

from archinstall import debug, error, info
from archinstall.lib.exceptions import SysCallError
from archinstall.lib.general import SysCommand

from titan_zfs.exceptions import BuildFailure

CONTAINER_OUTPUT_DIR = "/build"


class ZFSBuildService:
    def __init__(self, image: str = "titandata/zfs-builder:latest", docker_socket: Path = Path("/var/run/docker.sock")) -> None:
        self.image = image
        self.docker_socket = docker_socket

    def build_command(self, version: str, output_dir: Path, build_mode: str = "kernel") -> str:
        ref = version if version.startswith("zfs-") else f"zfs-{version}"
        return (
            f"docker run --rm -v {output_dir}:{CONTAINER_OUTPUT_DIR} "
            f"-v {self.docker_socket}:{self.docker_socket} "
            f"-e ZFS_VERSION={ref} -e ZFS_CONFIG={build_mode} {self.image}"
        )

    def build(self, version: str, output_dir: Path, build_mode: str = "kernel") -> None:
        """Run the build container and block until it exits.

        Raises:
            BuildFailure: If the container exits with an error
        """
        output_dir.mkdir(parents=True, exist_ok=True)
        cmd = self.build_command(version, output_dir, build_mode)
        debug(f"Running ZFS build container: {cmd}")
        try:
            SysCommand(cmd, peek_output=True)
            info(f"ZFS {version} build container finished")
        except SysCallError as e:
            error(f"ZFS build failed: {e}")
            raise BuildFailure("build-service", str(e)) from e
