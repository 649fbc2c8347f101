"""
Custom kernel build with ZFS compiled in.

Kernels that cannot load modules at runtime (WSL2) only get ZFS by booting a
replacement kernel that has it built in. KernelBuildDriver produces that
kernel: it fetches matching kernel and OpenZFS sources, grafts ZFS into the
kernel tree, compiles, and publishes the image. Every stage is fatal; a
partially built kernel is never published.

Source trees are cloned on first use and reset and updated afterwards, so an
interrupted build can simply be run again.
"""

from __future__ import annotations

import gzip
import json
import os
import shutil
import threading
import time
from dataclasses import dataclass, field
from pathlib import Path

from archinstall import debug, error, info, warn
from archinstall.lib.exceptions import SysCallError
from archinstall.lib.general import SysCommand

from titan_zfs.config_io import ProvisionerConfig
from titan_zfs.exceptions import BuildFailure, NetworkFailure, TitanZFSError

from .variants import KernelIdentity

KERNEL_CONFIG_OVERRIDES = ["CONFIG_USB_STORAGE=y", "CONFIG_ZFS=y"]
WSL_KCONFIG = "Microsoft/config-wsl"
KERNEL_IMAGE = Path("arch/x86/boot/bzImage")


class BuildProgressReporter:
    """Logs a liveness line every ``interval`` seconds until stopped.

    Use as a context manager around a blocking call; the reporting thread is
    stopped and joined when the block exits, whether it raised or not.
    """

    def __init__(self, message: str, interval: float = 120.0) -> None:
        self.message = message
        self.interval = interval
        self.ticks = 0
        self._stop = threading.Event()
        self._thread: threading.Thread | None = None
        self._started_at = 0.0

    @property
    def is_running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def _report(self) -> None:
        while not self._stop.wait(self.interval):
            self.ticks += 1
            elapsed = time.monotonic() - self._started_at
            info(f"{self.message} still in progress ({elapsed / 60:.1f} min elapsed)")

    def start(self) -> None:
        self._stop.clear()
        self._started_at = time.monotonic()
        self._thread = threading.Thread(target=self._report, name="kernel-build-progress", daemon=True)
        self._thread.start()

    def stop(self) -> None:
        self._stop.set()
        if self._thread is not None:
            self._thread.join()
            self._thread = None

    def __enter__(self) -> BuildProgressReporter:
        self.start()
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.stop()


@dataclass
class KernelBuildResult:
    kernel_release: str
    zfs_version: str
    success: bool = False
    kernel_tag: str | None = None
    image_paths: list[Path] = field(default_factory=list)
    errors: list[str] = field(default_factory=list)

    def add_error(self, error_msg: str) -> None:
        self.errors.append(error_msg)
        debug(f"Kernel build error: {error_msg}")

    def get_summary(self) -> str:
        if not self.success:
            error_summary = "; ".join(self.errors) if self.errors else "Unknown error"
            return f"Kernel build failed for {self.kernel_release}: {error_summary}"
        images = ", ".join(str(p) for p in self.image_paths)
        return f"Built kernel {self.kernel_tag} with ZFS {self.zfs_version}: {images}"


class KernelBuildDriver:
    """Builds a replacement kernel with ZFS statically linked in."""

    def __init__(
        self,
        config: ProvisionerConfig,
        identity: KernelIdentity,
        proc_config: Path = Path("/proc/config.gz"),
    ) -> None:
        self.config = config
        self.identity = identity
        self.proc_config = proc_config
        self.jobs = os.cpu_count() or 1
        self.reporter: BuildProgressReporter | None = None

    @property
    def kernel_dir(self) -> Path:
        return self.config.kernel_dir

    @property
    def zfs_dir(self) -> Path:
        return self.config.zfs_src_dir

    @property
    def image_name(self) -> str:
        return f"bzImage-{self.identity.release}-{self.config.kernel_suffix}"

    def _run(self, stage: str, cmd: str, **kwargs: object) -> str:
        try:
            return SysCommand(cmd, **kwargs).decode()
        except SysCallError as e:
            error(f"{stage} failed on `{cmd}`: {e}")
            raise BuildFailure(stage, str(e)) from e

    def _fetch_json(self, url: str) -> object:
        try:
            return json.loads(SysCommand(f'curl -fsSL -H "Accept: application/vnd.github+json" {url}').decode())
        except SysCallError as e:
            raise NetworkFailure(f"Failed to query {url}: {e}") from e
        except ValueError as e:
            raise NetworkFailure(f"Invalid response from {url}: {e}") from e

    def resolve_kernel_tag(self) -> str:
        """Pick the release tag matching the running kernel, else the latest one."""
        upstream = self.identity.upstream_version
        releases = self._fetch_json(self.config.kernel_releases_url)

        if isinstance(releases, list):
            for release in releases:
                tag = release.get("tag_name", "") if isinstance(release, dict) else ""
                if upstream and upstream in tag:
                    info(f"Using kernel tag {tag} matching {upstream}")
                    return tag

        warn(f"No kernel release matches {upstream}, falling back to the latest release")
        latest = self._fetch_json(f"{self.config.kernel_releases_url}/latest")
        tag = latest.get("tag_name") if isinstance(latest, dict) else None
        if not tag:
            raise NetworkFailure("Latest kernel release has no tag")
        info(f"Using latest kernel tag {tag}")
        return tag

    def _clone_or_update(self, stage: str, repo_url: str, ref: str, directory: Path) -> None:
        if (directory / ".git").is_dir():
            info(f"Updating existing source in {directory} to {ref}")
            self._run(stage, f"git -C {directory} reset --hard")
            self._run(stage, f"git -C {directory} fetch --depth 1 origin tag {ref}")
            self._run(stage, f"git -C {directory} checkout --force {ref}")
            return

        info(f"Cloning {repo_url} at {ref} into {directory}")
        directory.parent.mkdir(parents=True, exist_ok=True)
        self._run(stage, f"git clone --branch {ref} --single-branch --depth 1 {repo_url} {directory}")

    def fetch_kernel_source(self, tag: str) -> None:
        self._clone_or_update("kernel-source", self.config.kernel_repo_url, tag, self.kernel_dir)

    def prepare_kernel(self) -> None:
        """Seed .config from the running kernel and generate build scaffolding."""
        stage = "kernel-prepare"
        try:
            with gzip.open(self.proc_config, "rb") as f:
                (self.kernel_dir / ".config").write_bytes(f.read())
            info(f"Seeded kernel configuration from {self.proc_config}")
        except OSError as e:
            warn(f"Running kernel configuration unavailable ({e}), using defconfig")
            self._run(stage, f"make -C {self.kernel_dir} defconfig")

        self._run(stage, f"make -C {self.kernel_dir} prepare")
        self._run(stage, f"make -C {self.kernel_dir} scripts")

    def fetch_zfs_source(self, zfs_version: str) -> None:
        ref = zfs_version if zfs_version.startswith("zfs-") else f"zfs-{zfs_version}"
        self._clone_or_update("zfs-source", self.config.zfs_repo_url, ref, self.zfs_dir)

    def configure_zfs_builtin(self) -> None:
        """Configure ZFS as a built-in kernel component and install its tools."""
        stage = "zfs-configure"
        cwd = str(self.zfs_dir)
        self._run(stage, "sh autogen.sh", working_directory=cwd)
        self._run(
            stage,
            "./configure --prefix=/ --libdir=/lib --includedir=/usr/include --datarootdir=/usr/share "
            f"--enable-linux-builtin=yes --with-linux={self.kernel_dir} --with-linux-obj={self.kernel_dir}",
            working_directory=cwd,
        )
        self._run(stage, f"./copy-builtin {self.kernel_dir}", working_directory=cwd)
        self._run(stage, f"make -j{self.jobs}", working_directory=cwd, peek_output=True)
        self._run(stage, "make install", working_directory=cwd)

    def _apply_config_overrides(self) -> None:
        kconfig = self.kernel_dir / WSL_KCONFIG
        current = kconfig.read_text().splitlines() if kconfig.exists() else []
        missing = [line for line in KERNEL_CONFIG_OVERRIDES if line not in current]
        if missing:
            kconfig.parent.mkdir(parents=True, exist_ok=True)
            with open(kconfig, "a") as f:
                f.write("".join(f"{line}\n" for line in missing))
            debug(f"Added {missing} to {kconfig}")

    def compile_kernel(self) -> None:
        stage = "kernel-compile"
        try:
            self._apply_config_overrides()
        except OSError as e:
            raise BuildFailure(stage, f"Cannot update kernel configuration: {e}") from e

        env = {"KCONFIG_CONFIG": WSL_KCONFIG}
        for target in ("olddefconfig", "prepare", "scripts"):
            self._run(stage, f"make -C {self.kernel_dir} {target}", environment_vars=env)

        info("Compiling kernel, this may take 30 minutes or more")
        self.reporter = BuildProgressReporter("Kernel build", self.config.progress_interval)
        with self.reporter:
            self._run(
                stage,
                f"make -C {self.kernel_dir} -j{self.jobs} LOCALVERSION=-{self.config.kernel_suffix}",
                environment_vars=env,
                peek_output=True,
            )
        info("Kernel compilation completed")

    def publish_image(self) -> list[Path]:
        """Copy the kernel image to the output directory and any mounted staging directory."""
        image = self.kernel_dir / KERNEL_IMAGE
        if not image.is_file():
            raise BuildFailure("publish", f"Kernel image {image} not found")

        published: list[Path] = []
        try:
            self.config.kernel_output_dir.mkdir(parents=True, exist_ok=True)
            target = self.config.kernel_output_dir / self.image_name
            shutil.copy2(image, target)
            published.append(target)

            for staging in self.config.kernel_staging_dirs:
                if not staging.is_dir():
                    debug(f"Staging directory {staging} not mounted, skipping")
                    continue
                for name in (self.image_name, "bzImage"):
                    shutil.copy2(image, staging / name)
                    published.append(staging / name)
                info(f"Kernel saved to {staging / 'bzImage'}")
        except OSError as e:
            raise BuildFailure("publish", str(e)) from e

        return published

    def build(self, required_version: str) -> KernelBuildResult:
        result = KernelBuildResult(kernel_release=self.identity.release, zfs_version=required_version)
        info(f"Building kernel {self.identity.release} with ZFS {required_version} built in")

        try:
            result.kernel_tag = self.resolve_kernel_tag()
            self.fetch_kernel_source(result.kernel_tag)
            self.prepare_kernel()
            self.fetch_zfs_source(required_version)
            self.configure_zfs_builtin()
            self.compile_kernel()
            result.image_paths = self.publish_image()
        except TitanZFSError as e:
            error(f"Kernel build aborted: {e}")
            result.add_error(str(e))
            return result

        result.success = True
        info(result.get_summary())
        return result
