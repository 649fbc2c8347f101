from __future__ import annotations

import json
from pathlib import Path
from typing import Any

from archinstall import debug, info
from pydantic import BaseModel, Field, field_validator

DEFAULT_CONFIG_PATH = Path("/etc/titan-zfs/config.json")
CONFIG_KEY = "titan_zfs"


class ProvisionerConfig(BaseModel):
    """Locations and endpoints used by module provisioning and kernel builds."""

    # Install marker and module directories
    install_dir: Path = Field(default=Path("/var/lib/titan"))
    system_module_root: Path = Field(default=Path("/"))
    compiled_dir: Path = Field(default=Path("/var/lib/titan/zfs/compiled"))
    precompiled_dir: Path = Field(default=Path("/var/lib/titan/zfs/precompiled"))

    # Precompiled assets
    asset_base_url: str = "https://download.titan-data.io/zfs-releases"
    asset_name_template: str = "zfs-{version}-{release}.tar.gz"

    # Build container
    builder_image: str = "titandata/zfs-builder:latest"
    docker_socket: Path = Field(default=Path("/var/run/docker.sock"))

    # Custom kernel builds
    kernel_releases_url: str = "https://api.github.com/repos/microsoft/WSL2-Linux-Kernel/releases"
    kernel_repo_url: str = "https://github.com/microsoft/WSL2-Linux-Kernel.git"
    zfs_repo_url: str = "https://github.com/openzfs/zfs.git"
    kernel_dir: Path = Field(default=Path("/opt/wsl2-kernel"))
    zfs_src_dir: Path = Field(default=Path("/opt/wsl2-zfs"))
    kernel_output_dir: Path = Field(default=Path("/out"))
    kernel_staging_dirs: list[Path] = Field(default_factory=lambda: [Path("/mnt/c/ZFSonWSL"), Path("/host/ZFSonWSL")])
    kernel_suffix: str = "titan-zfs"
    progress_interval: float = 120.0

    # Leave an incompatible loaded module alone unless asked to remove it
    unload_incompatible: bool = False

    # noinspection PyMethodParameters
    @field_validator(
        "install_dir",
        "system_module_root",
        "compiled_dir",
        "precompiled_dir",
        "docker_socket",
        "kernel_dir",
        "zfs_src_dir",
        "kernel_output_dir",
    )
    def validate_absolute_path(cls, v: Path) -> Path:
        if not v.is_absolute():
            raise ValueError(f"Path {v} must be absolute")
        return v

    @field_validator("kernel_staging_dirs")
    def validate_staging_dirs(cls, v: list[Path]) -> list[Path]:
        for path in v:
            if not path.is_absolute():
                raise ValueError(f"Path {path} must be absolute")
        return v

    @field_validator("progress_interval")
    def validate_interval(cls, v: float) -> float:
        if v <= 0:
            raise ValueError("Progress interval must be positive")
        return v

    @property
    def marker_file(self) -> Path:
        return self.install_dir / "installed_zfs"

    def to_json(self) -> dict[str, Any]:
        return self.model_dump(mode="json")

    @classmethod
    def from_json(cls, data: dict[str, Any]) -> ProvisionerConfig:
        return cls.model_validate(data)


def load_config(config_path: Path = DEFAULT_CONFIG_PATH) -> ProvisionerConfig:
    """Return the configuration stored under the "titan_zfs" key, or defaults."""
    if not config_path.exists():
        debug(f"No configuration at {config_path}, using defaults")
        return ProvisionerConfig()

    data = json.loads(config_path.read_text())
    return ProvisionerConfig.from_json(data.get(CONFIG_KEY, {}))


def save_config(config: ProvisionerConfig, config_path: Path = DEFAULT_CONFIG_PATH) -> None:
    data = json.loads(config_path.read_text()) if config_path.exists() else {}
    data[CONFIG_KEY] = {"schema_version": 1, **config.to_json()}
    config_path.parent.mkdir(parents=True, exist_ok=True)
    config_path.write_text(json.dumps(data, indent=4, sort_keys=True))
    info(f"Saved configuration to {config_path}")
