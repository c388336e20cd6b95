"""On-disk layout of a package's build state.

Everything lives under ``<package>/.stack-work``::

    build/genconfig.json   stored GenConfig record
    build/configured       marker touched after a successful configure
    build/built            marker touched after a successful install
    build/build.log        append-only output of every external command
    dist/                  toolchain build products and docs
"""

from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path

from stackwork.models import PackageState

WORK_DIR_NAME = ".stack-work"


@dataclass(frozen=True, slots=True)
class PackageLayout:
    directory: Path

    @property
    def work_dir(self) -> Path:
        return self.directory / WORK_DIR_NAME

    @property
    def build_dir(self) -> Path:
        return self.work_dir / "build"

    @property
    def dist_dir(self) -> Path:
        return self.work_dir / "dist"

    @property
    def genconfig_path(self) -> Path:
        return self.build_dir / "genconfig.json"

    @property
    def configured_marker(self) -> Path:
        return self.build_dir / "configured"

    @property
    def built_marker(self) -> Path:
        return self.build_dir / "built"

    @property
    def log_path(self) -> Path:
        return self.build_dir / "build.log"


def package_state(directory: Path) -> PackageState:
    layout = PackageLayout(directory)
    if not layout.configured_marker.exists():
        return PackageState.UNCONFIGURED
    if not layout.built_marker.exists():
        return PackageState.CONFIGURED
    return PackageState.BUILT


def touch_marker(path: Path) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_bytes(b"")


def remove_marker(path: Path) -> bool:
    try:
        path.unlink()
    except FileNotFoundError:
        return False
    return True
