"""Core typed dataclasses for packages, build options and build records."""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass, field
from enum import StrEnum
from pathlib import Path

from packaging.version import Version

from stackwork.versions import VersionRange, package_identifier


class PackageKind(StrEnum):
    USER_LOCAL = "user_local"
    DEPENDENCY = "dependency"


class FinalAction(StrEnum):
    """Optional step run after ``build`` for wanted local packages."""

    NONE = "none"
    TESTS = "tests"
    HADDOCK = "haddock"
    BENCHMARKS = "benchmarks"


class BuildType(StrEnum):
    """Which package databases and install root a plan targets."""

    DEPS = "deps"
    LOCALS = "locals"


class PackageState(StrEnum):
    UNCONFIGURED = "unconfigured"
    CONFIGURED = "configured"
    BUILT = "built"


@dataclass(frozen=True, slots=True)
class Package:
    name: str
    version: Version
    directory: Path
    manifest: Path
    kind: PackageKind = PackageKind.USER_LOCAL
    dependencies: Mapping[str, VersionRange] = field(default_factory=dict)
    flags: Mapping[str, bool] = field(default_factory=dict)
    files: frozenset[Path] = frozenset()
    has_library: bool = True

    @property
    def identifier(self) -> str:
        return package_identifier(self.name, self.version)

    @property
    def is_dependency(self) -> bool:
        return self.kind == PackageKind.DEPENDENCY


@dataclass(frozen=True, slots=True)
class PackageConfig:
    """Settings the manifest reader applies when loading a package."""

    enable_tests: bool = False
    enable_benchmarks: bool = False
    flags: Mapping[str, bool] = field(default_factory=dict)


@dataclass(frozen=True, slots=True)
class ResolvedDependency:
    version: Version
    flags: Mapping[str, bool] = field(default_factory=dict)


@dataclass(frozen=True, slots=True)
class InstalledPackage:
    """A package database entry."""

    name: str
    version: Version
    package_id: str

    @property
    def identifier(self) -> str:
        return package_identifier(self.name, self.version)


@dataclass(frozen=True, slots=True)
class BuildOpts:
    targets: tuple[str, ...] = ()
    final_action: FinalAction = FinalAction.NONE
    enable_optimizations: bool | None = None
    lib_profile: bool = False
    exe_profile: bool = False
    ghc_options: tuple[str, ...] = ()
    dry_run: bool = False
    jobs: int | None = None


@dataclass(frozen=True, slots=True)
class GenConfig:
    """Configuration that produced the artifacts currently on disk."""

    optimize: bool = False
    force_recomp: bool = False
    lib_profiling: bool = False
    exe_profiling: bool = False
    ghc_options: tuple[str, ...] = ()
    flags: Mapping[str, bool] = field(default_factory=dict)
    pkg_id: str | None = None


DEFAULT_GENCONFIG = GenConfig()
