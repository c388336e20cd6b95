"""Typed interfaces for the toolchain-facing collaborators of a build."""

from __future__ import annotations

from collections.abc import Callable, Mapping, Sequence
from dataclasses import dataclass
from pathlib import Path
from typing import Protocol

from packaging.version import Version

from stackwork.models import InstalledPackage, Package, PackageConfig, PackageKind, ResolvedDependency

SnapshotLookup = Callable[[frozenset[str]], Mapping[str, ResolvedDependency]]
"""Pure function from requested names to the snapshot's versions and flags.

Names the snapshot does not carry are simply absent from the result.
"""


class ManifestReader(Protocol):
    def read_package(
        self,
        manifest: Path,
        *,
        kind: PackageKind,
        config: PackageConfig,
    ) -> Package:
        """Parse a package manifest into a :class:`Package`."""


class PackageFetcher(Protocol):
    def unpack(self, identifiers: Sequence[str], destination: Path) -> list[Path]:
        """Download and unpack ``name-version`` identifiers, returning their directories."""


class PackageDatabase(Protocol):
    def global_database(self) -> Path:
        """Return the toolchain's global package database."""

    def installed_versions(self, databases: Sequence[Path]) -> Mapping[str, Version]:
        """Return every package registered in *databases*."""

    def find_package(self, databases: Sequence[Path], name: str) -> InstalledPackage | None:
        """Return the registered entry for *name*, if any."""


class ProcessRunner(Protocol):
    def run(
        self,
        argv: Sequence[str],
        *,
        cwd: Path,
        env: Mapping[str, str],
        log_path: Path,
        label: str,
    ) -> object:
        """Run *argv* to completion, raising on a nonzero exit."""


@dataclass(frozen=True, slots=True)
class Collaborators:
    reader: ManifestReader
    fetcher: PackageFetcher
    package_db: PackageDatabase
    snapshot: SnapshotLookup
