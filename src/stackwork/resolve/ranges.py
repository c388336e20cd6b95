"""Version-range checks across local packages and the resolved snapshot.

Ranges are kept as ``{dependency: {user: range}}`` so every conflict can
name the package that declared the offending range. Conflicts are always
collected in full before failing.
"""

from __future__ import annotations

from collections.abc import Iterable, Mapping, Sequence
from dataclasses import dataclass

from packaging.version import Version

from stackwork.collaborators import SnapshotLookup
from stackwork.errors import DependencyConflictError, ValidationError
from stackwork.models import Package, ResolvedDependency
from stackwork.versions import VersionRange, within_range

DependencyRanges = dict[str, dict[str, VersionRange]]


@dataclass(frozen=True, slots=True)
class MismatchedLocalDep:
    """A local package's own version is outside a range another local declares."""

    dependency: str
    version: Version
    user: str
    range: VersionRange

    def describe(self) -> str:
        return (
            f"Local package {self.dependency}-{self.version} does not satisfy "
            f"{self.user}'s requirement {self.dependency} {self.range}"
        )


@dataclass(frozen=True, slots=True)
class MissingDependency:
    user: str
    dependency: str
    range: VersionRange

    def describe(self) -> str:
        return (
            f"{self.user} depends on {self.dependency} {self.range}, "
            "which is not available in the snapshot"
        )


@dataclass(frozen=True, slots=True)
class MismatchedDependency:
    dependency: str
    version: Version
    user: str
    range: VersionRange

    def describe(self) -> str:
        return (
            f"{self.user} depends on {self.dependency} {self.range}, "
            f"but the snapshot provides {self.dependency}-{self.version}"
        )


Conflict = MismatchedLocalDep | MissingDependency | MismatchedDependency


def check_unique_names(locals_: Iterable[Package]) -> None:
    seen: dict[str, Package] = {}
    for package in locals_:
        previous = seen.setdefault(package.name, package)
        if previous is not package:
            raise ValidationError(
                f"Package `{package.name}` is provided by more than one local directory.",
                hint="Remove one of the directories from the project packages.",
                context={
                    "first": str(previous.directory),
                    "second": str(package.directory),
                },
            )


def collect_ranges(locals_: Iterable[Package]) -> DependencyRanges:
    ranges: DependencyRanges = {}
    for package in locals_:
        for dependency, version_range in package.dependencies.items():
            ranges.setdefault(dependency, {})[package.name] = version_range
    return ranges


def local_conflicts(package: Package, users: Mapping[str, VersionRange]) -> list[Conflict]:
    return [
        MismatchedLocalDep(
            dependency=package.name,
            version=package.version,
            user=user,
            range=version_range,
        )
        for user, version_range in sorted(users.items())
        if not within_range(package.version, version_range)
    ]


def resolve_ranges(locals_: Sequence[Package]) -> DependencyRanges:
    """Return the ranges left for external resolution.

    Names provided by a local package are checked against that package's
    version and always removed, whether or not they matched.
    """
    check_unique_names(locals_)
    ranges = collect_ranges(locals_)
    conflicts: list[Conflict] = []
    for package in locals_:
        conflicts.extend(local_conflicts(package, ranges.pop(package.name, {})))
    if conflicts:
        raise DependencyConflictError(conflicts)
    return ranges


def resolve_against_snapshot(
    ranges: Mapping[str, Mapping[str, VersionRange]],
    snapshot: SnapshotLookup,
    *,
    exclude: Iterable[str] = (),
) -> dict[str, ResolvedDependency]:
    """Pick snapshot versions for *ranges* and check every declared range.

    Names in *exclude* (the local packages) are never requested and are
    dropped from the snapshot's answer.
    """
    excluded = frozenset(exclude)
    requested = frozenset(ranges) - excluded
    resolved = {
        name: dependency
        for name, dependency in snapshot(requested).items()
        if name not in excluded
    }

    conflicts: list[Conflict] = []
    for dependency, users in sorted(ranges.items()):
        chosen = resolved.get(dependency)
        for user, version_range in sorted(users.items()):
            if chosen is None:
                conflicts.append(
                    MissingDependency(user=user, dependency=dependency, range=version_range),
                )
            elif not within_range(chosen.version, version_range):
                conflicts.append(
                    MismatchedDependency(
                        dependency=dependency,
                        version=chosen.version,
                        user=user,
                        range=version_range,
                    ),
                )
    if conflicts:
        raise DependencyConflictError(conflicts)
    return resolved
