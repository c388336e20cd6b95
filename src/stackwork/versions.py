"""Package versions and version-range predicates.

Versions parse with :class:`packaging.version.Version` but compare by their
release components first, so trailing zeros are significant: ``1.0`` and
``1.0.0`` are different versions and ``1.0 < 1.0.0``. Ranges use the
manifest syntax: ``>=2.0 && <3.0`` (whitespace also conjoins, so
``>=2.0 <3.0`` is the same range), ``||`` for alternatives, ``==1.2.*``
prefix wildcards, ``^>=1.2`` major bounds, and ``-any`` / ``-none``.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Literal

from packaging.version import InvalidVersion, Version

from stackwork.errors import ValidationError

Operator = Literal[">=", ">", "<=", "<", "==", "^>="]

_ATOM = r"(\^>=|>=|<=|==|>|<)\s*([0-9][0-9A-Za-z.+!]*?(?:\.\*)?)(?=\s|$)"
ATOM_PATTERN = re.compile(_ATOM)
CONJUNCTION_PATTERN = re.compile(rf"(?:\s*{_ATOM})+\s*")


def parse_version(text: str | Version) -> Version:
    if isinstance(text, Version):
        return text
    try:
        return Version(text.strip())
    except InvalidVersion as exc:
        raise ValidationError(
            f"Invalid package version `{text}`.",
            hint="Versions are dot-separated numbers such as 1.2.3.",
        ) from exc


def package_identifier(name: str, version: Version | str) -> str:
    return f"{name}-{version}"


def parse_package_identifier(text: str) -> tuple[str, Version]:
    """Split ``name-version`` on the last hyphen."""
    name, sep, version = text.strip().rpartition("-")
    if not sep or not name or not version:
        raise ValidationError(
            f"Invalid package identifier `{text}`.",
            hint="Use the form name-version, for example text-2.0.2.",
        )
    return name, parse_version(version)


@dataclass(frozen=True, slots=True)
class Constraint:
    operator: Operator
    version: Version
    wildcard: bool = False

    def admits(self, version: Version) -> bool:
        key, bound = _ordering_key(version), _ordering_key(self.version)
        if self.operator == ">=":
            return key >= bound
        if self.operator == ">":
            return key > bound
        if self.operator == "<=":
            return key <= bound
        if self.operator == "<":
            return key < bound
        if self.operator == "==":
            if self.wildcard:
                prefix = self.version.release
                return version.release[: len(prefix)] == prefix
            return key == bound
        return bound <= key < _ordering_key(_major_upper_bound(self.version))


@dataclass(frozen=True, slots=True)
class VersionRange:
    """A disjunction of conjunctions of constraints.

    ``alternatives == ((),)`` admits every version; ``()`` admits none.
    """

    text: str
    alternatives: tuple[tuple[Constraint, ...], ...]

    def __str__(self) -> str:
        return self.text

    def contains(self, version: Version | str) -> bool:
        candidate = parse_version(version)
        return any(
            all(constraint.admits(candidate) for constraint in conjunction)
            for conjunction in self.alternatives
        )

    @classmethod
    def any_version(cls) -> VersionRange:
        return cls(text="-any", alternatives=((),))


def parse_range(text: str) -> VersionRange:
    stripped = " ".join(text.split())
    if stripped in ("", "*", "-any"):
        return VersionRange.any_version()
    if stripped == "-none":
        return VersionRange(text="-none", alternatives=())

    alternatives: list[tuple[Constraint, ...]] = []
    for part in stripped.split("||"):
        conjunction = part.replace("&&", " ").strip()
        if not conjunction or not CONJUNCTION_PATTERN.fullmatch(conjunction):
            raise ValidationError(
                f"Invalid version range `{text}`.",
                hint="Use constraints such as `>=1.0 && <2.0`, `==1.2.*` or `^>=1.4`.",
            )
        alternatives.append(
            tuple(_constraint(match) for match in ATOM_PATTERN.finditer(conjunction)),
        )
    return VersionRange(text=stripped, alternatives=tuple(alternatives))


def within_range(version: Version | str, version_range: VersionRange | str) -> bool:
    if isinstance(version_range, str):
        version_range = parse_range(version_range)
    return version_range.contains(version)


def _constraint(match: re.Match[str]) -> Constraint:
    operator, raw_version = match.group(1), match.group(2)
    wildcard = raw_version.endswith(".*")
    if wildcard and operator != "==":
        raise ValidationError(
            f"Wildcard versions are only valid with `==`: `{match.group(0)}`.",
        )
    version = parse_version(raw_version[:-2] if wildcard else raw_version)
    return Constraint(operator=operator, version=version, wildcard=wildcard)  # type: ignore[arg-type]


def _major_upper_bound(version: Version) -> Version:
    release = version.release
    major = release[0]
    minor = release[1] if len(release) > 1 else 0
    return Version(f"{major}.{minor + 1}")


def _ordering_key(version: Version) -> tuple[tuple[int, ...], Version]:
    return version.release, version
