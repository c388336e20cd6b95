"""Dependency-range resolution APIs."""

from .ranges import (
    Conflict,
    MismatchedDependency,
    MismatchedLocalDep,
    MissingDependency,
    resolve_against_snapshot,
    resolve_ranges,
)

__all__ = [
    "Conflict",
    "MismatchedDependency",
    "MismatchedLocalDep",
    "MissingDependency",
    "resolve_against_snapshot",
    "resolve_ranges",
]
