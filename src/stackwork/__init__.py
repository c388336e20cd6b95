"""Public package entrypoint for the stackwork build orchestrator."""

from .build import BuildOutcome, build, clean
from .collaborators import Collaborators, ManifestReader, PackageDatabase, PackageFetcher, ProcessRunner
from .config import BuildConfig, load_build_config
from .errors import (
    DependencyConflictError,
    GenConfigError,
    InstalledIdentityMissingError,
    ProcessFailedError,
    StackworkError,
    TaskGraphError,
    ValidationError,
)
from .models import (
    BuildOpts,
    FinalAction,
    GenConfig,
    InstalledPackage,
    Package,
    PackageConfig,
    PackageKind,
    ResolvedDependency,
)
from .observability import StructuredLogger
from .versions import VersionRange, parse_range, within_range

__all__ = [
    "BuildConfig",
    "BuildOpts",
    "BuildOutcome",
    "Collaborators",
    "DependencyConflictError",
    "FinalAction",
    "GenConfig",
    "GenConfigError",
    "InstalledIdentityMissingError",
    "InstalledPackage",
    "ManifestReader",
    "Package",
    "PackageConfig",
    "PackageDatabase",
    "PackageFetcher",
    "PackageKind",
    "ProcessFailedError",
    "ProcessRunner",
    "ResolvedDependency",
    "StackworkError",
    "StructuredLogger",
    "TaskGraphError",
    "ValidationError",
    "VersionRange",
    "build",
    "clean",
    "load_build_config",
    "parse_range",
    "within_range",
]
