"""Locked, crash-safe persistence of per-package GenConfig records."""

from __future__ import annotations

import threading
import warnings
from collections.abc import Mapping
from dataclasses import dataclass, field, replace
from pathlib import Path

from stackwork.cache.genconfig import (
    default_config,
    is_changed,
    is_invalidated,
    merge_config,
    parse_genconfig,
    serialize_genconfig,
)
from stackwork.errors import GenConfigError
from stackwork.fsutil import atomic_write_text
from stackwork.layout import PackageLayout, remove_marker, touch_marker
from stackwork.models import BuildOpts, GenConfig, Package
from stackwork.observability import StructuredLogger


class GenConfigWarning(UserWarning):
    """Warning raised when a stored GenConfig cannot be decoded."""


@dataclass(slots=True)
class GenConfigStore:
    """Reads and writes GenConfig files while holding the run's config lock.

    The lock is owned by the caller and shared by every store of a run.
    """

    lock: threading.Lock
    logger: StructuredLogger = field(default_factory=StructuredLogger)
    _warned: set[Path] = field(default_factory=set, init=False, repr=False)

    def read(
        self,
        package: Package,
        opts: BuildOpts,
        installed_ids: Mapping[str, str],
        *,
        wanted: bool = False,
    ) -> GenConfig:
        """Return the record to build *package* with, refreshing it if needed.

        Never raises for a missing or corrupt record; both fall back to a
        fresh record and a full rebuild.
        """
        with self.lock:
            return self._read_locked(package, opts, installed_ids, wanted=wanted)

    def write(self, directory: Path, config: GenConfig) -> Path:
        with self.lock:
            return self._write_locked(directory, config)

    def _read_locked(
        self,
        package: Package,
        opts: BuildOpts,
        installed_ids: Mapping[str, str],
        *,
        wanted: bool,
    ) -> GenConfig:
        layout = PackageLayout(package.directory)
        installed_id = installed_ids.get(package.name)
        stored = self._load(package, layout.genconfig_path)

        if stored is None:
            delete_markers(package.directory)
            config = default_config(opts, package, installed_id)
            self._write_locked(package.directory, config)
            return config

        if not is_changed(installed_ids, opts, stored, package):
            return stored

        invalidated = is_invalidated(installed_ids, opts, stored, package)
        if invalidated:
            delete_markers(package.directory)
        elif wanted:
            remove_marker(layout.configured_marker)
        config = replace(
            merge_config(stored, opts, package, installed_id),
            force_recomp=invalidated or stored.force_recomp,
        )
        self._write_locked(package.directory, config)
        self.logger.log(
            operation="genconfig_update",
            package=package.name,
            stage=None,
            message="Stored build configuration updated.",
            extra={"invalidated": invalidated},
        )
        return config

    def _load(self, package: Package, path: Path) -> GenConfig | None:
        try:
            raw = path.read_bytes()
        except FileNotFoundError:
            return None
        except OSError as exc:
            self._warn_unreadable(package, path, str(exc))
            return None
        try:
            return parse_genconfig(raw)
        except GenConfigError as exc:
            self._warn_unreadable(package, path, str(exc).splitlines()[0])
            return None

    def _warn_unreadable(self, package: Package, path: Path, reason: str) -> None:
        if path in self._warned:
            return
        self._warned.add(path)
        warnings.warn(
            (
                f"Couldn't parse config file for {package.name}, migrating to latest "
                "configuration format. This will force a rebuild."
            ),
            GenConfigWarning,
            stacklevel=4,
        )
        self.logger.log(
            operation="genconfig_unreadable",
            package=package.name,
            stage=None,
            message="Stored build configuration is unreadable; rebuilding from defaults.",
            level="warning",
            extra={"path": str(path), "reason": reason},
        )

    def _write_locked(self, directory: Path, config: GenConfig) -> Path:
        path = PackageLayout(directory).genconfig_path
        return atomic_write_text(path, serialize_genconfig(config))


def delete_markers(directory: Path) -> None:
    """Force both reconfiguration and rebuild of the package in *directory*."""
    layout = PackageLayout(directory)
    remove_marker(layout.built_marker)
    remove_marker(layout.configured_marker)


def delete_configured_marker(directory: Path) -> None:
    remove_marker(PackageLayout(directory).configured_marker)


def delete_genconfig(directory: Path) -> None:
    remove_marker(PackageLayout(directory).genconfig_path)


def touch_configured_marker(directory: Path) -> None:
    touch_marker(PackageLayout(directory).configured_marker)


def touch_built_marker(directory: Path) -> None:
    touch_marker(PackageLayout(directory).built_marker)
