"""GenConfig record serialization and the rebuild policy around it.

Two predicates compare the stored record with the current request:

``is_invalidated``
    the artifacts on disk cannot be reused; the package must recompile.
``is_changed``
    the stored record must be rewritten. Dependency packages ignore
    optimization, profiling and extra-option changes here, so a top-level
    request for ``-O2`` does not rebuild dependencies the user never asked
    to touch. Only flag and installed-id changes count for them.
"""

from __future__ import annotations

import json
from collections.abc import Mapping
from dataclasses import replace
from typing import Any

from stackwork.errors import GenConfigError
from stackwork.models import DEFAULT_GENCONFIG, BuildOpts, GenConfig, Package

_BOOL_FIELDS = ("optimize", "force_recomp", "lib_profiling", "exe_profiling")


def installed_id_changed(
    installed_ids: Mapping[str, str],
    stored: GenConfig,
    package: Package,
) -> bool:
    return stored.pkg_id != installed_ids.get(package.name)


def flags_changed(stored: GenConfig, package: Package) -> bool:
    return dict(package.flags) != dict(stored.flags)


def ghc_options_changed(opts: BuildOpts, stored: GenConfig) -> bool:
    return tuple(opts.ghc_options) != tuple(stored.ghc_options)


def profiling_requested(opts: BuildOpts, stored: GenConfig) -> bool:
    return (opts.lib_profile and not stored.lib_profiling) or (
        opts.exe_profile and not stored.exe_profiling
    )


def is_invalidated(
    installed_ids: Mapping[str, str],
    opts: BuildOpts,
    stored: GenConfig,
    package: Package,
) -> bool:
    optimizations_enabled = opts.enable_optimizations is True and not stored.optimize
    return any(
        (
            installed_id_changed(installed_ids, stored, package),
            optimizations_enabled,
            profiling_requested(opts, stored),
            ghc_options_changed(opts, stored),
            flags_changed(stored, package),
        ),
    )


def is_changed(
    installed_ids: Mapping[str, str],
    opts: BuildOpts,
    stored: GenConfig,
    package: Package,
) -> bool:
    counts_build_options = not package.is_dependency
    optimizations_differ = (
        opts.enable_optimizations is not None and opts.enable_optimizations != stored.optimize
    )
    return any(
        (
            installed_id_changed(installed_ids, stored, package),
            optimizations_differ and counts_build_options,
            profiling_requested(opts, stored) and counts_build_options,
            ghc_options_changed(opts, stored) and counts_build_options,
            flags_changed(stored, package),
        ),
    )


def merge_config(
    previous: GenConfig,
    opts: BuildOpts,
    package: Package,
    installed_id: str | None,
) -> GenConfig:
    """Overlay the current request on *previous*.

    Profiling only ever turns on. ``pkg_id`` follows the package database so
    a record never names an installation that is no longer registered.
    """
    return GenConfig(
        optimize=(
            previous.optimize if opts.enable_optimizations is None else opts.enable_optimizations
        ),
        force_recomp=False,
        lib_profiling=opts.lib_profile or previous.lib_profiling,
        exe_profiling=opts.exe_profile or previous.exe_profiling,
        ghc_options=tuple(opts.ghc_options),
        flags=dict(package.flags),
        pkg_id=installed_id,
    )


def default_config(opts: BuildOpts, package: Package, installed_id: str | None) -> GenConfig:
    return merge_config(DEFAULT_GENCONFIG, opts, package, installed_id)


def completed_config(config: GenConfig, pkg_id: str | None) -> GenConfig:
    """Record after a successful install: nothing left to force."""
    return replace(config, force_recomp=False, pkg_id=pkg_id)


def serialize_genconfig(config: GenConfig) -> str:
    payload = {
        "optimize": config.optimize,
        "force_recomp": config.force_recomp,
        "lib_profiling": config.lib_profiling,
        "exe_profiling": config.exe_profiling,
        "ghc_options": list(config.ghc_options),
        "flags": dict(sorted(config.flags.items())),
        "pkg_id": config.pkg_id,
    }
    return json.dumps(payload, indent=2, sort_keys=True) + "\n"


def parse_genconfig(raw: str | bytes) -> GenConfig:
    try:
        payload = json.loads(raw)
    except (json.JSONDecodeError, UnicodeDecodeError) as exc:
        raise GenConfigError("Invalid GenConfig JSON.", hint=str(exc)) from exc
    if not isinstance(payload, dict):
        raise GenConfigError("Invalid GenConfig payload type.")

    values = {key: _required_bool(payload, key) for key in _BOOL_FIELDS}
    ghc_options = payload.get("ghc_options")
    if not isinstance(ghc_options, list) or not all(isinstance(item, str) for item in ghc_options):
        raise GenConfigError("Invalid GenConfig `ghc_options` value.")
    flags = payload.get("flags")
    if not isinstance(flags, dict) or not all(
        isinstance(k, str) and isinstance(v, bool) for k, v in flags.items()
    ):
        raise GenConfigError("Invalid GenConfig `flags` value.")
    pkg_id = payload.get("pkg_id")
    if pkg_id is not None and (not isinstance(pkg_id, str) or not pkg_id):
        raise GenConfigError("Invalid GenConfig `pkg_id` value.")
    return GenConfig(
        ghc_options=tuple(ghc_options),
        flags=dict(flags),
        pkg_id=pkg_id,
        **values,
    )


def _required_bool(payload: dict[str, Any], key: str) -> bool:
    value = payload.get(key)
    if not isinstance(value, bool):
        raise GenConfigError(f"Invalid GenConfig `{key}` value.")
    return value
