"""Project build configuration and its JSON file format."""

from __future__ import annotations

import json
import os
from collections.abc import Mapping
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from stackwork.errors import ValidationError
from stackwork.versions import parse_package_identifier

DEFAULT_SETUP_COMMAND = ("runhaskell",)
GRAPH_DATABASE_NAME = ".graph.db"


@dataclass(frozen=True, slots=True)
class BuildConfig:
    project_root: Path
    packages: tuple[Path, ...] = ()
    extra_deps: tuple[str, ...] = ()
    package_flags: Mapping[str, Mapping[str, bool]] = field(default_factory=dict)
    global_flags: Mapping[str, bool] = field(default_factory=dict)
    setup_command: tuple[str, ...] = DEFAULT_SETUP_COMMAND
    extra_env: Mapping[str, str] = field(default_factory=dict)
    jobs: int | None = None
    work_dir: Path | None = None

    @property
    def state_dir(self) -> Path:
        return self.work_dir if self.work_dir is not None else self.project_root / ".stack-work"

    @property
    def deps_install_root(self) -> Path:
        return self.state_dir / "install" / "deps"

    @property
    def local_install_root(self) -> Path:
        return self.state_dir / "install" / "local"

    @property
    def deps_package_db(self) -> Path:
        return self.deps_install_root / "pkgdb"

    @property
    def local_package_db(self) -> Path:
        return self.local_install_root / "pkgdb"

    @property
    def unpack_dir(self) -> Path:
        return self.state_dir / "unpacked"

    @property
    def graph_database_path(self) -> Path:
        return self.state_dir / GRAPH_DATABASE_NAME

    def flags_for(self, name: str) -> dict[str, bool]:
        """Global flags overlaid with the package's own flags."""
        return {**self.global_flags, **self.package_flags.get(name, {})}

    def worker_count(self, requested: int | None = None) -> int:
        return max(1, requested or self.jobs or os.cpu_count() or 1)


def parse_build_config(raw: str, *, project_root: str | Path) -> BuildConfig:
    try:
        payload = json.loads(raw)
    except json.JSONDecodeError as exc:
        raise ValidationError("Invalid build config JSON.", hint=str(exc)) from exc
    if not isinstance(payload, dict):
        raise ValidationError("Invalid build config payload type.")

    root = Path(project_root)
    packages = tuple(_resolve(root, item) for item in _optional_str_list(payload, "packages", ["."]))
    extra_deps = tuple(_optional_str_list(payload, "extra_deps", []))
    for identifier in extra_deps:
        parse_package_identifier(identifier)
    setup_command = tuple(
        _optional_str_list(payload, "setup_command", list(DEFAULT_SETUP_COMMAND)),
    )
    if not setup_command:
        raise ValidationError("Invalid build config `setup_command` value.")

    work_dir_raw = payload.get("work_dir")
    if work_dir_raw is not None and (not isinstance(work_dir_raw, str) or not work_dir_raw):
        raise ValidationError("Invalid build config `work_dir` value.")

    return BuildConfig(
        project_root=root,
        packages=packages,
        extra_deps=extra_deps,
        package_flags=_package_flags(payload, "flags"),
        global_flags=_flag_map(payload.get("global_flags", {}), key="global_flags"),
        setup_command=setup_command,
        extra_env=_str_map(payload, "env"),
        jobs=_optional_positive_int(payload, "jobs"),
        work_dir=_resolve(root, work_dir_raw) if work_dir_raw else None,
    )


def load_build_config(path: str | Path) -> BuildConfig:
    config_path = Path(path)
    try:
        raw = config_path.read_text(encoding="utf-8")
    except FileNotFoundError as exc:
        raise ValidationError(
            "Build config does not exist.",
            hint="Create a project file listing the package directories.",
            context={"path": str(config_path)},
        ) from exc
    return parse_build_config(raw, project_root=config_path.resolve().parent)


def serialize_build_config(config: BuildConfig) -> str:
    root = config.project_root
    payload: dict[str, Any] = {
        "packages": [_relative(root, package) for package in config.packages],
        "extra_deps": list(config.extra_deps),
        "flags": {name: dict(flags) for name, flags in config.package_flags.items()},
        "global_flags": dict(config.global_flags),
        "setup_command": list(config.setup_command),
        "env": dict(config.extra_env),
    }
    if config.jobs is not None:
        payload["jobs"] = config.jobs
    if config.work_dir is not None:
        payload["work_dir"] = _relative(root, config.work_dir)
    return json.dumps(payload, indent=2, sort_keys=True) + "\n"


def _resolve(root: Path, item: str) -> Path:
    path = Path(item)
    return path if path.is_absolute() else (root / path).resolve()


def _relative(root: Path, path: Path) -> str:
    try:
        return str(path.relative_to(root.resolve())) or "."
    except ValueError:
        return str(path)


def _optional_str_list(payload: dict[str, Any], key: str, default: list[str]) -> list[str]:
    value = payload.get(key, default)
    if not isinstance(value, list) or not all(isinstance(item, str) and item for item in value):
        raise ValidationError(f"Invalid build config `{key}` value.")
    return list(value)


def _optional_positive_int(payload: dict[str, Any], key: str) -> int | None:
    value = payload.get(key)
    if value is None:
        return None
    if isinstance(value, bool) or not isinstance(value, int) or value < 1:
        raise ValidationError(f"Invalid build config `{key}` value.")
    return value


def _str_map(payload: dict[str, Any], key: str) -> dict[str, str]:
    value = payload.get(key, {})
    if not isinstance(value, dict) or not all(
        isinstance(k, str) and isinstance(v, str) for k, v in value.items()
    ):
        raise ValidationError(f"Invalid build config `{key}` value.")
    return dict(value)


def _flag_map(value: Any, *, key: str) -> dict[str, bool]:
    if not isinstance(value, dict) or not all(
        isinstance(k, str) and isinstance(v, bool) for k, v in value.items()
    ):
        raise ValidationError(f"Invalid build config `{key}` value.")
    return dict(value)


def _package_flags(payload: dict[str, Any], key: str) -> dict[str, dict[str, bool]]:
    value = payload.get(key, {})
    if not isinstance(value, dict):
        raise ValidationError(f"Invalid build config `{key}` value.")
    return {
        str(name): _flag_map(flags, key=f"{key}.{name}") for name, flags in value.items()
    }
