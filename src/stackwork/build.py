"""Build orchestration: locate packages, resolve ranges, install and build.

``build`` runs the whole pipeline for a project:

1. determine the local packages (project directories plus unpacked extra
   dependencies);
2. check every declared range against the local packages and the snapshot;
3. install the snapshot dependencies missing from the dependency database;
4. configure, build and install the local packages through the task graph.

Resolution problems abort the run before anything is executed.
"""

from __future__ import annotations

import shutil
import tempfile
import threading
from collections.abc import Mapping, Sequence
from dataclasses import dataclass, field, replace
from pathlib import Path

from stackwork.cache.store import GenConfigStore, delete_configured_marker, delete_genconfig, delete_markers
from stackwork.collaborators import Collaborators, ProcessRunner
from stackwork.config import GRAPH_DATABASE_NAME, BuildConfig
from stackwork.errors import ValidationError
from stackwork.graph.database import GraphDatabase
from stackwork.graph.scheduler import GraphRunResult, TaskGraph
from stackwork.layout import PackageLayout
from stackwork.models import (
    BuildOpts,
    BuildType,
    FinalAction,
    GenConfig,
    Package,
    PackageConfig,
    PackageKind,
    ResolvedDependency,
)
from stackwork.observability import StructuredLogger
from stackwork.plan import PlanContext, build_key, make_plan
from stackwork.process import ProcessSupervisor
from stackwork.resolve.ranges import DependencyRanges, resolve_against_snapshot, resolve_ranges
from stackwork.versions import package_identifier

MANIFEST_SUFFIX = ".cabal"
DEPENDENCY_GENCONFIG = GenConfig(lib_profiling=True)


@dataclass(frozen=True, slots=True)
class BuildOutcome:
    locals: tuple[Package, ...]
    dependencies: Mapping[str, ResolvedDependency]
    installed_dependencies: tuple[str, ...] = ()
    planned: tuple[str, ...] = ()
    dependency_result: GraphRunResult | None = None
    local_result: GraphRunResult | None = None
    dry_run: bool = False


@dataclass(slots=True)
class _RunState:
    """Resources shared by every plan of one ``build`` call."""

    config: BuildConfig
    collaborators: Collaborators
    runner: ProcessRunner
    logger: StructuredLogger
    config_lock: threading.Lock = field(default_factory=threading.Lock)
    install_resource: threading.BoundedSemaphore = field(
        default_factory=lambda: threading.BoundedSemaphore(1),
    )
    cabal_identifier: str | None = None

    def store(self) -> GenConfigStore:
        return GenConfigStore(self.config_lock, self.logger)

    def context(self, opts: BuildOpts, build_type: BuildType, store: GenConfigStore) -> PlanContext:
        return PlanContext(
            config=self.config,
            opts=opts,
            build_type=build_type,
            runner=self.runner,
            package_db=self.collaborators.package_db,
            store=store,
            install_resource=self.install_resource,
            logger=self.logger,
            cabal_identifier=self.cabal_identifier,
        )


def find_manifest(directory: Path) -> Path:
    """Return the single package manifest in *directory*."""
    manifests = sorted(
        path for path in directory.glob(f"*{MANIFEST_SUFFIX}") if path.is_file()
    )
    if len(manifests) != 1:
        raise ValidationError(
            "Expected exactly one package manifest in the package directory.",
            hint=f"Keep a single `*{MANIFEST_SUFFIX}` file in each package directory.",
            context={
                "directory": str(directory),
                "found": ", ".join(path.name for path in manifests),
            },
        )
    return manifests[0]


def package_config_for(opts: BuildOpts, flags: Mapping[str, bool], kind: PackageKind) -> PackageConfig:
    if kind == PackageKind.DEPENDENCY:
        return PackageConfig(flags=dict(flags))
    return PackageConfig(
        enable_tests=opts.final_action == FinalAction.TESTS,
        enable_benchmarks=opts.final_action == FinalAction.BENCHMARKS,
        flags=dict(flags),
    )


def determine_locals(
    opts: BuildOpts,
    *,
    config: BuildConfig,
    collaborators: Collaborators,
    logger: StructuredLogger | None = None,
) -> list[Package]:
    """Read every project package, plus the extra dependencies built from source."""
    log = logger or StructuredLogger()
    reader = collaborators.reader
    packages: list[Package] = []
    for directory in config.packages:
        manifest = find_manifest(directory)
        packages.append(
            reader.read_package(
                manifest,
                kind=PackageKind.USER_LOCAL,
                config=package_config_for(opts, config.flags_for(manifest.stem), PackageKind.USER_LOCAL),
            ),
        )

    if config.extra_deps:
        unpack_dir = config.unpack_dir
        unpack_dir.mkdir(parents=True, exist_ok=True)
        present = [unpack_dir / ident for ident in config.extra_deps if (unpack_dir / ident).is_dir()]
        missing = [ident for ident in config.extra_deps if not (unpack_dir / ident).is_dir()]
        if missing:
            log.log(
                operation="unpack_extra_deps",
                package=None,
                stage=None,
                message=f"Unpacking extra dependencies: {', '.join(missing)}",
            )
            present.extend(collaborators.fetcher.unpack(missing, unpack_dir))
        for directory in present:
            manifest = find_manifest(directory)
            packages.append(
                reader.read_package(
                    manifest,
                    kind=PackageKind.DEPENDENCY,
                    config=package_config_for(
                        opts,
                        config.flags_for(manifest.stem),
                        PackageKind.DEPENDENCY,
                    ),
                ),
            )
    return packages


def get_dependency_ranges(locals_: Sequence[Package]) -> DependencyRanges:
    return resolve_ranges(locals_)


def get_dependencies(
    locals_: Sequence[Package],
    ranges: DependencyRanges,
    *,
    collaborators: Collaborators,
) -> dict[str, ResolvedDependency]:
    return resolve_against_snapshot(
        ranges,
        collaborators.snapshot,
        exclude=(package.name for package in locals_),
    )


def install_dependencies(
    opts: BuildOpts,
    dependencies: Mapping[str, ResolvedDependency],
    *,
    state: _RunState,
) -> tuple[tuple[str, ...], GraphRunResult | None]:
    """Build and install every dependency missing from the dependency database.

    Returns the identifiers that needed installing and the graph result
    (``None`` when nothing ran).
    """
    config = state.config
    collaborators = state.collaborators
    logger = state.logger
    installed = collaborators.package_db.installed_versions([config.deps_package_db])
    to_install = tuple(
        sorted(
            package_identifier(name, dependency.version)
            for name, dependency in dependencies.items()
            if installed.get(name) != dependency.version
        ),
    )
    if not to_install:
        logger.log(
            operation="install_dependencies",
            package=None,
            stage=None,
            message="All dependencies are already installed",
            level="debug",
        )
        return (), None

    logger.log(
        operation="install_dependencies",
        package=None,
        stage=None,
        message=f"Installing dependencies: {', '.join(to_install)}",
    )
    if opts.dry_run:
        logger.log(
            operation="dry_run",
            package=None,
            stage=None,
            message="Dry run, not doing anything with dependencies",
        )
        return to_install, None

    dependency_opts = BuildOpts(jobs=opts.jobs)
    store = state.store()
    ctx = state.context(dependency_opts, BuildType.DEPS, store)
    with tempfile.TemporaryDirectory(prefix="stackwork-unpack") as unpack_root:
        directories = collaborators.fetcher.unpack(list(to_install), Path(unpack_root))
        logger.log(
            operation="install_dependencies",
            package=None,
            stage=None,
            message="All dependencies unpacked",
        )
        packages: list[Package] = []
        for directory in directories:
            manifest = find_manifest(directory)
            resolved = dependencies.get(manifest.stem)
            flags = resolved.flags if resolved is not None else {}
            packages.append(
                collaborators.reader.read_package(
                    manifest,
                    kind=PackageKind.DEPENDENCY,
                    config=package_config_for(dependency_opts, flags, PackageKind.DEPENDENCY),
                ),
            )
        by_name = {package.name: package for package in packages}
        graph = TaskGraph(logger=logger)
        for package in packages:
            genconfig = replace(DEPENDENCY_GENCONFIG, flags=dict(package.flags))
            for node in make_plan(ctx, package, genconfig=genconfig, wanted=True, packages=by_name):
                graph.add(node)
        result = graph.run(
            [build_key(package) for package in packages],
            jobs=config.worker_count(opts.jobs),
        )
    result.raise_for_failures()
    return to_install, result


def is_wanted(package: Package, opts: BuildOpts, cwd: Path) -> bool:
    if opts.targets:
        return package.name in opts.targets
    directory = package.directory.resolve()
    current = cwd.resolve()
    return directory == current or current in directory.parents


def build_locals(
    opts: BuildOpts,
    locals_: Sequence[Package],
    *,
    state: _RunState,
    cwd: Path,
) -> tuple[tuple[str, ...], GraphRunResult | None]:
    """Configure, build and install the local packages.

    Returns the identifiers of the planned packages and the graph result
    (``None`` for a dry run). A dry run only lists the packages; stored
    configs and markers are left untouched.
    """
    config = state.config
    logger = state.logger
    planned = tuple(package.identifier for package in locals_)
    if opts.dry_run:
        logger.log(
            operation="dry_run",
            package=None,
            stage=None,
            message="The following packages will be built and installed:",
            extra={"packages": list(planned)},
        )
        return planned, None

    package_db = state.collaborators.package_db
    installed_ids: dict[str, str] = {}
    for package in locals_:
        entry = package_db.find_package([config.local_package_db], package.name)
        if entry is not None:
            installed_ids[package.name] = entry.package_id

    store = state.store()
    ctx = state.context(opts, BuildType.LOCALS, store)
    by_name = {package.name: package for package in locals_}
    graph = TaskGraph(database=GraphDatabase.load(config.graph_database_path), logger=logger)
    wanted_keys = []
    for package in locals_:
        wanted = is_wanted(package, opts, cwd)
        if wanted:
            wanted_keys.append(build_key(package))
            if opts.final_action != FinalAction.NONE:
                delete_configured_marker(package.directory)
        genconfig = store.read(package, opts, installed_ids, wanted=wanted)
        for node in make_plan(ctx, package, genconfig=genconfig, wanted=wanted, packages=by_name):
            graph.add(node)

    result = graph.run(wanted_keys, jobs=config.worker_count(opts.jobs))
    result.raise_for_failures()
    return planned, result


def build(
    opts: BuildOpts,
    *,
    config: BuildConfig,
    collaborators: Collaborators,
    runner: ProcessRunner | None = None,
    logger: StructuredLogger | None = None,
    cwd: Path | None = None,
) -> BuildOutcome:
    log = logger or StructuredLogger()
    state = _RunState(
        config=config,
        collaborators=collaborators,
        runner=runner or ProcessSupervisor(log),
        logger=log,
    )
    locals_ = determine_locals(opts, config=config, collaborators=collaborators, logger=log)
    ranges = get_dependency_ranges(locals_)
    dependencies = get_dependencies(locals_, ranges, collaborators=collaborators)

    package_db = collaborators.package_db
    cabal = package_db.find_package([package_db.global_database()], "Cabal")
    state.cabal_identifier = cabal.identifier if cabal is not None else None

    installed, dependency_result = install_dependencies(opts, dependencies, state=state)
    planned, local_result = build_locals(
        opts,
        locals_,
        state=state,
        cwd=cwd if cwd is not None else Path.cwd(),
    )
    return BuildOutcome(
        locals=tuple(locals_),
        dependencies=dependencies,
        installed_dependencies=installed,
        planned=planned,
        dependency_result=dependency_result,
        local_result=local_result,
        dry_run=opts.dry_run,
    )


def clean(*, config: BuildConfig) -> None:
    """Forget all build state of the project's packages."""
    for directory in config.packages:
        layout = PackageLayout(directory)
        delete_markers(directory)
        delete_genconfig(directory)
        for path in (layout.build_dir, layout.dist_dir):
            if path.is_dir():
                shutil.rmtree(path)
    state_dir = config.state_dir
    if not state_dir.is_dir():
        return
    for path in state_dir.glob(f"{GRAPH_DATABASE_NAME.removesuffix('.db')}*"):
        if path.is_dir():
            shutil.rmtree(path)
        else:
            path.unlink()
