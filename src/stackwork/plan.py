"""Per-package configure and build targets for the task graph."""

from __future__ import annotations

import os
import threading
from collections.abc import Iterator, Mapping, Sequence
from contextlib import contextmanager
from dataclasses import dataclass, field
from pathlib import Path

from stackwork.cache.genconfig import completed_config
from stackwork.cache.store import GenConfigStore, touch_built_marker, touch_configured_marker
from stackwork.collaborators import PackageDatabase, ProcessRunner
from stackwork.config import BuildConfig
from stackwork.errors import InstalledIdentityMissingError
from stackwork.graph.scheduler import Node, TargetKey
from stackwork.layout import PackageLayout
from stackwork.models import BuildOpts, BuildType, FinalAction, GenConfig, Package
from stackwork.observability import StructuredLogger

SETUP_SCRIPT_NAMES = ("Setup.hs", "Setup.lhs")
DEFAULT_SETUP_SCRIPT = "import Distribution.Simple\nmain = defaultMain"
HADDOCK_ARGS = (
    "--html",
    "--hoogle",
    "--hyperlink-source",
    "--html-location=../$pkg-$version/",
)


@dataclass(frozen=True, slots=True)
class PlanContext:
    """Everything shared by the plans of one build type within a run."""

    config: BuildConfig
    opts: BuildOpts
    build_type: BuildType
    runner: ProcessRunner
    package_db: PackageDatabase
    store: GenConfigStore
    install_resource: threading.BoundedSemaphore
    logger: StructuredLogger = field(default_factory=StructuredLogger)
    cabal_identifier: str | None = None

    @property
    def install_root(self) -> Path:
        if self.build_type == BuildType.DEPS:
            return self.config.deps_install_root
        return self.config.local_install_root

    @property
    def package_databases(self) -> tuple[Path, ...]:
        if self.build_type == BuildType.DEPS:
            return (self.config.deps_package_db,)
        return (self.config.deps_package_db, self.config.local_package_db)


def configure_key(package: Package) -> TargetKey:
    return TargetKey(package.directory, "configure")


def build_key(package: Package) -> TargetKey:
    return TargetKey(package.directory, "build")


def final_action_for(opts: BuildOpts, package: Package, *, wanted: bool) -> FinalAction:
    if wanted and not package.is_dependency:
        return opts.final_action
    return FinalAction.NONE


@contextmanager
def setup_script(directory: Path) -> Iterator[Path]:
    """Yield the package's setup script, generating a default one if absent.

    A generated script is removed again when the block exits, whether or not
    it raised.
    """
    for name in SETUP_SCRIPT_NAMES:
        existing = directory / name
        if existing.is_file():
            yield existing
            return
    generated = directory / SETUP_SCRIPT_NAMES[0]
    generated.write_text(DEFAULT_SETUP_SCRIPT, encoding="utf-8")
    try:
        yield generated
    finally:
        generated.unlink(missing_ok=True)


def configure_args(
    ctx: PlanContext,
    package: Package,
    genconfig: GenConfig,
    final_action: FinalAction,
) -> list[str]:
    root = ctx.install_root
    args = ["configure", "--user", "--package-db=clear", "--package-db=global"]
    args.extend(f"--package-db={database}" for database in ctx.package_databases)
    args.extend(
        [
            f"--libdir={root / 'lib'}",
            f"--bindir={root / 'bin'}",
            f"--datadir={root / 'share'}",
            f"--docdir={root / 'doc'}",
        ],
    )
    if genconfig.lib_profiling:
        args.append("--enable-library-profiling")
    if genconfig.exe_profiling:
        args.append("--enable-executable-profiling")
    if final_action == FinalAction.TESTS:
        args.append("--enable-tests")
    if final_action == FinalAction.BENCHMARKS:
        args.append("--enable-benchmarks")
    for flag, enabled in sorted(package.flags.items()):
        args.append(f"-f{flag}" if enabled else f"-f-{flag}")
    return args


def build_args(genconfig: GenConfig, ghc_options: Sequence[str]) -> list[str]:
    args = ["build"]
    if genconfig.optimize:
        args.append("--ghc-options=-O2")
    if genconfig.force_recomp:
        args.append("--ghc-options=-fforce-recomp")
    for option in ghc_options:
        args.extend(["--ghc-options", option])
    return args


def final_action_args(final_action: FinalAction) -> list[str] | None:
    if final_action == FinalAction.TESTS:
        return ["test"]
    if final_action == FinalAction.HADDOCK:
        return ["haddock", *HADDOCK_ARGS]
    if final_action == FinalAction.BENCHMARKS:
        return ["bench"]
    return None


def setup_command(ctx: PlanContext, script: Path, args: Sequence[str]) -> list[str]:
    command = list(ctx.config.setup_command)
    if ctx.cabal_identifier is not None:
        command.append(f"-package={ctx.cabal_identifier}")
    command.append(str(script))
    command.extend(args)
    return command


def process_env(
    config: BuildConfig,
    build_type: BuildType,
    base: Mapping[str, str] | None = None,
) -> dict[str, str]:
    env = dict(os.environ if base is None else base)
    env.update(config.extra_env)
    if build_type == BuildType.LOCALS:
        local_bin = str(config.local_install_root / "bin")
        existing = env.get("PATH")
        env["PATH"] = local_bin if not existing else os.pathsep.join([local_bin, existing])
    return env


def make_plan(
    ctx: PlanContext,
    package: Package,
    *,
    genconfig: GenConfig,
    wanted: bool,
    packages: Mapping[str, Package],
) -> tuple[Node, Node]:
    """Return the configure and build targets for *package*.

    Dependencies that are themselves in *packages* must be built before this
    package is configured.
    """
    layout = PackageLayout(package.directory)
    final_action = final_action_for(ctx.opts, package, wanted=wanted)
    local_deps = [
        packages[name]
        for name in sorted(package.dependencies)
        if name in packages and name != package.name
    ]

    def configure() -> None:
        with setup_script(package.directory) as script:
            _run(ctx, package, script, configure_args(ctx, package, genconfig, final_action))
        ctx.store.write(package.directory, genconfig)
        touch_configured_marker(package.directory)

    def build() -> None:
        with setup_script(package.directory) as script:
            _run(ctx, package, script, build_args(genconfig, ctx.opts.ghc_options))
            action_args = final_action_args(final_action)
            if action_args is not None:
                _run(ctx, package, script, action_args)
            with ctx.install_resource:
                _run(ctx, package, script, ["install"])
        write_final_files(ctx, package, genconfig)

    configure_node = Node(
        key=configure_key(package),
        output=layout.configured_marker,
        action=configure,
        needs=tuple(build_key(dep) for dep in local_deps),
        files=(
            package.manifest,
            *(PackageLayout(dep.directory).built_marker for dep in local_deps),
        ),
        package=package.name,
    )
    build_node = Node(
        key=build_key(package),
        output=layout.built_marker,
        action=build,
        needs=(configure_node.key,),
        files=(layout.configured_marker, *sorted(package.files)),
        package=package.name,
    )
    return configure_node, build_node


def write_final_files(ctx: PlanContext, package: Package, genconfig: GenConfig) -> GenConfig:
    """Record a successful install: the installed id and the built marker."""
    databases = ctx.package_databases
    installed = ctx.package_db.find_package(databases, package.name)
    pkg_id = installed.package_id if installed is not None else None
    if package.has_library and pkg_id is None:
        raise InstalledIdentityMissingError(
            package.name,
            databases=[str(database) for database in databases],
        )
    final = completed_config(genconfig, pkg_id)
    ctx.store.write(package.directory, final)
    touch_built_marker(package.directory)
    ctx.logger.log(
        operation="installed",
        package=package.name,
        stage="build",
        message=f"Installed {package.identifier}.",
        extra={"pkg_id": pkg_id},
    )
    return final


def _run(ctx: PlanContext, package: Package, script: Path, args: Sequence[str]) -> None:
    ctx.runner.run(
        setup_command(ctx, script, args),
        cwd=package.directory,
        env=process_env(ctx.config, ctx.build_type),
        log_path=PackageLayout(package.directory).log_path,
        label=f"{package.name}: {args[0]}",
    )
