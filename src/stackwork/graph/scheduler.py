"""Dependency-ordered, memoized execution of typed build targets.

A target is identified by ``(package directory, stage)``. It names the
targets it needs, the files it reads, the marker file it produces, and the
action that produces it. :meth:`TaskGraph.run` executes the wanted targets
and their prerequisites on a thread pool:

* each target runs at most once per run;
* a target starts only after all of its prerequisite targets settled;
* a failed target blocks everything that transitively needs it, while
  unrelated targets keep running;
* a target whose output is current is skipped.
"""

from __future__ import annotations

from collections import deque
from collections.abc import Callable, Iterable, Iterator
from concurrent.futures import FIRST_COMPLETED, Future, ThreadPoolExecutor, wait
from dataclasses import dataclass, field
from pathlib import Path
from typing import Literal

from stackwork.errors import StackworkError, TaskGraphError, ValidationError
from stackwork.graph.database import GraphDatabase, Stamps
from stackwork.observability import StructuredLogger

Stage = Literal["configure", "build"]
NodeStatus = Literal["ran", "skipped", "failed", "blocked", "aborted"]


@dataclass(frozen=True, slots=True)
class TargetKey:
    directory: Path
    stage: Stage

    def __str__(self) -> str:
        return f"{self.directory}:{self.stage}"


@dataclass(frozen=True, slots=True)
class Node:
    key: TargetKey
    output: Path
    action: Callable[[], None]
    needs: tuple[TargetKey, ...] = ()
    files: tuple[Path, ...] = ()
    package: str | None = None


@dataclass(slots=True)
class GraphRunResult:
    statuses: dict[TargetKey, NodeStatus] = field(default_factory=dict)
    errors: dict[TargetKey, BaseException] = field(default_factory=dict)
    completed: list[TargetKey] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return all(status in ("ran", "skipped") for status in self.statuses.values())

    def with_status(self, status: NodeStatus) -> list[TargetKey]:
        return [key for key, value in self.statuses.items() if value == status]

    def raise_for_failures(self) -> None:
        if self.errors:
            raise TaskGraphError({str(key): error for key, error in self.errors.items()})


@dataclass(slots=True)
class TaskGraph:
    database: GraphDatabase | None = None
    logger: StructuredLogger = field(default_factory=StructuredLogger)
    _nodes: dict[TargetKey, Node] = field(default_factory=dict, init=False, repr=False)

    def add(self, node: Node) -> None:
        if node.key in self._nodes:
            raise ValidationError(
                "Build target declared twice.",
                context={"target": str(node.key)},
            )
        self._nodes[node.key] = node

    def __contains__(self, key: object) -> bool:
        return key in self._nodes

    def __len__(self) -> int:
        return len(self._nodes)

    def node(self, key: TargetKey) -> Node:
        return self._nodes[key]

    def run(self, wanted: Iterable[TargetKey], *, jobs: int = 1) -> GraphRunResult:
        order = self._schedule_order(wanted)
        dependents: dict[TargetKey, list[TargetKey]] = {key: [] for key in order}
        waiting: dict[TargetKey, int] = {}
        for key in order:
            needs = set(self._nodes[key].needs)
            waiting[key] = len(needs)
            for need in needs:
                dependents[need].append(key)

        result = GraphRunResult()
        ran: set[TargetKey] = set()
        ready = deque(key for key in order if waiting[key] == 0)
        aborting = False
        workers = max(1, jobs)
        with ThreadPoolExecutor(
            max_workers=workers,
            thread_name_prefix="stackwork-graph",
        ) as pool:
            running: dict[Future[NodeStatus], TargetKey] = {}
            while True:
                while ready and not aborting and len(running) < workers:
                    key = ready.popleft()
                    node = self._nodes[key]
                    upstream_ran = any(need in ran for need in node.needs)
                    running[pool.submit(self._execute, node, upstream_ran)] = key
                if not running:
                    break
                done, _ = wait(running, return_when=FIRST_COMPLETED)
                for future in done:
                    key = running.pop(future)
                    error = future.exception()
                    if error is None:
                        status = future.result()
                        result.statuses[key] = status
                        if status == "ran":
                            ran.add(key)
                            result.completed.append(key)
                        for dependent in dependents[key]:
                            waiting[dependent] -= 1
                            if waiting[dependent] == 0 and dependent not in result.statuses:
                                ready.append(dependent)
                        continue
                    result.statuses[key] = "failed"
                    result.errors[key] = error
                    self.logger.log(
                        operation="target_failed",
                        package=self._nodes[key].package,
                        stage=key.stage,
                        message=str(error).splitlines()[0] if str(error) else repr(error),
                        level="error",
                        extra={"error": _failure_details(error)},
                    )
                    if getattr(error, "aborts_run", False):
                        aborting = True
                    self._block_dependents(key, dependents, result)

        for key in order:
            result.statuses.setdefault(key, "aborted")
        if self.database is not None:
            self.database.save()
        return result

    def _schedule_order(self, wanted: Iterable[TargetKey]) -> list[TargetKey]:
        """Prerequisite-first order of every target reachable from *wanted*."""
        order: list[TargetKey] = []
        visited: set[TargetKey] = set()
        active: set[TargetKey] = set()

        for root in wanted:
            if root in visited:
                continue
            self._require(root, None)
            active.add(root)
            stack: list[tuple[TargetKey, Iterator[TargetKey]]] = [
                (root, iter(self._nodes[root].needs)),
            ]
            while stack:
                key, needs = stack[-1]
                need = next(needs, None)
                if need is None:
                    stack.pop()
                    active.discard(key)
                    visited.add(key)
                    order.append(key)
                    continue
                if need in visited:
                    continue
                if need in active:
                    raise ValidationError(
                        "Build targets depend on each other in a cycle.",
                        context={"target": str(need)},
                    )
                self._require(need, key)
                active.add(need)
                stack.append((need, iter(self._nodes[need].needs)))
        return order

    def _require(self, key: TargetKey, parent: TargetKey | None) -> None:
        if key not in self._nodes:
            raise ValidationError(
                "Unknown build target.",
                context={"target": str(key), "needed_by": str(parent) if parent else ""},
            )

    def _block_dependents(
        self,
        failed: TargetKey,
        dependents: dict[TargetKey, list[TargetKey]],
        result: GraphRunResult,
    ) -> None:
        pending = list(dependents[failed])
        while pending:
            key = pending.pop()
            if key in result.statuses:
                continue
            result.statuses[key] = "blocked"
            pending.extend(dependents[key])

    def _execute(self, node: Node, upstream_ran: bool) -> NodeStatus:
        stamps = _stamps(node)
        if not self._is_stale(node, stamps, upstream_ran=upstream_ran):
            self.logger.log(
                operation="target_skipped",
                package=node.package,
                stage=node.key.stage,
                message="Target is up to date.",
            )
            return "skipped"
        node.action()
        if not node.output.exists():
            raise ValidationError(
                "Build target did not produce its output.",
                context={"target": str(node.key), "output": str(node.output)},
            )
        if self.database is not None:
            self.database.record(str(node.key), stamps)
        self.logger.log(
            operation="target_complete",
            package=node.package,
            stage=node.key.stage,
            message="Target rebuilt.",
        )
        return "ran"

    def _is_stale(self, node: Node, stamps: Stamps, *, upstream_ran: bool) -> bool:
        if upstream_ran or not node.output.exists():
            return True
        if self.database is not None and self.database.stamps_for(str(node.key)) != stamps:
            return True
        output_mtime = node.output.stat().st_mtime_ns
        return any(stamp > output_mtime for stamp in stamps.values())


def _stamps(node: Node) -> Stamps:
    stamps: Stamps = {}
    for path in node.files:
        try:
            stamps[str(path)] = path.stat().st_mtime_ns
        except FileNotFoundError as exc:
            raise ValidationError(
                "A file needed by a build target does not exist.",
                hint="Restore the file or remove it from the package manifest.",
                context={"target": str(node.key), "file": str(path)},
            ) from exc
    return stamps


def _failure_details(error: BaseException) -> dict[str, str] | str:
    if isinstance(error, StackworkError):
        return dict(error.context)
    return repr(error)
