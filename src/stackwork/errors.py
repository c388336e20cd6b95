"""Typed build error model with stable, machine-readable error codes."""

from __future__ import annotations

from collections.abc import Mapping, Sequence
from enum import StrEnum
from typing import TYPE_CHECKING, ClassVar

if TYPE_CHECKING:
    from stackwork.resolve.ranges import Conflict

OUTPUT_TAIL_CHARS = 2000


class ErrorCode(StrEnum):
    """Stable error identifiers used across API surfaces."""

    VALIDATION = "E_VALIDATION"
    DEPENDENCY_CONFLICT = "E_DEPENDENCY_CONFLICT"
    GENCONFIG = "E_GENCONFIG"
    PROCESS = "E_PROCESS"
    INSTALLED_IDENTITY = "E_INSTALLED_IDENTITY"
    TASK_GRAPH = "E_TASK_GRAPH"


class StackworkError(Exception):
    """Base error class that carries code, optional hint, and context."""

    code: str
    hint: str | None
    context: Mapping[str, str]
    aborts_run: ClassVar[bool] = False

    def __init__(
        self,
        message: str,
        *,
        code: ErrorCode,
        hint: str | None = None,
        context: Mapping[str, str] | None = None,
    ) -> None:
        super().__init__(message)
        self.code = code.value
        self.hint = hint
        self.context = dict(context or {})

    def __str__(self) -> str:
        parts = [super().__str__()]
        if self.hint:
            parts.append(f"Hint: {self.hint}")
        if self.context:
            for k, v in self.context.items():
                if v:
                    parts.append(f"  {k}: " + v.replace("\n", "\n    "))
        return "\n".join(parts)

    def to_dict(self) -> dict[str, object]:
        payload: dict[str, object] = {
            "code": self.code,
            "message": str(self),
            "context": dict(self.context),
        }
        if self.hint is not None:
            payload["hint"] = self.hint
        return payload


class ValidationError(StackworkError):
    def __init__(
        self,
        message: str,
        *,
        hint: str | None = None,
        context: Mapping[str, str] | None = None,
    ) -> None:
        super().__init__(message, code=ErrorCode.VALIDATION, hint=hint, context=context)


class GenConfigError(StackworkError):
    """Stored build configuration could not be decoded.

    Never escapes :class:`stackwork.cache.store.GenConfigStore`; the store
    converts it into a rebuild from defaults.
    """

    def __init__(
        self,
        message: str,
        *,
        hint: str | None = None,
        context: Mapping[str, str] | None = None,
    ) -> None:
        super().__init__(message, code=ErrorCode.GENCONFIG, hint=hint, context=context)


class DependencyConflictError(StackworkError):
    """Every version-range problem found during resolution, reported at once."""

    def __init__(self, conflicts: Sequence[Conflict]) -> None:
        self.conflicts: tuple[Conflict, ...] = tuple(conflicts)
        lines = [conflict.describe() for conflict in self.conflicts]
        super().__init__(
            "Dependency resolution failed:\n" + "\n".join(f"- {line}" for line in lines),
            code=ErrorCode.DEPENDENCY_CONFLICT,
            hint="Adjust the declared version ranges or the local package versions.",
            context={"count": str(len(self.conflicts))},
        )

    def to_dict(self) -> dict[str, object]:
        payload = super().to_dict()
        payload["conflicts"] = [conflict.describe() for conflict in self.conflicts]
        return payload


class ProcessFailedError(StackworkError):
    """An external build stage exited unsuccessfully."""

    def __init__(
        self,
        message: str,
        *,
        argv: Sequence[str],
        returncode: int | None,
        stdout: bytes = b"",
        stderr: bytes = b"",
        package: str | None = None,
        stage: str | None = None,
        hint: str | None = None,
    ) -> None:
        self.argv = tuple(argv)
        self.returncode = returncode
        self.stdout = stdout
        self.stderr = stderr
        self.package = package
        self.stage = stage
        super().__init__(
            message,
            code=ErrorCode.PROCESS,
            hint=hint or "Inspect the captured output and the package build log.",
            context={
                "package": package or "",
                "stage": stage or "",
                "command": " ".join(self.argv),
                "returncode": "" if returncode is None else str(returncode),
                "stdout": _tail(stdout),
                "stderr": _tail(stderr),
            },
        )


class InstalledIdentityMissingError(StackworkError):
    """A library package installed without a package database entry."""

    aborts_run = True

    def __init__(self, package: str, *, databases: Sequence[str] = ()) -> None:
        self.package = package
        super().__init__(
            f"Could not find an installed package id for `{package}` after install.",
            code=ErrorCode.INSTALLED_IDENTITY,
            hint="The package database may be corrupt; run clean() and rebuild.",
            context={"package": package, "databases": ", ".join(databases)},
        )


class TaskGraphError(StackworkError):
    """Aggregate of every failed target in a task graph run."""

    def __init__(self, failures: Mapping[str, BaseException]) -> None:
        self.failures = dict(failures)
        super().__init__(
            f"{len(self.failures)} build target(s) failed.",
            code=ErrorCode.TASK_GRAPH,
            context={target: _describe(error) for target, error in self.failures.items()},
        )


def _tail(output: bytes) -> str:
    text = output.decode("utf-8", errors="replace").strip()
    return text[-OUTPUT_TAIL_CHARS:]


def _describe(error: BaseException) -> str:
    text = str(error)
    return text if text else type(error).__name__


__all__ = [
    "DependencyConflictError",
    "ErrorCode",
    "GenConfigError",
    "InstalledIdentityMissingError",
    "ProcessFailedError",
    "StackworkError",
    "TaskGraphError",
    "ValidationError",
]
