"""External build-step execution with concurrent output capture.

Each child runs with stdin closed. Its stdout and stderr are drained by two
reader threads so neither pipe can stall the other; every chunk goes to an
in-memory buffer and to the package's append-only build log.
"""

from __future__ import annotations

import subprocess
import threading
from collections.abc import Mapping, Sequence
from dataclasses import dataclass, field
from pathlib import Path
from typing import BinaryIO, cast

from stackwork.errors import ProcessFailedError
from stackwork.observability import StructuredLogger

CHUNK_SIZE = 64 * 1024


@dataclass(frozen=True, slots=True)
class ProcessResult:
    argv: tuple[str, ...]
    returncode: int
    stdout: bytes
    stderr: bytes


@dataclass(slots=True)
class ProcessSupervisor:
    logger: StructuredLogger = field(default_factory=StructuredLogger)

    def run(
        self,
        argv: Sequence[str],
        *,
        cwd: Path,
        env: Mapping[str, str],
        log_path: Path,
        label: str,
    ) -> ProcessResult:
        """Run *argv* in *cwd*; raise :class:`ProcessFailedError` on a nonzero exit."""
        command = tuple(argv)
        package, _, stage = label.partition(": ")
        self.logger.log(
            operation="run",
            package=package or None,
            stage=stage or None,
            message=label,
            extra={"argv": list(command), "cwd": str(cwd)},
        )
        log_path.parent.mkdir(parents=True, exist_ok=True)
        stdout = bytearray()
        stderr = bytearray()
        with log_path.open("ab") as log:
            log_lock = threading.Lock()
            try:
                child = subprocess.Popen(
                    command,
                    cwd=cwd,
                    env=dict(env),
                    stdin=subprocess.DEVNULL,
                    stdout=subprocess.PIPE,
                    stderr=subprocess.PIPE,
                )
            except OSError as exc:
                raise ProcessFailedError(
                    f"{label}: unable to start command.",
                    argv=command,
                    returncode=None,
                    package=package or None,
                    stage=stage or None,
                    hint=f"Ensure `{command[0]}` is installed and on PATH ({exc.strerror}).",
                ) from exc
            readers = [
                threading.Thread(
                    target=_pump,
                    args=(cast(BinaryIO, child.stdout), stdout, log, log_lock),
                    name=f"{label} stdout",
                    daemon=True,
                ),
                threading.Thread(
                    target=_pump,
                    args=(cast(BinaryIO, child.stderr), stderr, log, log_lock),
                    name=f"{label} stderr",
                    daemon=True,
                ),
            ]
            for reader in readers:
                reader.start()
            for reader in readers:
                reader.join()
            returncode = child.wait()

        result = ProcessResult(
            argv=command,
            returncode=returncode,
            stdout=bytes(stdout),
            stderr=bytes(stderr),
        )
        if returncode != 0:
            self.logger.log(
                operation="run_failed",
                package=package or None,
                stage=stage or None,
                message=f"{label}: ERROR",
                level="error",
                extra={"returncode": returncode, "log": str(log_path)},
            )
            raise ProcessFailedError(
                f"{label}: command exited with code {returncode}.",
                argv=command,
                returncode=returncode,
                stdout=result.stdout,
                stderr=result.stderr,
                package=package or None,
                stage=stage or None,
                hint=f"Full output is in {log_path}.",
            )
        return result


def _pump(source: BinaryIO, buffer: bytearray, log: BinaryIO, log_lock: threading.Lock) -> None:
    with source:
        for chunk in iter(lambda: source.read1(CHUNK_SIZE), b""):  # type: ignore[attr-defined]
            buffer.extend(chunk)
            with log_lock:
                log.write(chunk)
                log.flush()
