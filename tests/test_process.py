import os
import sys
from pathlib import Path

import pytest

from stackwork.errors import ErrorCode, ProcessFailedError
from stackwork.observability import StructuredLogger
from stackwork.process import ProcessSupervisor


def _python(code: str) -> list[str]:
    return [sys.executable, "-c", code]


def test_captures_both_streams_and_tees_into_log(tmp_path: Path) -> None:
    log_path = tmp_path / "build" / "build.log"
    logger = StructuredLogger()
    supervisor = ProcessSupervisor(logger)

    result = supervisor.run(
        _python("import sys; sys.stdout.write('hello-out'); sys.stderr.write('hello-err')"),
        cwd=tmp_path,
        env=dict(os.environ),
        log_path=log_path,
        label="A: build",
    )

    assert result.returncode == 0
    assert result.stdout == b"hello-out"
    assert result.stderr == b"hello-err"
    content = log_path.read_bytes()
    assert b"hello-out" in content
    assert b"hello-err" in content
    (record,) = logger.records_for_package("A")
    assert record["stage"] == "build"
    assert record["operation"] == "run"


def test_large_output_on_both_pipes_does_not_stall(tmp_path: Path) -> None:
    code = (
        "import sys\n"
        "for _ in range(200):\n"
        "    sys.stderr.write('e' * 4096)\n"
        "    sys.stdout.write('o' * 4096)\n"
    )
    result = ProcessSupervisor().run(
        _python(code),
        cwd=tmp_path,
        env=dict(os.environ),
        log_path=tmp_path / "build.log",
        label="A: build",
    )
    assert len(result.stdout) == 200 * 4096
    assert len(result.stderr) == 200 * 4096


def test_child_sees_closed_stdin_and_environment(tmp_path: Path) -> None:
    env = dict(os.environ)
    env["STACKWORK_TEST_VALUE"] = "42"
    result = ProcessSupervisor().run(
        _python(
            "import os, sys; data = sys.stdin.read();"
            " print(repr(data), os.environ['STACKWORK_TEST_VALUE'], os.getcwd())"
        ),
        cwd=tmp_path,
        env=env,
        log_path=tmp_path / "build.log",
        label="A: configure",
    )
    assert result.stdout.decode().split() == ["''", "42", str(tmp_path.resolve())]


def test_nonzero_exit_raises_with_captured_output(tmp_path: Path) -> None:
    log_path = tmp_path / "build.log"
    logger = StructuredLogger()

    with pytest.raises(ProcessFailedError) as excinfo:
        ProcessSupervisor(logger).run(
            _python("import sys; print('partial'); sys.stderr.write('bad things'); sys.exit(3)"),
            cwd=tmp_path,
            env=dict(os.environ),
            log_path=log_path,
            label="A: install",
        )

    error = excinfo.value
    assert error.code == ErrorCode.PROCESS.value
    assert error.returncode == 3
    assert error.package == "A"
    assert error.stage == "install"
    assert error.stderr == b"bad things"
    assert error.context["stderr"] == "bad things"
    assert error.context["stdout"] == "partial"
    assert b"bad things" in log_path.read_bytes()
    assert logger.records_for_operation("run_failed")[0]["message"] == "A: install: ERROR"


def test_log_is_appended_across_commands(tmp_path: Path) -> None:
    log_path = tmp_path / "build.log"
    supervisor = ProcessSupervisor()
    for word in ("first", "second"):
        supervisor.run(
            _python(f"print('{word}')"),
            cwd=tmp_path,
            env=dict(os.environ),
            log_path=log_path,
            label=f"A: {word}",
        )
    content = log_path.read_text(encoding="utf-8")
    assert content.index("first") < content.index("second")


def test_missing_executable_raises_process_error(tmp_path: Path) -> None:
    with pytest.raises(ProcessFailedError) as excinfo:
        ProcessSupervisor().run(
            [str(tmp_path / "no-such-runhaskell"), "Setup.hs", "configure"],
            cwd=tmp_path,
            env=dict(os.environ),
            log_path=tmp_path / "build.log",
            label="A: configure",
        )
    assert excinfo.value.returncode is None
    assert excinfo.value.stage == "configure"
