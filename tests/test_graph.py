import os
import threading
from collections.abc import Callable
from pathlib import Path

import cbor2
import pytest

from stackwork.errors import (
    InstalledIdentityMissingError,
    ProcessFailedError,
    TaskGraphError,
    ValidationError,
)
from stackwork.graph import GraphDatabase, GraphDatabaseWarning, Node, TargetKey, TaskGraph


class Recorder:
    def __init__(self) -> None:
        self.events: list[tuple[str, str]] = []
        self._lock = threading.Lock()

    def action(
        self,
        name: str,
        output: Path,
        *,
        error: Exception | None = None,
    ) -> Callable[[], None]:
        def run() -> None:
            with self._lock:
                self.events.append(("start", name))
            if error is not None:
                raise error
            output.parent.mkdir(parents=True, exist_ok=True)
            output.write_bytes(b"")
            with self._lock:
                self.events.append(("end", name))

        return run

    def started(self) -> list[str]:
        return [name for kind, name in self.events if kind == "start"]


def _node(
    root: Path,
    recorder: Recorder,
    name: str,
    *needs: str,
    files: tuple[Path, ...] = (),
    error: Exception | None = None,
) -> Node:
    output = root / name / "built"
    return Node(
        key=TargetKey(root / name, "build"),
        output=output,
        action=recorder.action(name, output, error=error),
        needs=tuple(TargetKey(root / need, "build") for need in needs),
        files=files,
        package=name,
    )


def _key(root: Path, name: str) -> TargetKey:
    return TargetKey(root / name, "build")


def test_prerequisites_finish_before_dependents_start(tmp_path: Path) -> None:
    recorder = Recorder()
    graph = TaskGraph()
    graph.add(_node(tmp_path, recorder, "c", "b"))
    graph.add(_node(tmp_path, recorder, "b", "a"))
    graph.add(_node(tmp_path, recorder, "a"))

    result = graph.run([_key(tmp_path, "c")], jobs=4)

    assert result.ok
    assert recorder.events == [
        ("start", "a"),
        ("end", "a"),
        ("start", "b"),
        ("end", "b"),
        ("start", "c"),
        ("end", "c"),
    ]
    assert result.completed == [_key(tmp_path, name) for name in ("a", "b", "c")]


def test_shared_prerequisite_runs_once(tmp_path: Path) -> None:
    recorder = Recorder()
    graph = TaskGraph()
    graph.add(_node(tmp_path, recorder, "a"))
    graph.add(_node(tmp_path, recorder, "b", "a"))
    graph.add(_node(tmp_path, recorder, "c", "a"))
    graph.add(_node(tmp_path, recorder, "d", "b", "c"))

    result = graph.run([_key(tmp_path, "d"), _key(tmp_path, "b")], jobs=3)

    assert result.ok
    assert sorted(recorder.started()) == ["a", "b", "c", "d"]
    assert recorder.started()[0] == "a"
    assert recorder.started()[-1] == "d"


def test_unwanted_targets_do_not_run(tmp_path: Path) -> None:
    recorder = Recorder()
    graph = TaskGraph()
    graph.add(_node(tmp_path, recorder, "a"))
    graph.add(_node(tmp_path, recorder, "b"))

    result = graph.run([_key(tmp_path, "a")], jobs=2)

    assert recorder.started() == ["a"]
    assert _key(tmp_path, "b") not in result.statuses


def test_failure_blocks_dependents_but_not_siblings(tmp_path: Path) -> None:
    recorder = Recorder()
    graph = TaskGraph()
    graph.add(_node(tmp_path, recorder, "a", error=RuntimeError("compile error")))
    graph.add(_node(tmp_path, recorder, "b", "a"))
    graph.add(_node(tmp_path, recorder, "c", "b"))
    graph.add(_node(tmp_path, recorder, "d"))

    result = graph.run([_key(tmp_path, "c"), _key(tmp_path, "d")], jobs=2)

    assert not result.ok
    assert result.statuses[_key(tmp_path, "a")] == "failed"
    assert result.statuses[_key(tmp_path, "b")] == "blocked"
    assert result.statuses[_key(tmp_path, "c")] == "blocked"
    assert result.statuses[_key(tmp_path, "d")] == "ran"
    assert "b" not in recorder.started()
    with pytest.raises(TaskGraphError) as excinfo:
        result.raise_for_failures()
    assert list(excinfo.value.failures) == [str(_key(tmp_path, "a"))]
    assert excinfo.value.context[str(_key(tmp_path, "a"))] == "compile error"


def test_aborting_error_stops_new_work(tmp_path: Path) -> None:
    recorder = Recorder()
    graph = TaskGraph()
    graph.add(_node(tmp_path, recorder, "a", error=InstalledIdentityMissingError("a")))
    graph.add(_node(tmp_path, recorder, "b"))

    result = graph.run([_key(tmp_path, "a"), _key(tmp_path, "b")], jobs=1)

    assert recorder.started() == ["a"]
    assert result.statuses[_key(tmp_path, "b")] == "aborted"
    assert result.with_status("failed") == [_key(tmp_path, "a")]


def test_current_outputs_are_skipped(tmp_path: Path) -> None:
    source = tmp_path / "src" / "Lib.hs"
    source.parent.mkdir()
    source.write_text("module Lib where\n", encoding="utf-8")
    recorder = Recorder()

    def graph() -> TaskGraph:
        built = TaskGraph(database=GraphDatabase.load(tmp_path / ".graph.db"))
        built.add(_node(tmp_path, recorder, "a", files=(source,)))
        built.add(_node(tmp_path, recorder, "b", "a"))
        return built

    first = graph().run([_key(tmp_path, "b")], jobs=2)
    second = graph().run([_key(tmp_path, "b")], jobs=2)

    assert first.with_status("ran") == [_key(tmp_path, "a"), _key(tmp_path, "b")]
    assert set(second.with_status("skipped")) == {_key(tmp_path, "a"), _key(tmp_path, "b")}
    assert recorder.started() == ["a", "b"]


def test_newer_needed_file_reruns_target_and_dependents(tmp_path: Path) -> None:
    source = tmp_path / "Lib.hs"
    source.write_text("module Lib where\n", encoding="utf-8")
    recorder = Recorder()
    graph = TaskGraph()
    graph.add(_node(tmp_path, recorder, "a", files=(source,)))
    graph.add(_node(tmp_path, recorder, "b", "a"))
    graph.run([_key(tmp_path, "b")], jobs=1)

    output_mtime = (tmp_path / "a" / "built").stat().st_mtime_ns
    os.utime(source, ns=(output_mtime + 10**9, output_mtime + 10**9))
    result = graph.run([_key(tmp_path, "b")], jobs=1)

    assert result.with_status("ran") == [_key(tmp_path, "a"), _key(tmp_path, "b")]
    assert recorder.started() == ["a", "b", "a", "b"]


def test_changed_stamp_reruns_even_when_older(tmp_path: Path) -> None:
    source = tmp_path / "Lib.hs"
    source.write_text("module Lib where\n", encoding="utf-8")
    recorder = Recorder()
    database = GraphDatabase(tmp_path / ".graph.db")
    graph = TaskGraph(database=database)
    graph.add(_node(tmp_path, recorder, "a", files=(source,)))
    graph.run([_key(tmp_path, "a")], jobs=1)

    os.utime(source, ns=(1, 1))
    result = graph.run([_key(tmp_path, "a")], jobs=1)

    assert result.statuses[_key(tmp_path, "a")] == "ran"
    assert database.stamps_for(str(_key(tmp_path, "a"))) == {str(source): 1}


def test_missing_output_reruns_target(tmp_path: Path) -> None:
    recorder = Recorder()
    graph = TaskGraph()
    graph.add(_node(tmp_path, recorder, "a"))
    graph.run([_key(tmp_path, "a")], jobs=1)
    (tmp_path / "a" / "built").unlink()

    result = graph.run([_key(tmp_path, "a")], jobs=1)

    assert result.statuses[_key(tmp_path, "a")] == "ran"


def test_missing_needed_file_fails_target(tmp_path: Path) -> None:
    recorder = Recorder()
    graph = TaskGraph()
    graph.add(_node(tmp_path, recorder, "a", files=(tmp_path / "gone.hs",)))

    result = graph.run([_key(tmp_path, "a")], jobs=1)

    assert isinstance(result.errors[_key(tmp_path, "a")], ValidationError)
    assert recorder.started() == []


def test_action_must_produce_output(tmp_path: Path) -> None:
    graph = TaskGraph()
    graph.add(Node(key=_key(tmp_path, "a"), output=tmp_path / "never", action=lambda: None))

    result = graph.run([_key(tmp_path, "a")], jobs=1)

    assert isinstance(result.errors[_key(tmp_path, "a")], ValidationError)


def test_structural_errors_raise_before_running(tmp_path: Path) -> None:
    recorder = Recorder()
    graph = TaskGraph()
    graph.add(_node(tmp_path, recorder, "a", "b"))
    graph.add(_node(tmp_path, recorder, "b", "a"))
    graph.add(_node(tmp_path, recorder, "c", "missing"))

    with pytest.raises(ValidationError, match="cycle"):
        graph.run([_key(tmp_path, "a")], jobs=1)
    with pytest.raises(ValidationError, match="Unknown build target"):
        graph.run([_key(tmp_path, "c")], jobs=1)
    with pytest.raises(ValidationError):
        graph.add(_node(tmp_path, recorder, "a"))
    assert recorder.events == []


def test_long_prerequisite_chain_is_ordered(tmp_path: Path) -> None:
    recorder = Recorder()
    graph = TaskGraph()
    names = [f"n{index}" for index in range(1500)]
    graph.add(_node(tmp_path, recorder, names[0]))
    for previous, name in zip(names, names[1:]):
        graph.add(_node(tmp_path, recorder, name, previous))

    result = graph.run([_key(tmp_path, names[-1])], jobs=1)

    assert result.ok
    assert recorder.started() == names


def test_failure_report_keeps_process_output(tmp_path: Path) -> None:
    recorder = Recorder()
    graph = TaskGraph()
    error = ProcessFailedError(
        "A: build: command exited with code 1.",
        argv=["runhaskell", "Setup.hs", "build"],
        returncode=1,
        stderr=b"Main.hs:3:1: error: parse error",
        package="A",
        stage="build",
    )
    graph.add(_node(tmp_path, recorder, "A", error=error))

    result = graph.run([_key(tmp_path, "A")], jobs=1)

    with pytest.raises(TaskGraphError) as excinfo:
        result.raise_for_failures()
    assert "Main.hs:3:1: error: parse error" in str(excinfo.value)
    (record,) = graph.logger.records_for_operation("target_failed")
    assert record["message"] == "A: build: command exited with code 1."
    assert record["extra"]["error"]["stderr"] == "Main.hs:3:1: error: parse error"
    assert record["extra"]["error"]["package"] == "A"


def test_database_persists_stamps_with_cbor(tmp_path: Path) -> None:
    source = tmp_path / "Lib.hs"
    source.write_text("x", encoding="utf-8")
    recorder = Recorder()
    path = tmp_path / "state" / ".graph.db"
    graph = TaskGraph(database=GraphDatabase.load(path))
    graph.add(_node(tmp_path, recorder, "a", files=(source,)))
    graph.run([_key(tmp_path, "a")], jobs=1)

    payload = cbor2.loads(path.read_bytes())
    target = str(_key(tmp_path, "a"))
    assert payload == {"targets": {target: {str(source): source.stat().st_mtime_ns}}}
    assert GraphDatabase.load(path).stamps_for(target) == payload["targets"][target]


def test_corrupt_database_warns_and_starts_empty(tmp_path: Path) -> None:
    path = tmp_path / ".graph.db"
    path.write_bytes(cbor2.dumps(["not", "a", "mapping"]))

    with pytest.warns(GraphDatabaseWarning):
        database = GraphDatabase.load(path)

    assert database.stamps_for("anything") is None
