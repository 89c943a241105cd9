import io
import signal
from collections.abc import Sequence
from pathlib import Path

import pytest

from kforge.errors import CancelledError, CommandError
from kforge.layout import Workspace
from kforge.observability import StructuredLogger
from kforge.teardown import (
    KNOWN_TOOLS,
    AbortRequested,
    Teardown,
    TeardownReason,
    install_signal_handlers,
    restore_signal_handlers,
    session_scope,
)


class _Recorder:
    def __init__(self) -> None:
        self.events: list[str] = []
        self.killed: list[tuple[str, ...]] = []

    def capture(self) -> None:
        self.events.append("capture")

    def kill(self, names: Sequence[str]) -> None:
        self.events.append("kill")
        self.killed.append(tuple(names))


def _teardown(tmp_path: Path, recorder: _Recorder) -> Teardown:
    return Teardown(
        Workspace(tmp_path),
        StructuredLogger(stream=io.StringIO()),
        capture=recorder.capture,
        codename="pixel3",
        kill=recorder.kill,
        sleep=lambda seconds: None,
    )


def test_teardown_runs_once_and_captures_before_killing(tmp_path: Path) -> None:
    recorder = _Recorder()
    workspace = Workspace(tmp_path)
    workspace.create("pixel3")
    temp = tmp_path / "wget-log"
    temp.write_text("", encoding="utf-8")
    (workspace.toolchains_dir / "clang-r450784d.tar.gz").write_bytes(b"partial")
    teardown = _teardown(tmp_path, recorder)
    teardown.temp_files.append(temp)

    first = teardown.run(TeardownReason.FATAL_ERROR)
    second = teardown.run(TeardownReason.SUCCESS)

    assert (first, second) == (True, False)
    assert teardown.reason is TeardownReason.FATAL_ERROR
    assert recorder.events == ["capture", "kill"]
    assert recorder.killed == [KNOWN_TOOLS]
    assert not temp.exists()
    assert not list(workspace.toolchains_dir.glob("*.tar.gz"))
    assert not workspace.out_dir("pixel3").exists()
    assert not workspace.log_dir("pixel3").exists()


def test_successful_teardown_keeps_processes_and_non_empty_dirs(tmp_path: Path) -> None:
    recorder = _Recorder()
    workspace = Workspace(tmp_path)
    workspace.create("pixel3")
    (workspace.build_dir("pixel3") / "kernel.zip").write_bytes(b"zip")

    _teardown(tmp_path, recorder).run(TeardownReason.SUCCESS)

    assert recorder.events == ["capture"]
    assert workspace.build_dir("pixel3").is_dir()
    assert not workspace.out_dir("pixel3").exists()


def test_clean_abort_does_not_kill_processes(tmp_path: Path) -> None:
    recorder = _Recorder()
    teardown = _teardown(tmp_path, recorder)

    with session_scope(teardown):
        raise AbortRequested("Build cancelled.")

    assert teardown.reason is TeardownReason.CLEAN_ABORT
    assert recorder.events == ["capture"]
    assert recorder.killed == []


def test_session_scope_maps_outcomes_to_reasons(tmp_path: Path) -> None:
    outcomes: dict[str, TeardownReason | None] = {}

    for name, exc in (
        ("abort", AbortRequested("declined")),
        ("cancel", CancelledError("interrupted")),
        ("fatal", CommandError("make failed")),
        ("success", None),
    ):
        teardown = _teardown(tmp_path, _Recorder())
        try:
            with session_scope(teardown):
                if exc is not None:
                    raise exc
        except (CancelledError, CommandError):
            pass
        outcomes[name] = teardown.reason

    assert outcomes == {
        "abort": TeardownReason.CLEAN_ABORT,
        "cancel": TeardownReason.USER_CANCEL,
        "fatal": TeardownReason.FATAL_ERROR,
        "success": TeardownReason.SUCCESS,
    }


def test_signal_handlers_raise_cancelled_error() -> None:
    previous = install_signal_handlers((signal.SIGUSR1,))
    try:
        with pytest.raises(CancelledError) as excinfo:
            signal.raise_signal(signal.SIGUSR1)
    finally:
        restore_signal_handlers(previous)

    assert excinfo.value.context["signal"] == "SIGUSR1"
