"""Shared test fixtures."""

from __future__ import annotations

import io
from collections.abc import Callable, Mapping, Sequence
from pathlib import Path

import pytest

from kforge.executor import CommandFailure, CommandResult
from kforge.observability import StructuredLogger
from kforge.session_log import SessionLog


class FakePrompter:
    """Answers questions from scripted queues; unscripted confirms use the default."""

    def __init__(
        self,
        *,
        answers: Sequence[str] = (),
        confirms: Mapping[str, bool] | None = None,
        selections: Mapping[str, str] | None = None,
    ) -> None:
        self.answers = list(answers)
        self.confirms = dict(confirms or {})
        self.selections = dict(selections or {})
        self.asked: list[str] = []

    def ask(self, question: str) -> str:
        self.asked.append(question)
        return self.answers.pop(0)

    def confirm(self, question: str, *, default: bool) -> bool:
        self.asked.append(question)
        for fragment, answer in self.confirms.items():
            if fragment in question:
                return answer
        return default

    def select(self, question: str, options: Sequence[str]) -> str:
        self.asked.append(question)
        for fragment, answer in self.selections.items():
            if fragment in question:
                assert answer in options
                return answer
        return options[0]


class FakeExecutor:
    """Records invocations and writes transcripts like the real executor."""

    def __init__(self, handler: Callable[[tuple[str, ...]], tuple[int, str]] | None = None) -> None:
        self.calls: list[tuple[str, ...]] = []
        self.envs: list[Mapping[str, str] | None] = []
        self.handler = handler or (lambda argv: (0, ""))

    def run(
        self,
        argv: Sequence[str | Path],
        *,
        stage: str,
        env: Mapping[str, str] | None = None,
        cwd: Path | None = None,
        log: SessionLog | None = None,
        capture: bool = False,
        interactive: bool = False,
    ) -> CommandResult | CommandFailure:
        command = tuple(str(part) for part in argv)
        self.calls.append(command)
        self.envs.append(env)
        if log is not None:
            log.begin_transcript(" ".join(command))
        returncode, output = self.handler(command)
        if log is not None:
            log.append(output)
            log.end_transcript(returncode)
        if returncode == 0:
            return CommandResult(argv=command, stage=stage, output=output)
        return CommandFailure(argv=command, stage=stage, returncode=returncode, output=output)

    def terminate_active(self) -> None:
        return None


class FakeNotifier:
    enabled = True

    def __init__(self) -> None:
        self.messages: list[str] = []
        self.files: list[tuple[Path, str]] = []

    def send_message(self, text: str) -> None:
        self.messages.append(text)

    def send_file(self, path: Path, caption: str = "") -> None:
        self.files.append((path, caption))


@pytest.fixture
def logger() -> StructuredLogger:
    return StructuredLogger(stream=io.StringIO())


@pytest.fixture
def kernel_tree(tmp_path: Path) -> Path:
    """Minimal arm64 kernel source tree with two defconfigs."""
    root = tmp_path / "kernel"
    configs = root / "arch" / "arm64" / "configs"
    (configs / "vendor").mkdir(parents=True)
    (configs / "pixel3_defconfig").write_text("CONFIG_LOCALVERSION=\"\"\n", encoding="utf-8")
    (configs / "vendor" / "b1c1_defconfig").write_text("CONFIG_X=y\n", encoding="utf-8")
    (root / "Makefile").write_text(
        "VERSION = 4\nPATCHLEVEL = 9\n"
        "CROSS_COMPILE\t?= $(CONFIG_CROSS_COMPILE:\"%\"=%)\n"
        "CC\t\t= $(CROSS_COMPILE)gcc\n",
        encoding="utf-8",
    )
    return root
