"""Unified session teardown and signal trapping."""

from __future__ import annotations

import signal
import subprocess
import time
from collections.abc import Callable, Iterator, Sequence
from contextlib import contextmanager
from dataclasses import dataclass, field
from enum import StrEnum
from pathlib import Path
from types import FrameType

from kforge.errors import CancelledError
from kforge.executor import CommandExecutor
from kforge.layout import Workspace
from kforge.observability import StructuredLogger

KNOWN_TOOLS = (
    "make",
    "git",
    "wget",
    "tar",
    "readelf",
    "zip",
    "java",
    "apt",
    "pkg",
    "pacman",
    "yum",
    "emerge",
    "zypper",
    "dnf",
)
TRAPPED_SIGNALS = (signal.SIGINT, signal.SIGTERM, signal.SIGHUP, signal.SIGQUIT)


class TeardownReason(StrEnum):
    SUCCESS = "success"
    CLEAN_ABORT = "clean_abort"
    USER_CANCEL = "user_cancel"
    FATAL_ERROR = "fatal_error"


class AbortRequested(Exception):
    """Raised when the operator declines to continue; the session exits with status 0."""


def pkill(names: Sequence[str]) -> None:
    for name in names:
        try:
            subprocess.run(["pkill", "-x", name], capture_output=True, check=False)
        except FileNotFoundError:
            return


@dataclass(slots=True)
class Teardown:
    """Runs once per session; later calls return without doing anything."""

    workspace: Workspace
    logger: StructuredLogger
    executor: CommandExecutor | None = None
    capture: Callable[[], object] | None = None
    codename: str | None = None
    temp_files: list[Path] = field(default_factory=list)
    countdown: int = 0
    kill: Callable[[Sequence[str]], None] = pkill
    sleep: Callable[[float], None] = time.sleep
    reason: TeardownReason | None = field(default=None, init=False)

    def run(self, reason: TeardownReason) -> bool:
        if self.reason is not None:
            return False
        self.reason = reason
        self.logger.debug(f"Teardown ({reason.value})", operation="teardown")
        if self.capture is not None:
            self.capture()
        if reason in (TeardownReason.USER_CANCEL, TeardownReason.FATAL_ERROR):
            if self.executor is not None:
                self.executor.terminate_active()
            self.kill(KNOWN_TOOLS)
        for path in [*self.temp_files, *self.workspace.toolchains_dir.glob("*.tar.gz")]:
            path.unlink(missing_ok=True)
        self.workspace.prune_empty(self.codename)
        if self.countdown > 0:
            for remaining in range(self.countdown, 0, -1):
                self.logger.echo(f"\rExiting in {remaining}...")
                self.sleep(1)
            self.logger.echo("\n")
        return True


def install_signal_handlers(
    signals: Sequence[signal.Signals] = TRAPPED_SIGNALS,
) -> dict[signal.Signals, object]:
    """Turn termination signals into ``CancelledError`` in the main thread."""

    def _raise(signum: int, frame: FrameType | None) -> None:
        raise CancelledError(
            f"Interrupted by {signal.Signals(signum).name}.",
            context={"signal": signal.Signals(signum).name},
        )

    previous: dict[signal.Signals, object] = {}
    for sig in signals:
        previous[sig] = signal.signal(sig, _raise)
    return previous


def restore_signal_handlers(previous: dict[signal.Signals, object]) -> None:
    for sig, handler in previous.items():
        signal.signal(sig, handler)  # type: ignore[arg-type]


@contextmanager
def session_scope(teardown: Teardown) -> Iterator[Teardown]:
    """Always tear down; clean aborts are absorbed, everything else propagates."""
    try:
        yield teardown
    except AbortRequested as exc:
        teardown.logger.note(str(exc) or "Aborted.", operation="abort")
        teardown.run(TeardownReason.CLEAN_ABORT)
    except (CancelledError, KeyboardInterrupt):
        teardown.run(TeardownReason.USER_CANCEL)
        raise
    except BaseException:
        teardown.run(TeardownReason.FATAL_ERROR)
        raise
    else:
        teardown.run(TeardownReason.SUCCESS)
