"""Supervised execution of external commands.

``CommandExecutor`` runs one child process and returns a structured outcome; it
never blocks on user input. ``CommandSupervisor`` owns the retry loop: every
failure is reported, the session log is captured, and the supplied
``RetryPolicy`` decides whether the identical command runs again.
"""

from __future__ import annotations

import os
import shlex
import subprocess
import traceback
from collections.abc import Callable, Mapping, Sequence
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import TYPE_CHECKING, Protocol

from kforge.errors import CommandError
from kforge.observability import StructuredLogger
from kforge.session_log import SessionLog

if TYPE_CHECKING:
    from kforge.prompts import Prompter


@dataclass(frozen=True, slots=True)
class BuildEnvironment:
    """Explicit environment handed to every build-tool invocation."""

    path_entries: tuple[Path, ...] = ()
    variables: Mapping[str, str] = field(default_factory=dict)
    options: tuple[str, ...] = ()

    def search_path(self, base_path: str) -> str:
        entries = [str(entry) for entry in self.path_entries]
        if base_path:
            entries.append(base_path)
        return os.pathsep.join(entries)

    def to_env(self, base: Mapping[str, str] | None = None) -> dict[str, str]:
        env = dict(os.environ if base is None else base)
        env.update(self.variables)
        env["PATH"] = self.search_path(env.get("PATH", ""))
        return env

    def with_options(self, options: Sequence[str]) -> BuildEnvironment:
        return replace(self, options=tuple(options))


@dataclass(frozen=True, slots=True)
class CommandResult:
    argv: tuple[str, ...]
    stage: str
    returncode: int = 0
    output: str = ""

    @property
    def display(self) -> str:
        return shlex.join(self.argv)


@dataclass(frozen=True, slots=True)
class CommandFailure:
    argv: tuple[str, ...]
    stage: str
    returncode: int
    output: str = ""
    location: str = ""

    @property
    def display(self) -> str:
        return shlex.join(self.argv)


class RetryPolicy(Protocol):
    def should_retry(self, failure: CommandFailure) -> bool:
        """Decide whether the failed command runs again."""


class NeverRetry:
    def should_retry(self, failure: CommandFailure) -> bool:
        return False


@dataclass(slots=True)
class PromptRetryPolicy:
    """Ask the operator; an empty answer means no."""

    prompter: Prompter

    def should_retry(self, failure: CommandFailure) -> bool:
        return self.prompter.confirm("Run the last failed command again?", default=False)


@dataclass(slots=True)
class CommandExecutor:
    logger: StructuredLogger
    debug: bool = False
    _active: subprocess.Popen[str] | None = field(default=None, init=False, repr=False)

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
        display = shlex.join(command)
        if self.debug:
            self.logger.debug(f"Command: {display}", operation="command", stage=stage)
        if log is not None:
            log.begin_transcript(display)

        chunks: list[str] = []
        try:
            if interactive:
                returncode = self._wait(subprocess.Popen(command, cwd=cwd, env=env))
            else:
                process = subprocess.Popen(
                    command,
                    cwd=cwd,
                    env=env,
                    stdout=subprocess.PIPE,
                    stderr=subprocess.STDOUT,
                    text=True,
                    errors="replace",
                    bufsize=1,
                )
                self._active = process
                for line in process.stdout or ():
                    if capture:
                        chunks.append(line)
                    else:
                        self.logger.echo(line)
                    if log is not None:
                        log.append(line)
                returncode = self._wait(process)
        except FileNotFoundError:
            returncode = 127
            self.logger.error(f"Command not found: {command[0]}", operation="command", stage=stage)
        except PermissionError:
            returncode = 126
            self.logger.error(f"Command not executable: {command[0]}", operation="command", stage=stage)
        finally:
            self._active = None

        if log is not None:
            log.end_transcript(returncode)
        output = "".join(chunks)
        if returncode == 0:
            return CommandResult(argv=command, stage=stage, output=output)
        return CommandFailure(argv=command, stage=stage, returncode=returncode, output=output)

    def terminate_active(self) -> None:
        process = self._active
        if process is not None and process.poll() is None:
            process.terminate()

    def _wait(self, process: subprocess.Popen[str]) -> int:
        self._active = process
        return process.wait()


@dataclass(slots=True)
class CommandSupervisor:
    """Runs commands until they succeed or the retry policy declines.

    ``on_failure`` fires after every failed attempt (the session log capture);
    ``on_restart`` fires before a retried attempt.
    """

    executor: CommandExecutor
    logger: StructuredLogger
    retry_policy: RetryPolicy = field(default_factory=NeverRetry)
    log: SessionLog | None = None
    on_failure: Callable[[CommandFailure], None] | None = None
    on_restart: Callable[[CommandFailure], None] | None = None

    def run(
        self,
        argv: Sequence[str | Path],
        *,
        stage: str,
        env: Mapping[str, str] | None = None,
        cwd: Path | None = None,
        capture: bool = False,
        interactive: bool = False,
        tee: bool = True,
    ) -> CommandResult:
        location = _caller_location()
        while True:
            outcome = self.executor.run(
                argv,
                stage=stage,
                env=env,
                cwd=cwd,
                log=self.log if tee else None,
                capture=capture,
                interactive=interactive,
            )
            if isinstance(outcome, CommandResult):
                return outcome
            failure = replace(outcome, location=location)
            self.logger.error(
                f"{failure.display} (exit {failure.returncode}) in stage {stage} from {location}",
                operation="command_failed",
                stage=stage,
                extra={"argv": list(failure.argv), "returncode": failure.returncode},
            )
            if self.on_failure is not None:
                self.on_failure(failure)
            if not self.retry_policy.should_retry(failure):
                raise CommandError(
                    "External command failed.",
                    hint="Inspect the session log for the command output.",
                    context={
                        "command": failure.display,
                        "stage": stage,
                        "returncode": str(failure.returncode),
                        "location": location,
                    },
                )
            if self.on_restart is not None:
                self.on_restart(failure)


def _caller_location() -> str:
    frame = traceback.extract_stack(limit=3)[0]
    return f"{Path(frame.filename).name}:{frame.lineno} {frame.name}"
