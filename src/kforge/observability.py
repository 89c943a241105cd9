"""Structured logging and console reporting helpers."""

from __future__ import annotations

import json
import re
import sys
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Any, Literal, Protocol, TextIO

Level = Literal["debug", "info", "note", "warn", "error"]

ANSI_PATTERN = re.compile(r"\x1b\[[0-9;]*[mGKHF]")

_COLOURS: dict[str, str] = {
    "debug": "\033[1;34m",
    "info": "",
    "note": "\033[1;36m",
    "warn": "\033[1;33m",
    "error": "\033[1;31m",
}
_RESET = "\033[0m"


def strip_ansi(text: str) -> str:
    """Remove terminal colour/cursor escape sequences from *text*."""
    return ANSI_PATTERN.sub("", text)


class LineSink(Protocol):
    def append(self, text: str) -> None:
        """Append plain text to a persisted record."""


@dataclass(slots=True)
class StructuredLogger:
    """Collects structured records and echoes them to the console.

    Records carry the operation, the pipeline stage and the target codename so a
    session can be reconstructed from ``to_json_lines()`` output. When ``sink``
    is set (the active session log), rendered lines are mirrored into it.
    """

    records: list[dict[str, Any]] = field(default_factory=list)
    stream: TextIO | None = None
    sink: LineSink | None = None
    codename: str | None = None
    debug_enabled: bool = False

    def log(
        self,
        *,
        operation: str,
        message: str,
        level: Level = "info",
        stage: str | None = None,
        extra: dict[str, Any] | None = None,
    ) -> None:
        record: dict[str, Any] = {
            "level": level,
            "operation": operation,
            "stage": stage,
            "codename": self.codename,
            "message": message,
            "timestamp": datetime.now().isoformat(timespec="seconds"),
        }
        if extra is not None:
            record["extra"] = extra
        self.records.append(record)
        if level == "debug" and not self.debug_enabled:
            return
        self._emit(level, message)

    def note(self, message: str, *, operation: str = "note", stage: str | None = None) -> None:
        self.log(operation=operation, message=message, level="note", stage=stage)

    def warn(
        self,
        message: str,
        *,
        operation: str = "warning",
        stage: str | None = None,
        extra: dict[str, Any] | None = None,
    ) -> None:
        self.log(operation=operation, message=message, level="warn", stage=stage, extra=extra)

    def error(
        self,
        message: str,
        *,
        operation: str = "error",
        stage: str | None = None,
        extra: dict[str, Any] | None = None,
    ) -> None:
        self.log(operation=operation, message=message, level="error", stage=stage, extra=extra)

    def debug(self, message: str, *, operation: str = "debug", stage: str | None = None) -> None:
        self.log(operation=operation, message=message, level="debug", stage=stage)

    def echo(self, text: str) -> None:
        """Write raw command output to the console without recording it."""
        stream = self.stream or sys.stdout
        stream.write(text)
        stream.flush()

    def to_json_lines(self, path: str | Path) -> Path:
        output_path = Path(path)
        output_path.parent.mkdir(parents=True, exist_ok=True)
        lines = [json.dumps(record, sort_keys=True) for record in self.records]
        output_path.write_text("\n".join(lines) + "\n", encoding="utf-8")
        return output_path

    def _emit(self, level: Level, message: str) -> None:
        match level:
            case "note":
                line = f"[{datetime.now():%H:%M:%S}] {message}"
            case "warn":
                line = f"WARNING: {message}"
            case "error":
                line = f"ERROR: {message}"
            case "debug":
                line = f"DEBUG: {message}"
            case _:
                line = message
        stream = self.stream or (sys.stderr if level in ("warn", "error", "debug") else sys.stdout)
        if _isatty(stream) and _COLOURS[level]:
            stream.write(f"\n{_COLOURS[level]}{line}{_RESET}\n")
        else:
            stream.write(f"\n{line}\n")
        stream.flush()
        if self.sink is not None:
            self.sink.append(f"\n{line}\n")


def _isatty(stream: TextIO) -> bool:
    isatty = getattr(stream, "isatty", None)
    return bool(isatty and isatty())
