"""Per-session log file with an idempotent settings-diff block."""

from __future__ import annotations

import os
import re
from collections.abc import Callable, Iterable, Mapping
from dataclasses import dataclass, field
from pathlib import Path

from kforge.observability import strip_ansi

SETTINGS_SENTINEL = "### SETTINGS ###"
SETTING_NAME = re.compile(r"^[A-Z0-9_]{3,32}$")
TRANSCRIPT_PREFIX = "$ "

BANNER = (
    "kforge :: cross-toolchain kernel builder\n"
    "----------------------------------------\n"
)


@dataclass(frozen=True, slots=True)
class VariableSnapshot:
    """Immutable name/value map captured at a well-defined lifecycle point."""

    values: Mapping[str, str] = field(default_factory=dict)

    @classmethod
    def take(cls, *sources: Mapping[str, str]) -> VariableSnapshot:
        merged: dict[str, str] = {}
        for source in sources:
            merged.update({str(k): str(v) for k, v in source.items()})
        return cls(values=merged)

    @classmethod
    def of_environment(cls) -> VariableSnapshot:
        return cls.take(os.environ)


def diff_settings(
    before: VariableSnapshot,
    after: VariableSnapshot,
    denylist: Iterable[str] = (),
) -> list[str]:
    """Return ``NAME=value`` lines introduced or changed between two snapshots."""
    denied = frozenset(denylist)
    lines: list[str] = []
    for name, value in sorted(after.values.items()):
        if name in denied or not SETTING_NAME.fullmatch(name):
            continue
        if before.values.get(name) == value:
            continue
        flat = value.replace("\n", " ")
        lines.append(f"{name}={flat}")
    return lines


@dataclass(slots=True)
class SessionLog:
    """Append-only text log for one build attempt.

    The file ends with a ``### SETTINGS ###`` block once :meth:`capture` ran;
    the sentinel makes a second capture a no-op.
    """

    path: Path
    before: VariableSnapshot = field(default_factory=VariableSnapshot)
    denylist: tuple[str, ...] = ()

    def exists(self) -> bool:
        return self.path.is_file()

    def write_banner(self) -> None:
        """Create (or truncate) the log and write the banner header."""
        self.path.parent.mkdir(parents=True, exist_ok=True)
        self.path.write_text(BANNER, encoding="utf-8")

    def append(self, text: str) -> None:
        if not self.path.parent.is_dir():
            return
        with self.path.open("a", encoding="utf-8") as handle:
            handle.write(text)

    def begin_transcript(self, command: str) -> None:
        self.append(f"\n{TRANSCRIPT_PREFIX}{command}\n")

    def end_transcript(self, returncode: int) -> None:
        self.append(f"[exit {returncode}]\n")

    def transcripts(self) -> list[str]:
        if not self.exists():
            return []
        return [
            line[len(TRANSCRIPT_PREFIX) :]
            for line in self.path.read_text(encoding="utf-8").splitlines()
            if line.startswith(TRANSCRIPT_PREFIX)
        ]

    def contains_sentinel(self) -> bool:
        if not self.exists():
            return False
        with self.path.open(encoding="utf-8", errors="replace") as handle:
            return any(line.strip() == SETTINGS_SENTINEL for line in handle)

    def capture(
        self,
        after: VariableSnapshot,
        *,
        forward: Callable[[Path], None] | None = None,
    ) -> bool:
        """Append the settings diff once, then optionally forward the log.

        Returns ``True`` when the block was written by this call.
        """
        if not self.exists() or self.contains_sentinel():
            return False
        lines = diff_settings(self.before, after, self.denylist)
        content = strip_ansi(self.path.read_text(encoding="utf-8", errors="replace"))
        block = "\n\n" + SETTINGS_SENTINEL + "\n" + "".join(f"{line}\n" for line in lines)
        self.path.write_text(content + block, encoding="utf-8")
        if forward is not None:
            forward(self.path)
        return True

    def reopen(self) -> bool:
        """Drop a captured settings block so a retried attempt can keep appending."""
        if not self.contains_sentinel():
            return False
        content = self.path.read_text(encoding="utf-8", errors="replace")
        head, _, _ = content.partition("\n\n" + SETTINGS_SENTINEL + "\n")
        self.path.write_text(head, encoding="utf-8")
        return True

    def settings(self) -> dict[str, str]:
        """Parse the settings block back into a mapping (empty when absent)."""
        if not self.exists():
            return {}
        parsed: dict[str, str] = {}
        in_block = False
        for line in self.path.read_text(encoding="utf-8", errors="replace").splitlines():
            if line.strip() == SETTINGS_SENTINEL:
                in_block = True
                continue
            if in_block and "=" in line:
                name, _, value = line.partition("=")
                if SETTING_NAME.fullmatch(name):
                    parsed[name] = value
        return parsed
