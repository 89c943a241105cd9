"""Interactive prompting and the validation rules applied to answers."""

from __future__ import annotations

import re
from collections.abc import Callable, Sequence
from dataclasses import dataclass, field
from typing import Protocol

from kforge.observability import StructuredLogger

CODENAME_PATTERN = re.compile(r"^[A-Za-z0-9][A-Za-z0-9_-]{2,19}$")
DEFCONFIG_NAME_PATTERN = re.compile(r"^[A-Za-z0-9][A-Za-z0-9_-]{2,25}$")

_YES = frozenset({"y", "yes"})
_NO = frozenset({"n", "no"})


class Prompter(Protocol):
    def ask(self, question: str) -> str:
        """Return a free-form answer."""

    def confirm(self, question: str, *, default: bool) -> bool:
        """Return a yes/no decision; an empty answer yields *default*."""

    def select(self, question: str, options: Sequence[str]) -> str:
        """Return one of *options*."""


@dataclass(slots=True)
class ConsolePrompter:
    """Prompter reading from stdin; invalid answers are re-asked indefinitely."""

    logger: StructuredLogger = field(default_factory=StructuredLogger)
    reader: Callable[[str], str] = input

    def ask(self, question: str) -> str:
        return self.reader(f"\n==> {question}\n==> ").strip()

    def confirm(self, question: str, *, default: bool) -> bool:
        hint = "[Y/n]" if default else "[y/N]"
        while True:
            answer = self.reader(f"\n==> {question} {hint}\n==> ").strip().lower()
            if not answer:
                return default
            if answer in _YES:
                return True
            if answer in _NO:
                return False
            self.logger.error("Answer with yes or no.", operation="prompt")

    def select(self, question: str, options: Sequence[str]) -> str:
        if not options:
            raise ValueError("select() requires at least one option.")
        menu = "\n".join(f"{index}) {option}" for index, option in enumerate(options, start=1))
        while True:
            answer = self.reader(f"\n==> {question}\n{menu}\n#? ").strip()
            if answer.isdigit() and 1 <= int(answer) <= len(options):
                return options[int(answer) - 1]
            if answer in options:
                return answer
            self.logger.error("Invalid selection.", operation="prompt")


def ask_until(
    prompter: Prompter,
    question: str,
    *,
    accept: Callable[[str], bool],
    logger: StructuredLogger,
    error: str,
) -> str:
    """Re-issue *question* until *accept* passes; validation errors are never fatal."""
    while True:
        answer = prompter.ask(question)
        if accept(answer):
            return answer
        logger.error(f"{error}: {answer!r}", operation="validation")


def is_valid_codename(value: str) -> bool:
    return CODENAME_PATTERN.fullmatch(value) is not None


def is_valid_defconfig_name(value: str) -> bool:
    return DEFCONFIG_NAME_PATTERN.fullmatch(value) is not None


def parse_cores(value: str, available: int) -> int | None:
    """Return the core count when it is an integer in ``1..available``."""
    try:
        cores = int(value)
    except ValueError:
        return None
    return cores if 1 <= cores <= available else None
