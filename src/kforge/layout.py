"""Per-target working directory layout."""

from __future__ import annotations

import shutil
from dataclasses import dataclass
from pathlib import Path

TARGET_FOLDERS = ("builds", "logs", "out")
TOOLCHAINS = "toolchains"


@dataclass(frozen=True, slots=True)
class Workspace:
    """Directory layout rooted at the tool checkout.

    ``builds/<target>`` holds packaged archives, ``logs/<target>`` one log per
    attempt, ``out/<target>`` native build output and ``toolchains/`` every
    installed toolchain plus its version marker files.
    """

    root: Path

    @property
    def toolchains_dir(self) -> Path:
        return self.root / TOOLCHAINS

    def out_dir(self, codename: str) -> Path:
        return self.root / "out" / codename

    def build_dir(self, codename: str) -> Path:
        return self.root / "builds" / codename

    def log_dir(self, codename: str) -> Path:
        return self.root / "logs" / codename

    def boot_dir(self, codename: str, arch: str) -> Path:
        return self.out_dir(codename) / "arch" / arch / "boot"

    def log_path(self, codename: str, kernel_name: str, date: str, time: str) -> Path:
        return self.log_dir(codename) / f"{kernel_name}_{date}_{time}.log"

    def create(self, codename: str) -> tuple[Path, ...]:
        created: list[Path] = []
        for folder in TARGET_FOLDERS:
            path = self.root / folder / codename
            if not path.is_dir():
                path.mkdir(parents=True, exist_ok=True)
                created.append(path)
        if not self.toolchains_dir.is_dir():
            self.toolchains_dir.mkdir(parents=True, exist_ok=True)
            created.append(self.toolchains_dir)
        return tuple(created)

    def prune_empty(self, codename: str | None) -> tuple[Path, ...]:
        """Remove per-target folders that ended up empty."""
        if not codename:
            return ()
        removed: list[Path] = []
        for folder in TARGET_FOLDERS:
            path = self.root / folder / codename
            if path.is_dir() and not any(path.iterdir()):
                shutil.rmtree(path, ignore_errors=True)
                removed.append(path)
        return tuple(removed)

    def targets(self) -> tuple[str, ...]:
        out_root = self.root / "out"
        if not out_root.is_dir():
            return ()
        return tuple(sorted(path.name for path in out_root.iterdir() if path.is_dir()))
