"""Apply or revert patches shipped under ``patches/``."""

from __future__ import annotations

from pathlib import Path

from kforge.errors import PreconditionError
from kforge.executor import CommandResult, CommandSupervisor

PATCH_DIR = "patches"


def list_patches(root: Path) -> list[Path]:
    return sorted((root / PATCH_DIR).glob("*.patch"))


def patch_command(patch: Path, *, revert: bool = False) -> list[str]:
    argv = ["patch"]
    if revert:
        argv.append("-R")
    return [*argv, "-p1", "-i", str(patch)]


def apply_patch(
    supervisor: CommandSupervisor,
    kernel_dir: Path,
    patch: Path,
    *,
    revert: bool = False,
) -> CommandResult:
    if not patch.is_file():
        raise PreconditionError("Patch file not found.", context={"patch": str(patch)})
    return supervisor.run(
        patch_command(patch, revert=revert),
        stage="revert" if revert else "patch",
        cwd=kernel_dir,
        tee=False,
    )
