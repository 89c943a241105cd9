"""Helpers that inspect and edit a kernel source tree."""

from __future__ import annotations

import re
from collections.abc import Mapping
from pathlib import Path

from kforge.errors import ValidationError

MENU_TARGETS = ("menuconfig", "nconfig", "xconfig", "gconfig")
DEFCONFIG_SUFFIX = "_defconfig"

_TOOLCHAIN_KEYS = ("CROSS_COMPILE", "CC")
_ASSIGNMENT = r"^(?P<key>{key})(?P<op>\s*[:?]?=\s*)(?P<value>.*)$"


def kernel_dir_problem(path: Path, arch: str) -> str | None:
    """Describe why *path* is not a usable kernel tree, or return ``None``."""
    if not path.is_absolute():
        return "kernel directory must be an absolute path"
    if not (path / "Makefile").is_file():
        return "kernel directory has no Makefile"
    if not (path / "arch" / arch / "configs").is_dir():
        return f"kernel directory has no arch/{arch}/configs"
    return None


def validate_kernel_dir(value: str | Path, arch: str) -> Path:
    path = Path(value).expanduser()
    problem = kernel_dir_problem(path, arch)
    if problem is not None:
        raise ValidationError(
            f"Invalid kernel directory: {problem}.",
            context={"kernel_dir": str(path), "arch": arch},
        )
    return path


def configs_dir(kernel_dir: Path, arch: str) -> Path:
    return kernel_dir / "arch" / arch / "configs"


def list_defconfigs(kernel_dir: Path, arch: str) -> list[str]:
    """Defconfig names relative to ``arch/<arch>/configs``, vendor ones included."""
    root = configs_dir(kernel_dir, arch)
    found = [path.name for path in root.glob(f"*{DEFCONFIG_SUFFIX}") if path.is_file()]
    found += [
        f"vendor/{path.name}"
        for path in (root / "vendor").glob(f"*{DEFCONFIG_SUFFIX}")
        if path.is_file()
    ]
    return sorted(found)


def save_defconfig(kernel_dir: Path, arch: str, config: Path, name: str) -> Path:
    """Copy *config* to ``<name>_defconfig``, keeping any previous file as ``_bak``."""
    target = configs_dir(kernel_dir, arch) / f"{name}{DEFCONFIG_SUFFIX}"
    if target.exists():
        target.replace(target.with_name(f"{target.name}_bak"))
    target.write_bytes(config.read_bytes())
    return target


def makefile_value(makefile: Path, key: str) -> str:
    """Return the first assignment of *key* in a Makefile, or an empty string."""
    if not makefile.is_file():
        return ""
    pattern = re.compile(_ASSIGNMENT.format(key=re.escape(key)))
    for line in makefile.read_text(encoding="utf-8", errors="replace").splitlines():
        found = pattern.match(line)
        if found:
            return found.group("value").strip()
    return ""


def toolchain_mismatches(makefile: Path, options: Mapping[str, str]) -> dict[str, tuple[str, str]]:
    """Compare the Makefile CROSS_COMPILE/CC assignments against the make options."""
    mismatches: dict[str, tuple[str, str]] = {}
    for key in _TOOLCHAIN_KEYS:
        expected = options.get(key)
        if expected is None:
            continue
        current = makefile_value(makefile, key)
        if current and current != expected:
            mismatches[key] = (current, expected)
    return mismatches


def rewrite_toolchain(makefile: Path, values: Mapping[str, str]) -> None:
    """Rewrite the first assignment of each key in *values*."""
    lines = makefile.read_text(encoding="utf-8", errors="replace").splitlines(keepends=True)
    pending = dict(values)
    for index, line in enumerate(lines):
        for key in list(pending):
            found = re.match(_ASSIGNMENT.format(key=re.escape(key)), line.rstrip("\n"))
            if found:
                ending = "\n" if line.endswith("\n") else ""
                lines[index] = f"{key}{found.group('op')}{pending.pop(key)}{ending}"
                break
    makefile.write_text("".join(lines), encoding="utf-8")


def options_map(options: tuple[str, ...]) -> dict[str, str]:
    parsed: dict[str, str] = {}
    for option in options:
        key, sep, value = option.partition("=")
        if sep:
            parsed[key] = value
    return parsed


def read_compiler(compile_h: Path) -> str:
    """Return the ``LINUX_COMPILER`` string recorded in ``compile.h``."""
    for line in compile_h.read_text(encoding="utf-8", errors="replace").splitlines():
        if "LINUX_COMPILER" in line:
            _, _, rest = line.partition("LINUX_COMPILER")
            return rest.strip().strip('"')
    return ""
