"""User configuration loaded from shell-style ``etc/*.cfg`` files."""

from __future__ import annotations

import dataclasses
import getpass
import os
import platform
import re
import shlex
from collections.abc import Mapping
from dataclasses import dataclass, field
from pathlib import Path

from kforge.errors import PathResolutionError

DEFAULT = "default"

USER_CONFIG = Path("etc") / "user.cfg"
BASE_CONFIG = Path("etc") / "settings.cfg"
ENV_PREFIX = "KFORGE_"

_ASSIGNMENT = re.compile(r"^([A-Z][A-Z0-9_]*)=(.*)$")
_TRUE_VALUES = frozenset({"1", "true", "yes", "on"})

DEFAULT_INCLUDED = (
    "Image.gz-dtb",
    "Image.gz",
    "Image",
    "dtbo.img",
    "dtb.img",
    "erofs.dtb",
    "spectrum.rc",
)

DEFAULT_EXCLUDED_VARS = (
    "TELEGRAM_CHAT_ID",
    "TELEGRAM_BOT_TOKEN",
    "KFORGE_TELEGRAM_CHAT_ID",
    "KFORGE_TELEGRAM_BOT_TOKEN",
    "PATH",
    "OLDPWD",
    "PWD",
    "SHLVL",
    "COLUMNS",
    "LINES",
    "SSH_AUTH_SOCK",
    "SSH_AGENT_PID",
    "GPG_AGENT_INFO",
    "DBUS_SESSION_BUS_ADDRESS",
    "XDG_SESSION_ID",
    "LS_COLORS",
)


@dataclass(frozen=True, slots=True)
class Settings:
    """Build settings. ``"default"`` means the value is asked interactively."""

    root: Path = field(default_factory=Path.cwd)
    codename: str = DEFAULT
    kernel_dir: str = DEFAULT
    compiler: str = DEFAULT
    arch: str = "arm64"
    tag: str = "kforge"
    kernel_variant: str = "Stable"
    builder: str = DEFAULT
    host: str = DEFAULT
    timezone: str = DEFAULT
    platform_version: str = ""
    android_major_version: str = ""
    ignore_makefile: bool = False
    make_cmd_args: bool = True
    host_linker: bool = True
    lto: bool = False
    lto_library: str = "ld.lld"
    llvm_flags: bool = False
    debug: bool = False
    editor: str = field(default_factory=lambda: os.environ.get("EDITOR", "nano"))
    telegram_chat_id: str = ""
    telegram_bot_token: str = ""
    telegram_api: str = "https://api.telegram.org"
    anykernel_url: str = "https://github.com/osm0sis/AnyKernel3.git"
    anykernel_branch: str = "master"
    anykernel_dir: str = "AnyKernel"
    ak3_banner: bool = False
    ak3_banner_file: str = "docs/ak3_banner"
    zipsigner: str = "bin/zipsigner-3.0-dexed.jar"
    linux_stable: str = "https://git.kernel.org/pub/scm/linux/kernel/git/stable/linux.git"
    self_branch: str = "main"
    lock_file: str = "kforge.lock"
    included: tuple[str, ...] = DEFAULT_INCLUDED
    excluded_vars: tuple[str, ...] = DEFAULT_EXCLUDED_VARS
    toolchain_options: Mapping[str, tuple[str, ...]] = field(default_factory=dict)

    @classmethod
    def load(cls, root: str | Path, *, environ: Mapping[str, str] | None = None) -> Settings:
        """Load ``etc/user.cfg`` (or ``etc/settings.cfg``) under *root*.

        Environment variables named ``KFORGE_<KEY>`` override file values.
        """
        base = Path(root)
        if not base.is_dir():
            raise PathResolutionError(
                "Tool root directory cannot be found.",
                context={"root": str(base)},
            )
        values: dict[str, str | tuple[str, ...]] = {}
        for candidate in (base / USER_CONFIG, base / BASE_CONFIG):
            if candidate.is_file():
                values = parse_cfg(candidate.read_text(encoding="utf-8"))
                break
        env = os.environ if environ is None else environ
        for key, value in env.items():
            if key.startswith(ENV_PREFIX) and len(key) > len(ENV_PREFIX):
                values[key[len(ENV_PREFIX) :]] = value
        return cls.from_values(values, root=base.resolve())

    @classmethod
    def from_values(
        cls,
        values: Mapping[str, str | tuple[str, ...]],
        *,
        root: Path,
    ) -> Settings:
        kwargs: dict[str, object] = {"root": root}
        options: dict[str, tuple[str, ...]] = {}
        defaults = cls()
        for item in dataclasses.fields(cls):
            if item.name in ("root", "toolchain_options"):
                continue
            raw = values.get(item.name.upper())
            if raw is None:
                continue
            kwargs[item.name] = _coerce(raw, getattr(defaults, item.name))
        for key, raw in values.items():
            if key.endswith("_OPTIONS"):
                name = key[: -len("_OPTIONS")].lower().replace("_", "-")
                options[name] = raw if isinstance(raw, tuple) else tuple(shlex.split(raw))
        kwargs["toolchain_options"] = options
        return cls(**kwargs)  # type: ignore[arg-type]

    def replace(self, **changes: object) -> Settings:
        return dataclasses.replace(self, **changes)  # type: ignore[arg-type]

    @property
    def notifications_configured(self) -> bool:
        return bool(self.telegram_chat_id and self.telegram_bot_token)

    def resolved_builder(self) -> str:
        return getpass.getuser() if self.builder == DEFAULT else self.builder

    def resolved_host(self) -> str:
        return platform.node() if self.host == DEFAULT else self.host

    @property
    def anykernel_path(self) -> Path:
        return self.root / self.anykernel_dir

    @property
    def lock_path(self) -> Path:
        return self.root / self.lock_file


def parse_cfg(text: str) -> dict[str, str | tuple[str, ...]]:
    """Parse ``KEY=value`` and ``KEY=(a b c)`` assignments from shell-style text."""
    values: dict[str, str | tuple[str, ...]] = {}
    pending_key: str | None = None
    pending: list[str] = []
    for raw in text.splitlines():
        line = raw.strip()
        if pending_key is not None:
            pending.append(line)
            if line.endswith(")"):
                body = " ".join(pending).rstrip()[:-1]
                values[pending_key] = tuple(shlex.split(body, comments=True))
                pending_key, pending = None, []
            continue
        if not line or line.startswith("#"):
            continue
        match = _ASSIGNMENT.match(line)
        if match is None:
            continue
        key, value = match.groups()
        if value.startswith("("):
            body = value[1:].rstrip()
            if body.endswith(")"):
                values[key] = tuple(shlex.split(body[:-1], comments=True))
            else:
                pending_key, pending = key, [body]
            continue
        parts = shlex.split(value, comments=True)
        values[key] = parts[0] if parts else ""
    return values


def _coerce(raw: str | tuple[str, ...], default: object) -> object:
    if isinstance(default, bool):
        text = raw if isinstance(raw, str) else " ".join(raw)
        return text.strip().lower() in _TRUE_VALUES
    if isinstance(default, tuple):
        return raw if isinstance(raw, tuple) else tuple(shlex.split(raw))
    return raw if isinstance(raw, str) else " ".join(raw)
