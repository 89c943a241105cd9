"""Toolchain catalogue and resolution.

Every supported compiler family is a ``ToolchainKind``. Resolving a kind walks
its installation directories, validates that the bundled binaries were linked
against an interpreter present on this host, prepends the ``bin`` directories
to the search path and extracts a version string.
"""

from __future__ import annotations

import re
import subprocess
from collections.abc import Callable, Mapping, Sequence
from dataclasses import dataclass, field
from enum import StrEnum
from pathlib import Path

from elftools.common.exceptions import ELFError
from elftools.elf.elffile import ELFFile

from kforge.errors import PreconditionError, ToolchainError, ValidationError
from kforge.executor import BuildEnvironment
from kforge.settings import Settings


class ToolchainKind(StrEnum):
    AOSP_CLANG = "aosp-clang"
    EVA_GCC = "eva-gcc"
    PROTON_CLANG = "proton-clang"
    NEUTRON_CLANG = "neutron-clang"
    LOS_GCC = "los-gcc"
    PROTON_GCC = "proton-gcc"
    NEUTRON_GCC = "neutron-gcc"
    HOST_CLANG = "host-clang"

    @classmethod
    def parse(cls, value: str) -> ToolchainKind:
        try:
            return cls(value)
        except ValueError as exc:
            raise PreconditionError(
                f"Unsupported compiler `{value}`.",
                hint="Pick one of: " + ", ".join(kind.value for kind in cls),
                context={"compiler": value},
            ) from exc


@dataclass(frozen=True, slots=True)
class ArchiveSpec:
    """Vendor toolchain distributed as per-tag tarballs behind a listing page."""

    latest_pattern: str
    local_pattern: str
    archive_base: str
    strip_prefix: str = ""

    def archive_url(self, tag: str) -> str:
        return f"{self.archive_base}/{tag}.tar.gz"


@dataclass(frozen=True, slots=True)
class ToolchainSource:
    name: str
    url: str
    check: str
    version_path: str
    branch: str | None = None
    archive: ArchiveSpec | None = None

    @property
    def is_archive(self) -> bool:
        return self.archive is not None


_AOSP_CLANG_URL = (
    "https://android.googlesource.com/platform/prebuilts/clang/host/linux-x86/+/refs/heads/master"
)
_LLVM_ARM64_URL = (
    "https://android.googlesource.com/platform/prebuilts/gcc/linux-x86/aarch64/"
    "aarch64-linux-android-4.9/+refs"
)
_LLVM_ARM_URL = (
    "https://android.googlesource.com/platform/prebuilts/gcc/linux-x86/arm/"
    "arm-linux-androideabi-4.9/+refs"
)

AOSP_CLANG = ToolchainSource(
    name="aosp-clang",
    url=_AOSP_CLANG_URL,
    check="aosp-clang/bin/clang",
    version_path="aosp-clang-version",
    archive=ArchiveSpec(
        latest_pattern=r"clang-r\d+[a-z]",
        local_pattern=r"r\d+[a-z]",
        archive_base=_AOSP_CLANG_URL.replace("+", "+archive", 1),
        strip_prefix="clang-",
    ),
)
LLVM_ARM64 = ToolchainSource(
    name="llvm-arm64",
    url=_LLVM_ARM64_URL,
    check="llvm-arm64/bin/aarch64-linux-android-as",
    version_path="llvm-arm64-version",
    archive=ArchiveSpec(
        latest_pattern=r"llvm-r\d+[a-z]?",
        local_pattern=r"llvm-r\d+[a-z]?",
        archive_base=_LLVM_ARM64_URL.replace("+refs", "+archive/refs/heads"),
    ),
)
LLVM_ARM = ToolchainSource(
    name="llvm-arm",
    url=_LLVM_ARM_URL,
    check="llvm-arm/bin/arm-linux-androideabi-as",
    version_path="llvm-arm-version",
    archive=ArchiveSpec(
        latest_pattern=r"llvm-r\d+[a-z]?",
        local_pattern=r"llvm-r\d+[a-z]?",
        archive_base=_LLVM_ARM_URL.replace("+refs", "+archive/refs/heads"),
    ),
)
PROTON = ToolchainSource(
    name="proton",
    url="https://github.com/kdrag0n/proton-clang.git",
    branch="master",
    check="proton/bin/clang",
    version_path="proton/lib/clang",
)
NEUTRON = ToolchainSource(
    name="neutron",
    url="https://github.com/Neutron-Toolchains/neutron-clang.git",
    branch="main",
    check="neutron/bin/clang",
    version_path="neutron/lib/clang",
)
EVA_ARM64 = ToolchainSource(
    name="gcc-arm64",
    url="https://github.com/mvaisakh/gcc-arm64.git",
    branch="gcc-master",
    check="gcc-arm64/bin/aarch64-elf-gcc",
    version_path="gcc-arm64/lib/gcc/aarch64-elf",
)
EVA_ARM = ToolchainSource(
    name="gcc-arm",
    url="https://github.com/mvaisakh/gcc-arm.git",
    branch="gcc-master",
    check="gcc-arm/bin/arm-eabi-gcc",
    version_path="gcc-arm/lib/gcc/arm-eabi",
)
LOS_ARM64 = ToolchainSource(
    name="los-gcc-arm64",
    url=(
        "https://github.com/LineageOS/"
        "android_prebuilts_gcc_linux-x86_aarch64_aarch64-linux-android-4.9.git"
    ),
    branch="lineage-19.1",
    check="los-gcc-arm64/bin/aarch64-linux-android-gcc",
    version_path="los-gcc-arm64/lib/gcc/aarch64-linux-android",
)
LOS_ARM = ToolchainSource(
    name="los-gcc-arm",
    url=(
        "https://github.com/LineageOS/"
        "android_prebuilts_gcc_linux-x86_arm_arm-linux-androideabi-4.9.git"
    ),
    branch="lineage-19.1",
    check="los-gcc-arm/bin/arm-linux-androideabi-gcc",
    version_path="los-gcc-arm/lib/gcc/arm-linux-androideabi",
)

SOURCES: tuple[ToolchainSource, ...] = (
    AOSP_CLANG,
    LLVM_ARM64,
    LLVM_ARM,
    PROTON,
    NEUTRON,
    EVA_ARM64,
    EVA_ARM,
    LOS_ARM64,
    LOS_ARM,
)

_CLANG_BINUTILS = (
    "AR=llvm-ar",
    "NM=llvm-nm",
    "OBJCOPY=llvm-objcopy",
    "OBJDUMP=llvm-objdump",
    "STRIP=llvm-strip",
)

DEFAULT_OPTIONS: Mapping[ToolchainKind, tuple[str, ...]] = {
    ToolchainKind.AOSP_CLANG: (
        "CLANG_TRIPLE=aarch64-linux-gnu-",
        "CROSS_COMPILE=aarch64-linux-android-",
        "CROSS_COMPILE_ARM32=arm-linux-androideabi-",
        "CC=clang",
        *_CLANG_BINUTILS,
        "LD=ld.lld",
    ),
    ToolchainKind.PROTON_CLANG: (
        "CLANG_TRIPLE=aarch64-linux-gnu-",
        "CROSS_COMPILE=aarch64-linux-gnu-",
        "CROSS_COMPILE_ARM32=arm-linux-gnueabi-",
        "CC=clang",
        *_CLANG_BINUTILS,
        "LD=ld.lld",
    ),
    ToolchainKind.NEUTRON_CLANG: (
        "CLANG_TRIPLE=aarch64-linux-gnu-",
        "CROSS_COMPILE=aarch64-linux-gnu-",
        "CROSS_COMPILE_ARM32=arm-linux-gnueabi-",
        "CC=clang",
        *_CLANG_BINUTILS,
        "LD=ld.lld",
    ),
    ToolchainKind.EVA_GCC: (
        "CROSS_COMPILE=aarch64-elf-",
        "CROSS_COMPILE_ARM32=arm-eabi-",
        "CC=aarch64-elf-gcc",
        "LD=aarch64-elf-ld.lld",
    ),
    ToolchainKind.LOS_GCC: (
        "CROSS_COMPILE=aarch64-linux-android-",
        "CROSS_COMPILE_ARM32=arm-linux-androideabi-",
        "CC=aarch64-linux-android-gcc",
        "LD=aarch64-linux-android-ld",
    ),
    ToolchainKind.PROTON_GCC: (
        "CROSS_COMPILE=aarch64-elf-",
        "CROSS_COMPILE_ARM32=arm-eabi-",
        "CC=clang",
        "LD=aarch64-elf-ld.lld",
    ),
    ToolchainKind.NEUTRON_GCC: (
        "CROSS_COMPILE=aarch64-elf-",
        "CROSS_COMPILE_ARM32=arm-eabi-",
        "CC=clang",
        "LD=aarch64-elf-ld.lld",
    ),
    ToolchainKind.HOST_CLANG: (
        "CROSS_COMPILE=aarch64-linux-gnu-",
        "CROSS_COMPILE_ARM32=arm-linux-gnueabi-",
        "CC=clang",
        "LD=ld.lld",
    ),
}


@dataclass(frozen=True, slots=True)
class ToolchainDescriptor:
    """Concrete toolchain selected for one session; immutable once resolved."""

    kind: ToolchainKind
    install_dirs: tuple[Path, ...]
    linker_checks: tuple[Path, ...]
    path_entries: tuple[Path, ...]
    version: str
    options: tuple[str, ...]
    lto_dir: Path | None = None

    def option(self, key: str) -> str | None:
        prefix = f"{key}="
        for option in self.options:
            if option.startswith(prefix):
                return option[len(prefix) :]
        return None

    @property
    def is_clang(self) -> bool:
        return self.option("CC") == "clang"


@dataclass(frozen=True, slots=True)
class ResolutionPlan:
    sources: tuple[ToolchainSource, ...]
    checks: tuple[ToolchainSource, ...]
    versions: tuple[ToolchainSource, ...]


def plan_for(kind: ToolchainKind) -> ResolutionPlan | None:
    """Return the bundle layout for *kind*; ``None`` means the host compiler."""
    match kind:
        case ToolchainKind.AOSP_CLANG:
            return ResolutionPlan(
                sources=(AOSP_CLANG, LLVM_ARM64, LLVM_ARM),
                checks=(AOSP_CLANG, LLVM_ARM64),
                versions=(AOSP_CLANG,),
            )
        case ToolchainKind.EVA_GCC:
            return ResolutionPlan(
                sources=(EVA_ARM64, EVA_ARM),
                checks=(EVA_ARM64,),
                versions=(EVA_ARM64,),
            )
        case ToolchainKind.PROTON_CLANG:
            return ResolutionPlan(sources=(PROTON,), checks=(PROTON,), versions=(PROTON,))
        case ToolchainKind.NEUTRON_CLANG:
            return ResolutionPlan(sources=(NEUTRON,), checks=(NEUTRON,), versions=(NEUTRON,))
        case ToolchainKind.LOS_GCC:
            return ResolutionPlan(
                sources=(LOS_ARM64, LOS_ARM),
                checks=(LOS_ARM64,),
                versions=(LOS_ARM64,),
            )
        case ToolchainKind.PROTON_GCC:
            return ResolutionPlan(
                sources=(PROTON, EVA_ARM64, EVA_ARM),
                checks=(PROTON, EVA_ARM64),
                versions=(PROTON, EVA_ARM64),
            )
        case ToolchainKind.NEUTRON_GCC:
            return ResolutionPlan(
                sources=(NEUTRON, EVA_ARM64, EVA_ARM),
                checks=(NEUTRON, EVA_ARM64),
                versions=(NEUTRON, EVA_ARM64),
            )
        case ToolchainKind.HOST_CLANG:
            return None


def program_interpreter(binary: Path) -> str | None:
    """Return the ``PT_INTERP`` path requested by an ELF binary, if any."""
    with binary.open("rb") as handle:
        elf = ELFFile(handle)
        for segment in elf.iter_segments():
            if segment["p_type"] == "PT_INTERP":
                return segment.get_interp_name()
    return None


def check_linker(binaries: Sequence[Path], *, compiler: str) -> None:
    """Fail when a toolchain binary needs a dynamic linker this host lacks."""
    for binary in binaries:
        if not binary.is_file():
            raise ToolchainError(
                "Toolchain binary is missing.",
                hint="Reinstall the toolchain.",
                context={"compiler": compiler, "binary": str(binary)},
            )
        try:
            interpreter = program_interpreter(binary)
        except ELFError as exc:
            raise ToolchainError(
                "Toolchain binary is not a valid ELF file.",
                context={"compiler": compiler, "binary": str(binary), "detail": str(exc)},
            ) from exc
        if interpreter and not Path(interpreter).exists():
            raise ToolchainError(
                f"Incompatible toolchain: {compiler} was built for another host linker.",
                hint="Use a toolchain built for this host or install the missing linker.",
                context={"compiler": compiler, "binary": str(binary), "linker": interpreter},
            )


def verify_search_path(search_path: str, install_dirs: Sequence[Path]) -> None:
    """Ensure each ``<dir>/bin`` literally appears in *search_path*."""
    for directory in install_dirs:
        if f"{directory}/bin" not in search_path:
            raise ToolchainError(
                "Toolchain directory missing from the search path.",
                context={"directory": f"{directory}/bin", "path": search_path},
            )


def installed_version(toolchains_dir: Path, source: ToolchainSource) -> str:
    """Archive toolchains keep a marker file; git toolchains a versioned subdirectory."""
    if source.is_archive:
        marker = toolchains_dir / source.version_path
        if not marker.is_file():
            return "unknown"
        lines = marker.read_text(encoding="utf-8").splitlines()
        return lines[0].strip() if lines else "unknown"
    root = toolchains_dir / source.version_path
    if not root.is_dir():
        return "unknown"
    candidates = sorted(path.name for path in root.iterdir() if path.is_dir())
    return candidates[0] if candidates else "unknown"


def host_compiler_version() -> str:
    try:
        completed = subprocess.run(
            ["clang", "--version"],
            capture_output=True,
            text=True,
            check=False,
        )
    except FileNotFoundError as exc:
        raise ToolchainError(
            "Host compiler `clang` is not installed.",
            hint="Install clang or select a bundled toolchain.",
        ) from exc
    for line in completed.stdout.splitlines():
        if "clang" in line or "version" in line:
            return line.split()[-1]
    return "unknown"


def linux_version_tuple(version: str) -> tuple[int, ...]:
    parts: list[int] = []
    for piece in version.split(".")[:3]:
        digits = re.match(r"\d+", piece)
        if digits is None:
            break
        parts.append(int(digits.group()))
    return tuple(parts)


def finalize_options(
    descriptor: ToolchainDescriptor,
    *,
    linux_version: str,
    settings: Settings,
) -> tuple[str, ...]:
    """Produce the make option vector used for every build-tool invocation."""
    options = list(descriptor.options)
    if settings.lto:
        options = [f"LD={settings.lto_library}" if o.startswith("LD=") else o for o in options]
    if descriptor.is_clang and linux_version_tuple(linux_version)[:2] > (4, 2):
        options = [
            o.replace("CROSS_COMPILE_ARM32=", "CROSS_COMPILE_COMPAT=", 1)
            if o.startswith("CROSS_COMPILE_ARM32=")
            else o
            for o in options
        ]
    if not settings.make_cmd_args:
        options = options[:1]
    if settings.debug:
        options.insert(0, "CONFIG_DEBUG_SECTION_MISMATCH=y")
    return tuple(options)


def environment_for(
    descriptor: ToolchainDescriptor,
    *,
    settings: Settings,
    android_major_version: str = "",
    platform_version: str = "",
) -> BuildEnvironment:
    variables: dict[str, str] = {
        "KBUILD_BUILD_USER": settings.resolved_builder(),
        "KBUILD_BUILD_HOST": settings.resolved_host(),
    }
    if android_major_version:
        variables["ANDROID_MAJOR_VERSION"] = android_major_version
    if platform_version:
        variables["PLATFORM_VERSION"] = platform_version
    if settings.lto and descriptor.lto_dir is not None:
        variables["LD_LIBRARY_PATH"] = str(descriptor.lto_dir)
    if settings.llvm_flags:
        variables["LLVM"] = "1"
        variables["LLVM_IAS"] = "1"
    return BuildEnvironment(
        path_entries=descriptor.path_entries,
        variables=variables,
        options=descriptor.options,
    )


@dataclass(slots=True)
class ToolchainResolver:
    """Maps a ``ToolchainKind`` to a ``ToolchainDescriptor`` exactly once per session."""

    settings: Settings
    toolchains_dir: Path
    acquire: Callable[[ToolchainSource], None] | None = None
    base_path: str = ""
    _resolved: ToolchainDescriptor | None = field(default=None, init=False, repr=False)

    def resolve(self, kind: ToolchainKind) -> ToolchainDescriptor:
        if self._resolved is not None:
            raise ValidationError(
                "Toolchain was already resolved for this session.",
                context={"resolved": self._resolved.kind.value, "requested": kind.value},
            )
        options = self.settings.toolchain_options.get(kind.value) or DEFAULT_OPTIONS[kind]
        plan = plan_for(kind)
        if plan is None:
            descriptor = ToolchainDescriptor(
                kind=kind,
                install_dirs=(),
                linker_checks=(),
                path_entries=(),
                version=self.host_version(),
                options=tuple(options),
            )
        else:
            descriptor = self._resolve_bundle(kind, plan, tuple(options))
        self._resolved = descriptor
        return descriptor

    def source_dir(self, source: ToolchainSource) -> Path:
        return self.toolchains_dir / source.name

    def version_of(self, source: ToolchainSource) -> str:
        return installed_version(self.toolchains_dir, source)

    def host_version(self) -> str:
        return host_compiler_version()

    def _resolve_bundle(
        self,
        kind: ToolchainKind,
        plan: ResolutionPlan,
        options: tuple[str, ...],
    ) -> ToolchainDescriptor:
        for source in plan.sources:
            if not self.source_dir(source).is_dir():
                if self.acquire is None:
                    raise PreconditionError(
                        f"Toolchain `{source.name}` is not installed.",
                        context={"directory": str(self.source_dir(source))},
                    )
                self.acquire(source)
        install_dirs = tuple(self.source_dir(source) for source in plan.sources)
        checks = tuple(self.toolchains_dir / source.check for source in plan.checks)
        if self.settings.host_linker:
            check_linker(checks, compiler=kind.value)
        path_entries = tuple(directory / "bin" for directory in install_dirs)
        environment = BuildEnvironment(path_entries=path_entries)
        verify_search_path(environment.search_path(self.base_path), install_dirs)
        version = "/".join(self.version_of(source) for source in plan.versions)
        return ToolchainDescriptor(
            kind=kind,
            install_dirs=install_dirs,
            linker_checks=checks,
            path_entries=path_entries,
            version=version,
            options=options,
            lto_dir=install_dirs[0] / "lib",
        )
