import sys
from pathlib import Path

import pytest

from kforge.errors import PreconditionError, ToolchainError, ValidationError
from kforge.settings import Settings
from kforge.toolchains import (
    EVA_ARM64,
    PROTON,
    ToolchainDescriptor,
    ToolchainKind,
    ToolchainResolver,
    ToolchainSource,
    check_linker,
    environment_for,
    finalize_options,
    plan_for,
    program_interpreter,
    verify_search_path,
)


def _install(toolchains: Path, source: ToolchainSource, version: str) -> None:
    check = toolchains / source.check
    check.parent.mkdir(parents=True, exist_ok=True)
    check.write_text("#!/bin/sh\n", encoding="utf-8")
    (toolchains / source.version_path / version).mkdir(parents=True, exist_ok=True)


def _descriptor(kind: ToolchainKind, options: tuple[str, ...]) -> ToolchainDescriptor:
    return ToolchainDescriptor(
        kind=kind,
        install_dirs=(),
        linker_checks=(),
        path_entries=(),
        version="1",
        options=options,
        lto_dir=Path("/toolchains/proton/lib"),
    )


def test_every_bundled_kind_has_a_plan() -> None:
    for kind in ToolchainKind:
        plan = plan_for(kind)
        if kind is ToolchainKind.HOST_CLANG:
            assert plan is None
        else:
            assert plan is not None
            assert set(plan.checks) <= set(plan.sources)


def test_unknown_compiler_is_a_precondition_error() -> None:
    with pytest.raises(PreconditionError) as excinfo:
        ToolchainKind.parse("tcc")

    assert "aosp-clang" in (excinfo.value.hint or "")


def test_resolver_prepends_bin_dirs_and_reads_versions(tmp_path: Path) -> None:
    toolchains = tmp_path / "toolchains"
    _install(toolchains, PROTON, "13.0.0")
    _install(toolchains, EVA_ARM64, "12.0.1")
    (toolchains / "gcc-arm" / "bin").mkdir(parents=True)
    resolver = ToolchainResolver(
        settings=Settings(root=tmp_path, host_linker=False),
        toolchains_dir=toolchains,
        base_path="/usr/bin",
    )

    descriptor = resolver.resolve(ToolchainKind.PROTON_GCC)

    assert descriptor.path_entries == (
        toolchains / "proton" / "bin",
        toolchains / "gcc-arm64" / "bin",
        toolchains / "gcc-arm" / "bin",
    )
    assert descriptor.version == "13.0.0/12.0.1"
    assert descriptor.is_clang
    assert descriptor.lto_dir == toolchains / "proton" / "lib"


def test_resolver_refuses_a_second_resolution(tmp_path: Path) -> None:
    toolchains = tmp_path / "toolchains"
    _install(toolchains, PROTON, "13.0.0")
    resolver = ToolchainResolver(
        settings=Settings(root=tmp_path, host_linker=False),
        toolchains_dir=toolchains,
    )
    resolver.resolve(ToolchainKind.PROTON_CLANG)

    with pytest.raises(ValidationError):
        resolver.resolve(ToolchainKind.PROTON_CLANG)


def test_resolver_fails_fast_when_toolchain_missing(tmp_path: Path) -> None:
    resolver = ToolchainResolver(
        settings=Settings(root=tmp_path, host_linker=False),
        toolchains_dir=tmp_path / "toolchains",
    )

    with pytest.raises(PreconditionError) as excinfo:
        resolver.resolve(ToolchainKind.NEUTRON_CLANG)

    assert "neutron" in excinfo.value.context["directory"]
    assert resolver._resolved is None


def test_resolver_acquires_missing_sources(tmp_path: Path) -> None:
    toolchains = tmp_path / "toolchains"
    acquired: list[str] = []

    def acquire(source: ToolchainSource) -> None:
        acquired.append(source.name)
        _install(toolchains, source, "13.0.0")

    resolver = ToolchainResolver(
        settings=Settings(root=tmp_path, host_linker=False),
        toolchains_dir=toolchains,
        acquire=acquire,
    )

    descriptor = resolver.resolve(ToolchainKind.PROTON_CLANG)

    assert acquired == ["proton"]
    assert descriptor.version == "13.0.0"


def test_resolver_uses_configured_options(tmp_path: Path) -> None:
    toolchains = tmp_path / "toolchains"
    _install(toolchains, PROTON, "13.0.0")
    settings = Settings(
        root=tmp_path,
        host_linker=False,
        toolchain_options={"proton-clang": ("CROSS_COMPILE=aarch64-linux-gnu-", "CC=clang")},
    )

    descriptor = ToolchainResolver(settings=settings, toolchains_dir=toolchains).resolve(
        ToolchainKind.PROTON_CLANG,
    )

    assert descriptor.options == ("CROSS_COMPILE=aarch64-linux-gnu-", "CC=clang")


def test_verify_search_path_fails_when_entry_absent(tmp_path: Path) -> None:
    with pytest.raises(ToolchainError) as excinfo:
        verify_search_path("/usr/bin:/bin", [tmp_path / "proton"])

    assert excinfo.value.context["path"] == "/usr/bin:/bin"
    verify_search_path(f"{tmp_path}/proton/bin:/usr/bin", [tmp_path / "proton"])


def test_check_linker_accepts_host_binaries() -> None:
    binary = Path(sys.executable).resolve()

    interpreter = program_interpreter(binary)

    assert interpreter is None or Path(interpreter).exists()
    check_linker([binary], compiler="host-clang")


def test_check_linker_rejects_missing_interpreter(
    tmp_path: Path,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    binary = tmp_path / "clang"
    binary.write_bytes(b"\x7fELF")
    monkeypatch.setattr(
        "kforge.toolchains.program_interpreter",
        lambda path: "/nonexistent/ld-linux-aarch64.so.1",
    )

    with pytest.raises(ToolchainError) as excinfo:
        check_linker([binary], compiler="proton-clang")

    assert excinfo.value.context["linker"] == "/nonexistent/ld-linux-aarch64.so.1"
    assert excinfo.value.context["binary"] == str(binary)


def test_check_linker_rejects_non_elf_and_missing_files(tmp_path: Path) -> None:
    script = tmp_path / "clang"
    script.write_text("#!/bin/sh\n", encoding="utf-8")

    with pytest.raises(ToolchainError):
        check_linker([script], compiler="proton-clang")
    with pytest.raises(ToolchainError):
        check_linker([tmp_path / "missing"], compiler="proton-clang")


def test_finalize_options_renames_compat_for_new_clang_kernels(tmp_path: Path) -> None:
    options = ("CROSS_COMPILE=aarch64-linux-gnu-", "CROSS_COMPILE_ARM32=arm-linux-gnueabi-", "CC=clang")
    settings = Settings(root=tmp_path)

    newer = finalize_options(_descriptor(ToolchainKind.PROTON_CLANG, options), linux_version="4.14.190", settings=settings)
    older = finalize_options(_descriptor(ToolchainKind.PROTON_CLANG, options), linux_version="4.2.8", settings=settings)
    gcc = finalize_options(
        _descriptor(ToolchainKind.EVA_GCC, ("CROSS_COMPILE_ARM32=arm-eabi-", "CC=aarch64-elf-gcc")),
        linux_version="5.10.1",
        settings=settings,
    )

    assert "CROSS_COMPILE_COMPAT=arm-linux-gnueabi-" in newer
    assert "CROSS_COMPILE_ARM32=arm-linux-gnueabi-" in older
    assert "CROSS_COMPILE_ARM32=arm-eabi-" in gcc


def test_finalize_options_applies_lto_trim_and_debug(tmp_path: Path) -> None:
    descriptor = _descriptor(ToolchainKind.PROTON_CLANG, ("CC=clang", "LD=ld.lld"))

    lto = finalize_options(
        descriptor,
        linux_version="4.9.1",
        settings=Settings(root=tmp_path, lto=True, lto_library="ld.gold"),
    )
    trimmed = finalize_options(
        descriptor,
        linux_version="4.9.1",
        settings=Settings(root=tmp_path, make_cmd_args=False, debug=True),
    )

    assert lto == ("CC=clang", "LD=ld.gold")
    assert trimmed == ("CONFIG_DEBUG_SECTION_MISMATCH=y", "CC=clang")


def test_environment_for_sets_build_identity(tmp_path: Path) -> None:
    descriptor = _descriptor(ToolchainKind.PROTON_CLANG, ("CC=clang",))
    settings = Settings(root=tmp_path, builder="me", host="box", lto=True, llvm_flags=True)

    environment = environment_for(
        descriptor,
        settings=settings,
        android_major_version="11",
        platform_version="11",
    )

    assert environment.variables["KBUILD_BUILD_USER"] == "me"
    assert environment.variables["KBUILD_BUILD_HOST"] == "box"
    assert environment.variables["ANDROID_MAJOR_VERSION"] == "11"
    assert environment.variables["LD_LIBRARY_PATH"] == "/toolchains/proton/lib"
    assert environment.variables["LLVM"] == "1"
