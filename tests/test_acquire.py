import io
import subprocess
import tarfile
from pathlib import Path

import pytest

from kforge.acquire import ToolchainInstaller, latest_aosp_tag, local_aosp_tag
from kforge.errors import PreconditionError
from kforge.executor import CommandExecutor, CommandSupervisor
from kforge.observability import StructuredLogger
from kforge.settings import Settings
from kforge.toolchains import AOSP_CLANG, LLVM_ARM64, ToolchainSource

from conftest import FakePrompter

LISTING = """
<li><a href="clang-3289846/">clang-3289846/</a>
<li><a href="clang-r416183b/">clang-r416183b/</a>
<li><a href="clang-r450784d/">clang-r450784d/</a>
<li><a href="clang-stable/">clang-stable/</a>
"""


def _installer(
    tmp_path: Path,
    *,
    prompter: FakePrompter | None = None,
    listing: str = LISTING,
    downloads: list[str] | None = None,
) -> ToolchainInstaller:
    logger = StructuredLogger(stream=io.StringIO())
    seen = downloads if downloads is not None else []

    def download(url: str, destination: Path) -> Path:
        seen.append(url)
        payload = tmp_path / "payload"
        (payload / "bin").mkdir(parents=True, exist_ok=True)
        (payload / "bin" / "clang").write_text("#!/bin/sh\n", encoding="utf-8")
        with tarfile.open(destination, "w:gz") as archive:
            archive.add(payload / "bin", arcname="bin")
        return destination

    return ToolchainInstaller(
        settings=Settings(root=tmp_path),
        toolchains_dir=tmp_path / "toolchains",
        supervisor=CommandSupervisor(CommandExecutor(logger), logger),
        logger=logger,
        prompter=prompter,
        fetch_text=lambda url: listing,
        download=download,
    )


def test_latest_aosp_tag_takes_last_match() -> None:
    assert latest_aosp_tag(LISTING, r"clang-r\d+[a-z]") == "clang-r450784d"
    assert latest_aosp_tag("llvm-r383902 llvm-r416183b", r"llvm-r\d+[a-z]?") == "llvm-r416183b"
    assert latest_aosp_tag("nothing here", r"clang-r\d+[a-z]") is None


def test_install_archive_extracts_and_writes_marker(tmp_path: Path) -> None:
    downloads: list[str] = []
    installer = _installer(tmp_path, downloads=downloads)

    target = installer.ensure(AOSP_CLANG)

    toolchains = tmp_path / "toolchains"
    assert target == toolchains / "aosp-clang"
    assert (target / "bin" / "clang").is_file()
    assert (toolchains / "aosp-clang-version").read_text(encoding="utf-8") == "clang-r450784d\n"
    assert downloads[0].endswith("/+archive/refs/heads/master/clang-r450784d.tar.gz")
    assert not list(toolchains.glob("*.tar.gz"))
    assert local_aosp_tag(toolchains, AOSP_CLANG) == "r450784d"
    assert installer.toolchain_versions() == [("aosp-clang", "clang-r450784d")]


def test_install_archive_without_tag_is_a_precondition_error(tmp_path: Path) -> None:
    installer = _installer(tmp_path, listing="<html></html>")

    with pytest.raises(PreconditionError):
        installer.ensure(LLVM_ARM64)


def test_failed_download_leaves_no_toolchain_dir_behind(tmp_path: Path) -> None:
    installer = _installer(tmp_path)
    attempts: list[str] = []

    def broken(url: str, destination: Path) -> Path:
        attempts.append(url)
        destination.write_bytes(b"truncated")
        raise OSError("connection reset")

    installer.download = broken

    with pytest.raises(OSError):
        installer.ensure(AOSP_CLANG)
    with pytest.raises(OSError):
        installer.ensure(AOSP_CLANG)

    toolchains = tmp_path / "toolchains"
    assert len(attempts) == 2
    assert not (toolchains / "aosp-clang").exists()
    assert not (toolchains / ".aosp-clang.partial").exists()
    assert not (toolchains / "aosp-clang-version").exists()
    assert not list(toolchains.glob("*.tar.gz"))


def test_update_archive_moves_old_release_aside(tmp_path: Path) -> None:
    toolchains = tmp_path / "toolchains"
    (toolchains / "aosp-clang" / "bin").mkdir(parents=True)
    (toolchains / "aosp-clang-version").write_text("clang-r416183b\n", encoding="utf-8")
    installer = _installer(tmp_path, prompter=FakePrompter(confirms={"Update": True}))

    assert installer.update_archive(AOSP_CLANG) is True

    assert (toolchains / "aosp-clang-r416183b" / "bin").is_dir()
    assert (toolchains / "aosp-clang" / "bin" / "clang").is_file()
    assert local_aosp_tag(toolchains, AOSP_CLANG) == "r450784d"


def test_update_archive_is_skipped_when_current(tmp_path: Path) -> None:
    toolchains = tmp_path / "toolchains"
    (toolchains / "aosp-clang").mkdir(parents=True)
    (toolchains / "aosp-clang-version").write_text("clang-r450784d\n", encoding="utf-8")
    installer = _installer(tmp_path, prompter=FakePrompter(confirms={"Update": True}))

    assert installer.update_archive(AOSP_CLANG) is False


def test_ensure_clones_git_sources_from_local_repository(tmp_path: Path) -> None:
    repo = _create_repo(tmp_path / "upstream")
    source = ToolchainSource(
        name="proton",
        url=repo.as_uri(),
        branch="main",
        check="proton/bin/clang",
        version_path="proton/lib/clang",
    )
    installer = _installer(tmp_path)

    target = installer.ensure(source)

    assert (target / "bin" / "clang").is_file()
    assert installer.toolchain_versions([source]) == [("proton", "13.0.0")]


def _create_repo(path: Path) -> Path:
    path.mkdir(parents=True, exist_ok=True)
    _run_git(["init"], cwd=path)
    _run_git(["checkout", "-b", "main"], cwd=path)
    _run_git(["config", "user.email", "kforge@example.com"], cwd=path)
    _run_git(["config", "user.name", "kforge test"], cwd=path)
    (path / "bin").mkdir()
    (path / "bin" / "clang").write_text("#!/bin/sh\n", encoding="utf-8")
    (path / "lib" / "clang" / "13.0.0").mkdir(parents=True)
    (path / "lib" / "clang" / "13.0.0" / "README").write_text("headers\n", encoding="utf-8")
    _run_git(["add", "."], cwd=path)
    _run_git(["commit", "-m", "initial"], cwd=path)
    return path


def _run_git(argv: list[str], *, cwd: Path) -> str:
    completed = subprocess.run(
        ["git", *argv],
        cwd=cwd,
        check=False,
        text=True,
        capture_output=True,
    )
    if completed.returncode != 0:
        raise RuntimeError(f"git {' '.join(argv)} failed: {completed.stderr.strip()}")
    return completed.stdout.strip()
