"""Toolchain and packaging-template acquisition and updates."""

from __future__ import annotations

import re
import shutil
import tarfile
from collections.abc import Callable, Iterable
from dataclasses import dataclass
from pathlib import Path
from urllib.request import urlopen

from kforge.errors import PreconditionError, ValidationError
from kforge.executor import CommandSupervisor
from kforge.observability import StructuredLogger
from kforge.prompts import Prompter
from kforge.settings import Settings
from kforge.toolchains import SOURCES, ArchiveSpec, ToolchainSource, installed_version


def fetch_listing(url: str) -> str:
    """Return the body of a remote listing page."""
    with urlopen(url) as response:  # noqa: S310 - fixed vendor listing URLs
        return response.read().decode("utf-8", errors="replace")


def latest_aosp_tag(body: str, pattern: str) -> str | None:
    """Return the last tag in *body* matching *pattern*."""
    matches = re.findall(pattern, body)
    return matches[-1] if matches else None


def local_aosp_tag(toolchains_dir: Path, source: ToolchainSource) -> str | None:
    if source.archive is None:
        return None
    marker = toolchains_dir / source.version_path
    if not marker.is_file():
        return None
    found = re.search(source.archive.local_pattern, marker.read_text(encoding="utf-8"))
    return found.group() if found else None


@dataclass(slots=True)
class ToolchainInstaller:
    settings: Settings
    toolchains_dir: Path
    supervisor: CommandSupervisor
    logger: StructuredLogger
    prompter: Prompter | None = None
    fetch_text: Callable[[str], str] = fetch_listing
    download: Callable[[str, Path], Path] | None = None

    def ensure(self, source: ToolchainSource) -> Path:
        """Install *source* when its directory is missing and return the directory."""
        target = self.toolchains_dir / source.name
        if target.is_dir():
            return target
        self.toolchains_dir.mkdir(parents=True, exist_ok=True)
        if source.archive is not None:
            self.install_archive(source)
        else:
            self.clone(source.url, target, branch=source.branch)
        return target

    def clone(self, url: str, target: Path, *, branch: str | None = None) -> None:
        self.logger.note(f"Cloning {url} into {target.name}", operation="acquire")
        argv = ["git", "clone", "--depth=1"]
        if branch:
            argv += ["-b", branch]
        argv += [url, str(target)]
        self.supervisor.run(argv, stage="acquire", tee=False)

    def install_archive(self, source: ToolchainSource) -> str:
        archive_spec = _archive_spec(source)
        listing = self.fetch_text(source.url)
        tag = latest_aosp_tag(listing, archive_spec.latest_pattern)
        if tag is None:
            raise PreconditionError(
                f"No release tag found for `{source.name}`.",
                context={"url": source.url, "pattern": archive_spec.latest_pattern},
            )
        target = self.toolchains_dir / source.name
        staging = self.toolchains_dir / f".{source.name}.partial"
        shutil.rmtree(staging, ignore_errors=True)
        tarball = self.toolchains_dir / f"{tag}.tar.gz"
        url = archive_spec.archive_url(tag)
        self.logger.note(f"Downloading {source.name} {tag}", operation="acquire")
        try:
            (self.download or _download)(url, tarball)
            staging.mkdir(parents=True)
            with tarfile.open(tarball, "r:gz") as archive:
                archive.extractall(staging, filter="data")
            staging.rename(target)
        finally:
            tarball.unlink(missing_ok=True)
            shutil.rmtree(staging, ignore_errors=True)
        marker = self.toolchains_dir / source.version_path
        if not marker.is_file():
            marker.write_text(f"{tag}\n", encoding="utf-8")
        return tag

    def ensure_template(self) -> Path:
        target = self.settings.anykernel_path
        if not target.is_dir():
            self.clone(self.settings.anykernel_url, target, branch=self.settings.anykernel_branch)
        return target

    def pull(self, directory: Path, branch: str) -> None:
        self.logger.note(f"Updating {directory.name} ({branch})", operation="update")
        for argv in (
            ["git", "-C", str(directory), "checkout", branch],
            ["git", "-C", str(directory), "reset", "--hard", "HEAD"],
            ["git", "-C", str(directory), "pull", "--depth=1", "origin", branch],
        ):
            self.supervisor.run(argv, stage="update", tee=False)

    def update_all(self) -> list[str]:
        """Pull every git checkout and refresh archive toolchains; return what changed."""
        updated: list[str] = []
        checkouts: list[tuple[Path, str]] = [
            (self.settings.root, self.settings.self_branch),
            (self.settings.anykernel_path, self.settings.anykernel_branch),
        ]
        checkouts += [
            (self.toolchains_dir / source.name, source.branch)
            for source in SOURCES
            if source.branch is not None
        ]
        for directory, branch in checkouts:
            if (directory / ".git").exists():
                self.pull(directory, branch)
                updated.append(directory.name)
        for source in SOURCES:
            if source.archive is not None and self.update_archive(source):
                updated.append(source.name)
        return updated

    def update_archive(self, source: ToolchainSource) -> bool:
        archive_spec = _archive_spec(source)
        target = self.toolchains_dir / source.name
        current = local_aosp_tag(self.toolchains_dir, source)
        if not target.is_dir() or current is None:
            return False
        latest = latest_aosp_tag(self.fetch_text(source.url), archive_spec.latest_pattern)
        if latest is None:
            return False
        latest = latest.removeprefix(archive_spec.strip_prefix)
        if latest == current:
            return False
        question = f"Update {source.name} from {current} to {latest}?"
        if self.prompter is None or not self.prompter.confirm(question, default=False):
            return False
        target.rename(target.with_name(f"{target.name}-{current}"))
        (self.toolchains_dir / source.version_path).unlink(missing_ok=True)
        self.install_archive(source)
        return True

    def latest_linux_tag(self, prefix: str) -> str:
        result = self.supervisor.run(
            ["git", "ls-remote", "--refs", "--sort=v:refname", "--tags", self.settings.linux_stable],
            stage="tag",
            capture=True,
            tee=False,
        )
        tags = [
            line.rsplit("/", 1)[-1]
            for line in result.output.splitlines()
            if "refs/tags/" in line
        ]
        matching = [tag for tag in tags if tag.startswith(prefix)]
        if not matching:
            raise ValidationError(
                f"No linux tag starts with `{prefix}`.",
                hint="Use a prefix such as v5.4 or v4.19.",
                context={"prefix": prefix},
            )
        return matching[-1]

    def toolchain_versions(self, sources: Iterable[ToolchainSource] = SOURCES) -> list[tuple[str, str]]:
        return [
            (source.name, installed_version(self.toolchains_dir, source))
            for source in sources
            if (self.toolchains_dir / source.name).is_dir()
        ]


def _download(url: str, destination: Path) -> Path:
    with urlopen(url) as response, destination.open("wb") as handle:  # noqa: S310
        shutil.copyfileobj(response, handle)
    return destination


def _archive_spec(source: ToolchainSource) -> ArchiveSpec:
    if source.archive is None:
        raise PreconditionError(
            f"Toolchain `{source.name}` is not distributed as an archive.",
            context={"toolchain": source.name},
        )
    return source.archive
