"""Build reports and the summary of previous builds."""

from __future__ import annotations

import hashlib
import json
from collections.abc import Iterable
from dataclasses import dataclass, field
from pathlib import Path

import cbor2

from kforge.layout import Workspace
from kforge.session_log import SessionLog


def file_digests(path: Path) -> dict[str, str]:
    md5 = hashlib.md5(usedforsecurity=False)
    sha256 = hashlib.sha256()
    with path.open("rb") as handle:
        for chunk in iter(lambda: handle.read(1 << 20), b""):
            md5.update(chunk)
            sha256.update(chunk)
    return {"md5": md5.hexdigest(), "sha256": sha256.hexdigest()}


@dataclass(frozen=True, slots=True)
class BuildReport:
    kernel_name: str
    codename: str
    compiler: str
    toolchain_version: str
    linux_version: str
    build_time: str
    artifacts: dict[str, dict[str, str]] = field(default_factory=dict)
    schema_version: int = 1

    @classmethod
    def for_artifacts(cls, artifacts: Iterable[Path], **values: str) -> BuildReport:
        digests = {path.name: file_digests(path) for path in artifacts if path.is_file()}
        return cls(artifacts=digests, **values)

    def to_json(self, path: str | Path | None = None) -> str:
        encoded = json.dumps(self._payload(), indent=2, sort_keys=True) + "\n"
        if path is not None:
            Path(path).write_text(encoded, encoding="utf-8")
        return encoded

    def to_cbor(self, path: str | Path | None = None) -> bytes:
        encoded = cbor2.dumps(self._payload(), canonical=True)
        if path is not None:
            Path(path).write_bytes(encoded)
        return encoded

    def _payload(self) -> dict[str, object]:
        return {
            "schema_version": self.schema_version,
            "kernel_name": self.kernel_name,
            "codename": self.codename,
            "compiler": self.compiler,
            "toolchain_version": self.toolchain_version,
            "linux_version": self.linux_version,
            "build_time": self.build_time,
            "artifacts": {name: dict(sorted(d.items())) for name, d in sorted(self.artifacts.items())},
        }


@dataclass(frozen=True, slots=True)
class BuildSummary:
    target: str
    log: Path | None
    succeeded: bool = False
    linux_version: str = ""
    date: str = ""
    time: str = ""
    compiler: str = ""
    toolchain_version: str = ""

    def describe(self) -> str:
        if self.log is None:
            return f"{self.target}: no build log"
        status = "success" if self.succeeded else "failed"
        return (
            f"{self.target}: {status} | linux {self.linux_version or '?'} | "
            f"{self.date} {self.time} | {self.compiler} {self.toolchain_version}".rstrip()
        )


def latest_log(log_dir: Path) -> Path | None:
    logs = sorted(log_dir.glob("*.log"), key=lambda path: path.stat().st_mtime)
    return logs[-1] if logs else None


def list_builds(workspace: Workspace) -> list[BuildSummary]:
    """Summarise the latest attempt of every target with an ``out/`` directory."""
    summaries: list[BuildSummary] = []
    for target in workspace.targets():
        log = latest_log(workspace.log_dir(target))
        if log is None:
            summaries.append(BuildSummary(target=target, log=None))
            continue
        values = SessionLog(log).settings()
        summaries.append(
            BuildSummary(
                target=target,
                log=log,
                succeeded="REALCC" in values,
                linux_version=values.get("LINUX_VERSION", ""),
                date=values.get("DATE", ""),
                time=values.get("TIME", ""),
                compiler=values.get("COMPILER", ""),
                toolchain_version=values.get("TCVER", ""),
            ),
        )
    return summaries
