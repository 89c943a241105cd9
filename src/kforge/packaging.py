"""Flashable archive creation on top of an AnyKernel3-style template."""

from __future__ import annotations

import re
import shutil
import warnings
import zipfile
from dataclasses import dataclass
from pathlib import Path

from kforge.errors import PreconditionError, SigningUnavailableWarning
from kforge.executor import CommandSupervisor
from kforge.notify import Notifier
from kforge.observability import StructuredLogger
from kforge.settings import Settings

CONTROL_SCRIPT = "anykernel.sh"
CLEAN_PATTERNS = ("*.zip*", "*Image*", "*erofs*", "*dtb*", "*spectrum.rc*")
ZIP_EXCLUDES = (".git", "README.md")
PLACEHOLDER_SUFFIX = "placeholder"


@dataclass(frozen=True, slots=True)
class PackageMetadata:
    tag: str
    codename: str
    variant: str
    compiler: str
    builder: str
    linux_version: str
    date: str
    boot_dir: Path
    tool: str = "kforge"

    def fields(self) -> dict[str, str]:
        return {
            "kernel.string": f"{self.tag}-{self.codename}",
            "kernel.for": self.variant,
            "kernel.compiler": self.compiler,
            "kernel.made": self.builder,
            "kernel.version": self.linux_version,
            "message.word": self.tool,
            "build.date": self.date,
            "device.name1": self.codename,
        }


def rewrite_control_script(text: str, fields: dict[str, str]) -> str:
    """Replace ``key=value`` lines in the control script; absent keys are left alone."""
    for key, value in fields.items():
        pattern = re.compile(rf"^(\s*){re.escape(key)}=.*$", re.MULTILINE)
        text = pattern.sub(lambda found, v=value, k=key: f"{found.group(1)}{k}={v}", text)
    return text


@dataclass(slots=True)
class Packager:
    settings: Settings
    supervisor: CommandSupervisor
    logger: StructuredLogger
    notifier: Notifier | None = None

    @property
    def template(self) -> Path:
        return self.settings.anykernel_path

    def create(
        self,
        name: str,
        image: Path,
        destination: Path,
        metadata: PackageMetadata | None = None,
    ) -> Path:
        """Stage *image* into the template, zip it and move the archive to *destination*.

        The template is cleaned before staging and again afterwards, whether or
        not the archive was written.
        """
        template = self.template
        if not (template / CONTROL_SCRIPT).is_file():
            raise PreconditionError(
                "Packaging template is missing its control script.",
                hint="Run an update or clone the AnyKernel template.",
                context={"template": str(template)},
            )
        if not image.is_file():
            raise PreconditionError("Kernel image not found.", context={"image": str(image)})
        self.logger.note(f"Packaging {image.name} into {name}.zip", operation="package")
        self._status(f"{name} | Creating the flashable zip [AK3]")
        self.clean()
        try:
            shutil.copy2(image, template / image.name)
            if metadata is not None:
                self._stage_boot_files(metadata.boot_dir, skip=image.name)
                script = template / CONTROL_SCRIPT
                script.write_text(
                    rewrite_control_script(script.read_text(encoding="utf-8"), metadata.fields()),
                    encoding="utf-8",
                )
            banner = self.settings.root / self.settings.ak3_banner_file
            if self.settings.ak3_banner and banner.is_file():
                shutil.copy2(banner, template / "banner")

            archive = template / f"{name}.zip"
            with zipfile.ZipFile(archive, "w", zipfile.ZIP_DEFLATED, compresslevel=9) as bundle:
                for path in sorted(template.rglob("*")):
                    relative = path.relative_to(template)
                    if path == archive or not path.is_file() or _excluded(relative):
                        continue
                    bundle.write(path, relative.as_posix())

            destination.mkdir(parents=True, exist_ok=True)
            final = destination / archive.name
            shutil.move(str(archive), final)
        finally:
            self.clean()
        return final

    def clean(self) -> None:
        """Remove staged images, dtbs and archives; a clean template is left untouched."""
        template = self.template
        if not template.is_dir():
            return
        for name in self.settings.included:
            for folder in (template, template / "erofs", template / "dtb"):
                _remove(folder / name)
        for pattern in CLEAN_PATTERNS:
            for path in template.glob(pattern):
                _remove(path)

    def sign(self, archive: Path) -> Path | None:
        java = shutil.which("java")
        signer = self.settings.root / self.settings.zipsigner
        if java is None or not signer.is_file():
            missing = "java" if java is None else str(signer)
            warnings.warn(
                f"Archive left unsigned: {missing} is not available.",
                SigningUnavailableWarning,
                stacklevel=2,
            )
            return None
        signed = archive.with_name(f"{archive.stem}-signed.zip")
        self.logger.note(f"Signing {archive.name}", operation="sign")
        self._status(f"{archive.stem} | Signing the zip [JAVA]")
        self.supervisor.run(
            [java, "-jar", str(signer), str(archive), str(signed)],
            stage="sign",
        )
        return signed

    def _status(self, message: str) -> None:
        if self.notifier is not None:
            self.notifier.send_message(message)

    def _stage_boot_files(self, boot_dir: Path, *, skip: str) -> None:
        template = self.template
        for name in self.settings.included:
            source = boot_dir / name
            if name == skip or not source.is_file():
                continue
            if name.endswith("erofs.dtb"):
                target_dir = template / "erofs"
            elif name.endswith(".dtb"):
                target_dir = template / "dtb"
            else:
                target_dir = template
            target_dir.mkdir(parents=True, exist_ok=True)
            shutil.copy2(source, target_dir / name)


def _excluded(relative: Path) -> bool:
    if relative.parts[0] in ZIP_EXCLUDES:
        return True
    return relative.name.endswith(PLACEHOLDER_SUFFIX)


def _remove(path: Path) -> None:
    if path.is_dir() and not path.is_symlink():
        shutil.rmtree(path)
    elif path.exists() or path.is_symlink():
        path.unlink()
