"""Build session state machine.

``BuildPipeline.run()`` walks the stages in order; every transition goes
through ``_advance`` which refuses to move backwards. Optional stages (clean,
menu reconfiguration, packaging, signing) are skipped rather than entered.
"""

from __future__ import annotations

import os
import shutil
import time
from collections.abc import Callable, Mapping
from dataclasses import dataclass, field, replace
from datetime import datetime
from enum import StrEnum
from pathlib import Path
from typing import TypeVar
from zoneinfo import ZoneInfo

from kforge.acquire import ToolchainInstaller
from kforge.errors import PreconditionError, ValidationError, VerificationError
from kforge.executor import (
    BuildEnvironment,
    CommandExecutor,
    CommandFailure,
    CommandResult,
    CommandSupervisor,
    PromptRetryPolicy,
    RetryPolicy,
)
from kforge.kernel import (
    MENU_TARGETS,
    kernel_dir_problem,
    list_defconfigs,
    makefile_value,
    options_map,
    read_compiler,
    rewrite_toolchain,
    save_defconfig,
    toolchain_mismatches,
    validate_kernel_dir,
)
from kforge.layout import Workspace
from kforge.notify import Notifier, NullNotifier
from kforge.observability import StructuredLogger
from kforge.packaging import PackageMetadata, Packager
from kforge.prompts import (
    Prompter,
    ask_until,
    is_valid_codename,
    is_valid_defconfig_name,
    parse_cores,
)
from kforge.report import BuildReport, file_digests
from kforge.session_log import SessionLog, VariableSnapshot
from kforge.settings import DEFAULT, Settings
from kforge.teardown import AbortRequested, Teardown
from kforge.toolchains import (
    ToolchainDescriptor,
    ToolchainKind,
    ToolchainResolver,
    ToolchainSource,
    environment_for,
    finalize_options,
)

_T = TypeVar("_T")

COMPILE_H = Path("include") / "generated" / "compile.h"


class Stage(StrEnum):
    INIT = "init"
    CODENAME_SELECTED = "codename_selected"
    DIRS_CREATED = "dirs_created"
    TOOLCHAIN_RESOLVED = "toolchain_resolved"
    KERNEL_VERSION_READ = "kernel_version_read"
    CLEAN = "clean"
    CONFIGURED = "configured"
    MENU_RECONFIGURED = "menu_reconfigured"
    SAVE_DECISION = "save_decision"
    BUILD_CONFIRMED = "build_confirmed"
    BUILDING = "building"
    BUILD_VERIFIED = "build_verified"
    PACKAGED = "packaged"
    SIGNED = "signed"
    DISTRIBUTED = "distributed"
    TERMINAL = "terminal"


_ORDER = {stage: index for index, stage in enumerate(Stage)}


def format_elapsed(seconds: float) -> str:
    total = max(0, int(seconds))
    return f"{total // 60}m{total % 60}s"


def is_fresh(path: Path, start_time: float) -> bool:
    """Whole-second comparison; a build finishing within the start second still counts."""
    return path.is_file() and int(path.stat().st_mtime) >= int(start_time)


@dataclass(slots=True)
class BuildSession:
    arch: str
    stage: Stage = Stage.INIT
    codename: str | None = None
    kernel_dir: Path | None = None
    defconfig: str | None = None
    menu: str | None = None
    descriptor: ToolchainDescriptor | None = None
    cores: int | None = None
    options: tuple[str, ...] = ()
    out_dir: Path | None = None
    build_dir: Path | None = None
    log_dir: Path | None = None
    log: SessionLog | None = None
    linux_version: str = ""
    kernel_name: str = ""
    date: str = ""
    time: str = ""
    start_time: float | None = None
    build_time: str = ""
    real_cc: str = ""
    notify: bool = False
    archive: Path | None = None
    signed: Path | None = None
    extra: dict[str, str] = field(default_factory=dict)

    @property
    def artifact_name(self) -> str:
        return f"{self.kernel_name}-{self.date}"

    def variables(self) -> dict[str, str]:
        """Named session values recorded in the settings block of the log."""
        values = {
            "CODENAME": self.codename or "",
            "ARCH": self.arch,
            "KERNEL_DIR": str(self.kernel_dir or ""),
            "DEFCONFIG": self.defconfig or "",
            "CORES": str(self.cores or ""),
            "LINUX_VERSION": self.linux_version,
            "KERNEL_NAME": self.kernel_name,
            "DATE": self.date,
            "TIME": self.time,
            "BUILD_TIME": self.build_time,
            "REALCC": self.real_cc,
            "MAKE_OPTIONS": " ".join(self.options),
            "OUT_DIR": str(self.out_dir or ""),
            "LOG": str(self.log.path) if self.log is not None else "",
        }
        if self.descriptor is not None:
            values["COMPILER"] = self.descriptor.kind.value
            values["TCVER"] = self.descriptor.version
        if self.start_time is not None:
            values["START_TIME"] = str(int(self.start_time))
        values.update(self.extra)
        return {name: value for name, value in values.items() if value}


class BuildPipeline:
    def __init__(
        self,
        settings: Settings,
        *,
        prompter: Prompter,
        logger: StructuredLogger,
        executor: CommandExecutor,
        workspace: Workspace | None = None,
        notifier: Notifier | None = None,
        installer: ToolchainInstaller | None = None,
        retry_policy: RetryPolicy | None = None,
        teardown: Teardown | None = None,
        base_env: Mapping[str, str] | None = None,
        clock: Callable[[], float] = time.time,
        cpu_count: Callable[[], int | None] = os.cpu_count,
    ) -> None:
        self.settings = settings
        self.prompter = prompter
        self.logger = logger
        self.workspace = workspace or Workspace(settings.root)
        self.notifier = notifier or NullNotifier()
        self.installer = installer
        self.base_env = dict(os.environ if base_env is None else base_env)
        self.clock = clock
        self.cpu_count = cpu_count
        self.session = BuildSession(arch=settings.arch)
        self.environment = BuildEnvironment()
        self.before = VariableSnapshot.take(self.base_env)
        self.supervisor = CommandSupervisor(
            executor=executor,
            logger=logger,
            retry_policy=retry_policy or PromptRetryPolicy(prompter),
            on_failure=self._on_failure,
            on_restart=self._on_restart,
        )
        self.packager = Packager(settings=settings, supervisor=self.supervisor, logger=logger)
        self.resolver = ToolchainResolver(
            settings=settings,
            toolchains_dir=self.workspace.toolchains_dir,
            acquire=self._acquire,
            base_path=self.base_env.get("PATH", ""),
        )
        self.teardown = teardown
        if teardown is not None:
            teardown.capture = self.capture_log

    def run(self) -> BuildSession:
        self.select_codename()
        self.create_dirs()
        self.select_kernel()
        self.resolve_toolchain()
        self.read_kernel_version()
        self.clean()
        self.configure()
        self.reconfigure()
        self.confirm_build()
        self.build()
        self.verify()
        self.package()
        self.distribute()
        self._advance(Stage.TERMINAL)
        return self.session

    # -- stages -----------------------------------------------------------

    def select_codename(self) -> str:
        configured = self.settings.codename
        if configured != DEFAULT:
            if not is_valid_codename(configured):
                raise ValidationError(
                    "Configured codename is invalid.",
                    hint="Use 3-20 letters, digits, '_' or '-', starting with a letter or digit.",
                    context={"codename": configured},
                )
            codename = configured
        else:
            codename = ask_until(
                self.prompter,
                "Enter the codename of the target device",
                accept=is_valid_codename,
                logger=self.logger,
                error="Invalid codename",
            )
        self.session.codename = codename
        self.logger.codename = codename
        if self.teardown is not None:
            self.teardown.codename = codename
        self._advance(Stage.CODENAME_SELECTED)
        return codename

    def create_dirs(self) -> None:
        codename = self._require(self.session.codename, "codename")
        self.workspace.create(codename)
        self.session.out_dir = self.workspace.out_dir(codename)
        self.session.build_dir = self.workspace.build_dir(codename)
        self.session.log_dir = self.workspace.log_dir(codename)
        self._advance(Stage.DIRS_CREATED)

    def select_kernel(self) -> None:
        arch = self.session.arch
        if self.settings.kernel_dir != DEFAULT:
            kernel_dir = validate_kernel_dir(self.settings.kernel_dir, arch)
        else:
            answer = ask_until(
                self.prompter,
                "Enter the absolute path of the kernel directory",
                accept=lambda value: kernel_dir_problem(Path(value).expanduser(), arch) is None,
                logger=self.logger,
                error="Invalid kernel directory",
            )
            kernel_dir = Path(answer).expanduser()
        defconfigs = list_defconfigs(kernel_dir, arch)
        if not defconfigs:
            raise PreconditionError(
                "No defconfig found in the kernel directory.",
                context={"configs": str(kernel_dir / "arch" / arch / "configs")},
            )
        self.session.kernel_dir = kernel_dir
        self.session.defconfig = self.prompter.select("Select the defconfig", defconfigs)
        if self.prompter.confirm("Edit the defconfig with a menu target?", default=False):
            self.session.menu = self.prompter.select("Select the menu target", MENU_TARGETS)

    def resolve_toolchain(self) -> ToolchainDescriptor:
        compiler = self.settings.compiler
        if compiler == DEFAULT:
            compiler = self.prompter.select(
                "Select the toolchain",
                [kind.value for kind in ToolchainKind],
            )
        descriptor = self.resolver.resolve(ToolchainKind.parse(compiler))
        self.session.descriptor = descriptor
        self.logger.note(f"Toolchain: {descriptor.kind.value} {descriptor.version}", operation="toolchain")

        kernel_dir = self._require(self.session.kernel_dir, "kernel directory")
        makefile = kernel_dir / "Makefile"
        if not self.settings.ignore_makefile:
            self._check_makefile(makefile, descriptor)

        available = self.cpu_count() or 1
        answer = ask_until(
            self.prompter,
            f"Number of CPU cores to use (1-{available})",
            accept=lambda value: parse_cores(value, available) is not None,
            logger=self.logger,
            error="Invalid core count",
        )
        self.session.cores = parse_cores(answer, available)
        self.environment = environment_for(
            descriptor,
            settings=self.settings,
            android_major_version=(
                self.settings.android_major_version
                or makefile_value(makefile, "ANDROID_MAJOR_VERSION")
            ),
            platform_version=(
                self.settings.platform_version or makefile_value(makefile, "PLATFORM_VERSION")
            ),
        )
        self._advance(Stage.TOOLCHAIN_RESOLVED)
        return descriptor

    def read_kernel_version(self) -> str:
        kernel_dir = self._require(self.session.kernel_dir, "kernel directory")
        descriptor = self._require(self.session.descriptor, "toolchain")
        result = self.supervisor.run(
            ["make", "-C", str(kernel_dir), "kernelversion"],
            stage=Stage.KERNEL_VERSION_READ.value,
            env=self._env(),
            capture=True,
            tee=False,
        )
        version = _kernel_version(result.output)
        if not version:
            raise PreconditionError(
                "Cannot determine kernel version.",
                context={"kernel_dir": str(kernel_dir)},
            )
        codename = self._require(self.session.codename, "codename")
        now = self._now()
        self.session.linux_version = version
        self.session.kernel_name = f"{self.settings.tag}-{codename}-{version}"
        self.session.date = now.strftime("%Y-%m-%d")
        self.session.time = now.strftime("%H-%M-%S")

        self.session.options = finalize_options(
            descriptor,
            linux_version=version,
            settings=self.settings,
        )
        self.environment = self.environment.with_options(self.session.options)

        log = SessionLog(
            self.workspace.log_path(codename, self.session.kernel_name, self.session.date, self.session.time),
            before=self.before,
            denylist=self.settings.excluded_vars,
        )
        log.write_banner()
        self.session.log = log
        self.supervisor.log = log
        self.logger.sink = log
        self._advance(Stage.KERNEL_VERSION_READ)
        return version

    def clean(self) -> bool:
        if not self.prompter.confirm("Clean the kernel tree and build output?", default=False):
            return False
        kernel_dir = self._require(self.session.kernel_dir, "kernel directory")
        out_dir = self._require(self.session.out_dir, "output directory")
        for target in ("clean", "mrproper"):
            self.supervisor.run(
                ["make", "-C", str(kernel_dir), target],
                stage=Stage.CLEAN.value,
                env=self._env(),
            )
        shutil.rmtree(out_dir, ignore_errors=True)
        out_dir.mkdir(parents=True, exist_ok=True)
        self._advance(Stage.CLEAN)
        return True

    def configure(self) -> None:
        self.supervisor.run(
            [*self._make_base(), self._require(self.session.defconfig, "defconfig")],
            stage=Stage.CONFIGURED.value,
            env=self._env(),
        )
        self._advance(Stage.CONFIGURED)

    def reconfigure(self) -> None:
        menu = self.session.menu
        if menu is None:
            return
        out_dir = self._require(self.session.out_dir, "output directory")
        config = out_dir / ".config"
        self.supervisor.run(
            [*self._make_base(), menu, str(config)],
            stage=Stage.MENU_RECONFIGURED.value,
            env=self._env(),
            interactive=True,
        )
        self._advance(Stage.MENU_RECONFIGURED)

        if self.prompter.confirm("Save the new configuration as a defconfig?", default=False):
            name = ask_until(
                self.prompter,
                "Enter a name for the new defconfig (without _defconfig)",
                accept=is_valid_defconfig_name,
                logger=self.logger,
                error="Invalid defconfig name",
            )
            kernel_dir = self._require(self.session.kernel_dir, "kernel directory")
            saved = save_defconfig(kernel_dir, self.session.arch, config, name)
            self.session.defconfig = saved.name
            self.logger.note(f"Saved {saved.name}", operation="defconfig")
        elif not self.prompter.confirm("Continue with the original defconfig?", default=True):
            raise AbortRequested("Build aborted after reconfiguration.")
        self._advance(Stage.SAVE_DECISION)

    def confirm_build(self) -> None:
        if not self.prompter.confirm("Start the build?", default=True):
            raise AbortRequested("Build cancelled.")
        self._advance(Stage.BUILD_CONFIRMED)

    def build(self) -> CommandResult:
        if self.notifier.enabled:
            self.session.notify = self.prompter.confirm(
                "Send build status notifications?",
                default=True,
            )
        self.session.start_time = self.clock()
        self._advance(Stage.BUILDING)
        self._send_start_status()
        return self.supervisor.run(
            self.build_command(),
            stage=Stage.BUILDING.value,
            env=self._env(),
        )

    def build_command(self) -> list[str]:
        kernel_dir = self._require(self.session.kernel_dir, "kernel directory")
        out_dir = self._require(self.session.out_dir, "output directory")
        return [
            "make",
            "-C",
            str(kernel_dir),
            f"-j{self.session.cores}",
            f"O={out_dir}",
            f"ARCH={self.session.arch}",
            *self.session.options,
        ]

    def verify(self) -> str:
        out_dir = self._require(self.session.out_dir, "output directory")
        start = self._require(self.session.start_time, "start time")
        compile_h = out_dir / COMPILE_H
        if not is_fresh(compile_h, start):
            raise VerificationError(
                "Build did not produce fresh output.",
                hint="The build tool exited successfully but compile.h was not regenerated.",
                context={"path": str(compile_h), "start_time": str(int(start))},
            )
        self.session.real_cc = read_compiler(compile_h) or "unknown"
        self.session.build_time = format_elapsed(self.clock() - start)
        message = f"Build succeeded in {self.session.build_time}"
        self.logger.note(message, operation="build")
        if self.session.notify:
            self.notifier.send_message(f"<b>{self.session.kernel_name}</b>: {message}")
        self._advance(Stage.BUILD_VERIFIED)
        return self.session.real_cc

    def package(self) -> Path | None:
        if not self.prompter.confirm("Create a flashable zip?", default=True):
            return None
        codename = self._require(self.session.codename, "codename")
        boot_dir = self.workspace.boot_dir(codename, self.session.arch)
        images = sorted(
            path.name for path in boot_dir.glob("*Image*") if path.is_file()
        ) if boot_dir.is_dir() else []
        if not images:
            raise PreconditionError("No kernel image found.", context={"boot_dir": str(boot_dir)})
        image = images[0] if len(images) == 1 else self.prompter.select("Select the kernel image", images)
        if self.installer is not None:
            self.installer.ensure_template()
        descriptor = self._require(self.session.descriptor, "toolchain")
        packager = self.packager
        if self.session.notify:
            packager = replace(packager, notifier=self.notifier)
        self.session.archive = packager.create(
            self.session.artifact_name,
            boot_dir / image,
            self._require(self.session.build_dir, "build directory"),
            metadata=PackageMetadata(
                tag=self.settings.tag,
                codename=codename,
                variant=self.settings.kernel_variant,
                compiler=f"{descriptor.kind.value} {descriptor.version}",
                builder=self.settings.resolved_builder(),
                linux_version=self.session.linux_version,
                date=self.session.date,
                boot_dir=boot_dir,
            ),
        )
        self._advance(Stage.PACKAGED)
        if self.prompter.confirm("Sign the zip?", default=True):
            self.session.signed = packager.sign(self.session.archive)
            self._advance(Stage.SIGNED)
        return self.session.archive

    def distribute(self) -> BuildReport:
        self.capture_log(failed=False)
        descriptor = self._require(self.session.descriptor, "toolchain")
        artifacts = [path for path in (self.session.archive, self.session.signed) if path]
        report = BuildReport.for_artifacts(
            artifacts,
            kernel_name=self.session.kernel_name,
            codename=self._require(self.session.codename, "codename"),
            compiler=descriptor.kind.value,
            toolchain_version=descriptor.version,
            linux_version=self.session.linux_version,
            build_time=self.session.build_time,
        )
        build_dir = self._require(self.session.build_dir, "build directory")
        if artifacts:
            name = self.session.artifact_name
            report.to_json(build_dir / f"{name}.json")
            report.to_cbor(build_dir / f"{name}.cbor")
        upload = self.session.signed or self.session.archive
        if self.session.notify and upload is not None:
            md5 = file_digests(upload)["md5"]
            self.notifier.send_file(upload, caption=f"MD5 Checksum: {md5}")
        self._advance(Stage.DISTRIBUTED)
        return report

    # -- hooks ------------------------------------------------------------

    def capture_log(self, failed: bool = True) -> bool:
        log = self.session.log
        if log is None:
            return False
        after = VariableSnapshot.take(
            self.base_env,
            self.environment.variables,
            self.session.variables(),
        )
        forward = None
        if failed and self.session.notify and self.session.start_time is not None:
            forward = self._forward_log
        written = log.capture(after, forward=forward)
        if written:
            self.logger.to_json_lines(log.path.with_suffix(".jsonl"))
        return written

    def _on_failure(self, failure: CommandFailure) -> None:
        self.capture_log(failed=True)

    def _on_restart(self, failure: CommandFailure) -> None:
        log = self.session.log
        if self.session.stage is not Stage.BUILDING or self.session.start_time is None:
            if log is not None:
                log.reopen()
            return
        if log is not None and log.exists():
            log.write_banner()
        self.session.start_time = self.clock()
        self._send_start_status()

    def _forward_log(self, path: Path) -> None:
        self.notifier.send_file(path, caption=f"{self.session.kernel_name}: build failed")

    def _acquire(self, source: ToolchainSource) -> None:
        if self.installer is None:
            raise PreconditionError(
                f"Toolchain `{source.name}` is not installed.",
                context={"toolchain": source.name},
            )
        if not self.prompter.confirm(f"Toolchain {source.name} is missing. Download it?", default=True):
            raise PreconditionError(
                f"Toolchain `{source.name}` is required.",
                hint="Accept the download or install the toolchain manually.",
                context={"toolchain": source.name},
            )
        self.installer.ensure(source)

    # -- helpers ----------------------------------------------------------

    def _advance(self, stage: Stage) -> None:
        current = self.session.stage
        if _ORDER[stage] <= _ORDER[current]:
            raise ValidationError(
                "Illegal stage transition.",
                context={"from": current.value, "to": stage.value},
            )
        self.logger.debug(f"{current.value} -> {stage.value}", operation="stage", stage=stage.value)
        self.session.stage = stage

    def _check_makefile(self, makefile: Path, descriptor: ToolchainDescriptor) -> None:
        expected = options_map(descriptor.options)
        mismatches = toolchain_mismatches(makefile, expected)
        if not mismatches:
            return
        for key, (current, wanted) in mismatches.items():
            self.logger.warn(
                f"Makefile {key} is `{current}`, toolchain expects `{wanted}`",
                operation="makefile",
            )
        if self.prompter.confirm("Rewrite the Makefile toolchain settings?", default=False):
            rewrite_toolchain(makefile, {key: wanted for key, (_, wanted) in mismatches.items()})

    def _send_start_status(self) -> None:
        if not self.session.notify:
            return
        descriptor = self.session.descriptor
        lines = [
            f"<b>{self.session.kernel_name}</b> build started",
            f"Device: {self.session.codename}",
            f"Linux: {self.session.linux_version}",
            f"Defconfig: {self.session.defconfig}",
            f"Compiler: {descriptor.kind.value} {descriptor.version}" if descriptor else "",
            f"Cores: {self.session.cores}",
            f"Builder: {self.settings.resolved_builder()}@{self.settings.resolved_host()}",
            f"Date: {self.session.date} {self.session.time}",
        ]
        self.notifier.send_message("\n".join(line for line in lines if line))

    def _make_base(self) -> list[str]:
        kernel_dir = self._require(self.session.kernel_dir, "kernel directory")
        out_dir = self._require(self.session.out_dir, "output directory")
        return ["make", "-C", str(kernel_dir), f"O={out_dir}", f"ARCH={self.session.arch}"]

    def _env(self) -> dict[str, str]:
        return self.environment.to_env(self.base_env)

    def _now(self) -> datetime:
        if self.settings.timezone == DEFAULT:
            return datetime.fromtimestamp(self.clock())
        return datetime.fromtimestamp(self.clock(), ZoneInfo(self.settings.timezone))

    @staticmethod
    def _require(value: _T | None, what: str) -> _T:
        if value is None:
            raise ValidationError(f"Session has no {what} yet.", context={"missing": what})
        return value


def _kernel_version(output: str) -> str:
    for line in reversed(output.splitlines()):
        candidate = line.strip()
        if candidate[:1].isdigit() and "." in candidate:
            return candidate
    return ""
