"""Command-line entry point.

Usage:
    kforge --start            interactive kernel build
    kforge --debug            build with debug output
    kforge --update           update the tool, template and toolchains
    kforge --version          list installed toolchain versions
    kforge --msg TEXT         send a message through the notifier
    kforge --file PATH        upload a file through the notifier
    kforge --zip IMAGE        package an existing kernel image
    kforge --list             summarise previous builds
    kforge --tag vX.Y         latest linux stable tag for a prefix
    kforge --patch/--revert   apply or revert a patch on the kernel tree
"""

from __future__ import annotations

import argparse
import os
import sys
import time
from collections.abc import Sequence
from datetime import datetime
from pathlib import Path

from kforge.acquire import ToolchainInstaller
from kforge.errors import HostEnvironmentError, KforgeError, PreconditionError
from kforge.executor import CommandExecutor, CommandSupervisor, PromptRetryPolicy
from kforge.kernel import kernel_dir_problem, validate_kernel_dir
from kforge.layout import Workspace
from kforge.lock import InstanceLock
from kforge.notify import notifier_from
from kforge.observability import StructuredLogger
from kforge.packaging import Packager
from kforge.patches import apply_patch, list_patches
from kforge.pipeline import BuildPipeline
from kforge.prompts import ConsolePrompter, Prompter, ask_until
from kforge.report import list_builds
from kforge.settings import DEFAULT, Settings
from kforge.teardown import (
    Teardown,
    install_signal_handlers,
    pkill,
    restore_signal_handlers,
    session_scope,
)

BUILD_COUNTDOWN = 3
COUNTDOWN_MODES = ("start", "debug", "update", "patch", "revert")
ZIP_TARGET = "default"


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="kforge",
        description="Cross-toolchain kernel build automation",
    )
    parser.add_argument(
        "--root",
        type=Path,
        default=Path(os.environ.get("KFORGE_ROOT", ".")),
        help="Tool root holding etc/, toolchains/ and the build folders",
    )
    modes = parser.add_mutually_exclusive_group(required=True)
    modes.add_argument("--start", action="store_true", help="Start a new kernel build")
    modes.add_argument("--debug", action="store_true", help="Start a build in debug mode")
    modes.add_argument("--update", action="store_true", help="Update the tool and its toolchains")
    modes.add_argument("--version", action="store_true", help="Show installed toolchain versions")
    modes.add_argument("--msg", metavar="TEXT", help="Send a message to the notifier")
    modes.add_argument("--file", metavar="PATH", type=Path, help="Upload a file to the notifier")
    modes.add_argument("--zip", metavar="IMAGE", type=Path, help="Package an existing kernel image")
    modes.add_argument("--list", action="store_true", help="List previous builds")
    modes.add_argument("--tag", metavar="PREFIX", help="Show the latest linux stable tag")
    modes.add_argument("--patch", action="store_true", help="Apply a patch to the kernel tree")
    modes.add_argument("--revert", action="store_true", help="Revert a patch from the kernel tree")
    return parser


def check_host(*, interactive: bool) -> None:
    if not sys.platform.startswith("linux"):
        raise HostEnvironmentError(
            "Only Linux hosts are supported.",
            context={"platform": sys.platform},
        )
    if os.geteuid() == 0:
        raise HostEnvironmentError(
            "Refusing to run as root.",
            hint="Run the tool as a regular user.",
        )
    if interactive and not sys.stdin.isatty():
        raise HostEnvironmentError(
            "An interactive terminal is required.",
            hint="Run the tool from a terminal or pass a non-interactive mode.",
        )


def main(argv: Sequence[str] | None = None) -> int:
    args = build_parser().parse_args(argv)
    interactive = bool(args.start or args.debug or args.update or args.patch or args.revert)
    logger = StructuredLogger(debug_enabled=args.debug)
    try:
        settings = Settings.load(args.root)
        if args.debug:
            settings = settings.replace(debug=True)
        check_host(interactive=interactive)
        with InstanceLock(settings.lock_path):
            return dispatch(args, settings, logger)
    except KforgeError as exc:
        logger.error(str(exc), operation=exc.code, extra=exc.to_dict())
        return exc.exit_status


def dispatch(args: argparse.Namespace, settings: Settings, logger: StructuredLogger) -> int:
    """Run the selected mode inside one teardown scope with termination signals trapped."""
    prompter = ConsolePrompter(logger)
    executor = CommandExecutor(logger, debug=settings.debug)
    supervisor = CommandSupervisor(executor, logger, retry_policy=PromptRetryPolicy(prompter))
    workspace = Workspace(settings.root)
    installer = ToolchainInstaller(
        settings=settings,
        toolchains_dir=workspace.toolchains_dir,
        supervisor=supervisor,
        logger=logger,
        prompter=prompter,
    )
    teardown = Teardown(
        workspace,
        logger,
        executor=executor,
        countdown=BUILD_COUNTDOWN if any(getattr(args, mode) for mode in COUNTDOWN_MODES) else 0,
        kill=pkill,
        sleep=time.sleep,
    )
    previous = install_signal_handlers()
    try:
        with session_scope(teardown):
            return run_mode(args, settings, logger, prompter, supervisor, installer, workspace, teardown)
    finally:
        restore_signal_handlers(previous)
    return 0


def run_mode(
    args: argparse.Namespace,
    settings: Settings,
    logger: StructuredLogger,
    prompter: Prompter,
    supervisor: CommandSupervisor,
    installer: ToolchainInstaller,
    workspace: Workspace,
    teardown: Teardown,
) -> int:
    if args.start or args.debug:
        return run_build(settings, logger, prompter, supervisor.executor, installer, workspace, teardown)
    if args.update:
        updated = installer.update_all()
        logger.note(f"Updated: {', '.join(updated) or 'nothing'}", operation="update")
        return 0
    if args.version:
        for name, version in installer.toolchain_versions():
            logger.echo(f"{name}: {version}\n")
        return 0
    if args.msg is not None or args.file is not None:
        return send(settings, args.msg, args.file)
    if args.zip is not None:
        teardown.codename = ZIP_TARGET
        return package_image(settings, logger, supervisor, installer, workspace, args.zip)
    if args.list:
        for summary in list_builds(workspace):
            logger.echo(f"{summary.describe()}\n")
        return 0
    if args.tag is not None:
        logger.echo(f"{installer.latest_linux_tag(args.tag)}\n")
        return 0
    return patch_kernel(settings, logger, prompter, supervisor, revert=args.revert)


def run_build(
    settings: Settings,
    logger: StructuredLogger,
    prompter: Prompter,
    executor: CommandExecutor,
    installer: ToolchainInstaller,
    workspace: Workspace,
    teardown: Teardown,
) -> int:
    pipeline = BuildPipeline(
        settings,
        prompter=prompter,
        logger=logger,
        executor=executor,
        workspace=workspace,
        notifier=notifier_from(settings),
        installer=installer,
        teardown=teardown,
    )
    pipeline.run()
    return 0


def send(settings: Settings, text: str | None, path: Path | None) -> int:
    notifier = notifier_from(settings)
    if not notifier.enabled:
        raise PreconditionError(
            "Notifier credentials are not configured.",
            hint="Set TELEGRAM_CHAT_ID and TELEGRAM_BOT_TOKEN in etc/user.cfg.",
        )
    if path is None:
        notifier.send_message(text or "")
        return 0
    if not path.is_file():
        raise PreconditionError("File to upload does not exist.", context={"path": str(path)})
    notifier.send_file(path)
    return 0


def package_image(
    settings: Settings,
    logger: StructuredLogger,
    supervisor: CommandSupervisor,
    installer: ToolchainInstaller,
    workspace: Workspace,
    image: Path,
) -> int:
    if not image.is_file():
        raise PreconditionError("Kernel image not found.", context={"image": str(image)})
    installer.ensure_template()
    packager = Packager(settings=settings, supervisor=supervisor, logger=logger)
    name = f"{settings.tag}-{datetime.now():%Y-%m-%d_%H-%M-%S}"
    archive = packager.create(name, image, workspace.build_dir(ZIP_TARGET))
    signed = packager.sign(archive)
    logger.note(f"Archive: {signed or archive}", operation="package")
    return 0


def patch_kernel(
    settings: Settings,
    logger: StructuredLogger,
    prompter: Prompter,
    supervisor: CommandSupervisor,
    *,
    revert: bool,
) -> int:
    patches = list_patches(settings.root)
    if not patches:
        raise PreconditionError("No patch found.", context={"patches": str(settings.root / "patches")})
    if settings.kernel_dir != DEFAULT:
        kernel_dir = validate_kernel_dir(settings.kernel_dir, settings.arch)
    else:
        kernel_dir = Path(
            ask_until(
                prompter,
                "Enter the absolute path of the kernel directory",
                accept=lambda value: kernel_dir_problem(Path(value).expanduser(), settings.arch) is None,
                logger=logger,
                error="Invalid kernel directory",
            ),
        ).expanduser()
    names = [patch.name for patch in patches]
    chosen = prompter.select("Select the patch to revert" if revert else "Select the patch to apply", names)
    apply_patch(supervisor, kernel_dir, settings.root / "patches" / chosen, revert=revert)
    logger.note(f"{'Reverted' if revert else 'Applied'} {chosen}", operation="patch")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
