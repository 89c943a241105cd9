"""Cross-toolchain kernel build automation."""

from .errors import (
    AlreadyRunningError,
    CancelledError,
    CommandError,
    HostEnvironmentError,
    KforgeError,
    PathResolutionError,
    PreconditionError,
    ToolchainError,
    ValidationError,
    VerificationError,
)
from .executor import BuildEnvironment, CommandExecutor, CommandSupervisor
from .pipeline import BuildPipeline, BuildSession, Stage
from .report import BuildReport
from .session_log import SessionLog, VariableSnapshot
from .settings import Settings
from .toolchains import ToolchainDescriptor, ToolchainKind, ToolchainResolver

__all__ = [
    "AlreadyRunningError",
    "BuildEnvironment",
    "BuildPipeline",
    "BuildReport",
    "BuildSession",
    "CancelledError",
    "CommandError",
    "CommandExecutor",
    "CommandSupervisor",
    "HostEnvironmentError",
    "KforgeError",
    "PathResolutionError",
    "PreconditionError",
    "SessionLog",
    "Settings",
    "Stage",
    "ToolchainDescriptor",
    "ToolchainError",
    "ToolchainKind",
    "ToolchainResolver",
    "ValidationError",
    "VariableSnapshot",
    "VerificationError",
]
