"""Typed error model with stable, machine-readable error codes and exit statuses."""

from __future__ import annotations

from collections.abc import Mapping
from enum import StrEnum


class ErrorCode(StrEnum):
    """Stable error identifiers used across the pipeline and CLI."""

    VALIDATION = "E_VALIDATION"
    PRECONDITION = "E_PRECONDITION"
    PATH = "E_PATH"
    ENVIRONMENT = "E_ENVIRONMENT"
    TOOLCHAIN = "E_TOOLCHAIN"
    COMMAND = "E_COMMAND"
    VERIFICATION = "E_VERIFICATION"
    CANCELLED = "E_CANCELLED"
    ALREADY_RUNNING = "E_ALREADY_RUNNING"


EXIT_STATUS: Mapping[ErrorCode, int] = {
    ErrorCode.VALIDATION: 1,
    ErrorCode.PRECONDITION: 1,
    ErrorCode.PATH: 2,
    ErrorCode.ENVIRONMENT: 68,
    ErrorCode.TOOLCHAIN: 1,
    ErrorCode.COMMAND: 1,
    ErrorCode.VERIFICATION: 1,
    ErrorCode.CANCELLED: 1,
    ErrorCode.ALREADY_RUNNING: 114,
}


class KforgeError(Exception):
    """Base error class that carries code, optional hint, and context."""

    code: str
    hint: str | None
    context: Mapping[str, str]
    exit_status: int

    def __init__(
        self,
        message: str,
        *,
        code: ErrorCode,
        hint: str | None = None,
        context: Mapping[str, str] | None = None,
    ) -> None:
        super().__init__(message)
        self.code = code.value
        self.hint = hint
        self.context = dict(context or {})
        self.exit_status = EXIT_STATUS[code]

    def __str__(self) -> str:
        parts = [super().__str__()]
        if self.hint:
            parts.append(f"Hint: {self.hint}")
        if self.context:
            for k, v in self.context.items():
                if v:
                    parts.append(f"  {k}: {v}")
        return "\n".join(parts)

    def to_dict(self) -> dict[str, object]:
        payload: dict[str, object] = {
            "code": self.code,
            "message": str(self),
            "context": dict(self.context),
            "exit_status": self.exit_status,
        }
        if self.hint is not None:
            payload["hint"] = self.hint
        return payload


class ValidationError(KforgeError):
    def __init__(
        self,
        message: str,
        *,
        hint: str | None = None,
        context: Mapping[str, str] | None = None,
    ) -> None:
        super().__init__(message, code=ErrorCode.VALIDATION, hint=hint, context=context)


class PreconditionError(KforgeError):
    def __init__(
        self,
        message: str,
        *,
        hint: str | None = None,
        context: Mapping[str, str] | None = None,
    ) -> None:
        super().__init__(message, code=ErrorCode.PRECONDITION, hint=hint, context=context)


class PathResolutionError(KforgeError):
    def __init__(
        self,
        message: str,
        *,
        hint: str | None = None,
        context: Mapping[str, str] | None = None,
    ) -> None:
        super().__init__(message, code=ErrorCode.PATH, hint=hint, context=context)


class HostEnvironmentError(KforgeError):
    def __init__(
        self,
        message: str,
        *,
        hint: str | None = None,
        context: Mapping[str, str] | None = None,
    ) -> None:
        super().__init__(message, code=ErrorCode.ENVIRONMENT, hint=hint, context=context)


class ToolchainError(KforgeError):
    def __init__(
        self,
        message: str,
        *,
        hint: str | None = None,
        context: Mapping[str, str] | None = None,
    ) -> None:
        super().__init__(message, code=ErrorCode.TOOLCHAIN, hint=hint, context=context)


class CommandError(KforgeError):
    def __init__(
        self,
        message: str,
        *,
        hint: str | None = None,
        context: Mapping[str, str] | None = None,
    ) -> None:
        super().__init__(message, code=ErrorCode.COMMAND, hint=hint, context=context)


class VerificationError(KforgeError):
    def __init__(
        self,
        message: str,
        *,
        hint: str | None = None,
        context: Mapping[str, str] | None = None,
    ) -> None:
        super().__init__(message, code=ErrorCode.VERIFICATION, hint=hint, context=context)


class CancelledError(KforgeError):
    def __init__(
        self,
        message: str,
        *,
        hint: str | None = None,
        context: Mapping[str, str] | None = None,
    ) -> None:
        super().__init__(message, code=ErrorCode.CANCELLED, hint=hint, context=context)


class AlreadyRunningError(KforgeError):
    def __init__(
        self,
        message: str,
        *,
        hint: str | None = None,
        context: Mapping[str, str] | None = None,
    ) -> None:
        super().__init__(message, code=ErrorCode.ALREADY_RUNNING, hint=hint, context=context)


class SigningUnavailableWarning(UserWarning):
    """Warning raised when archive signing is skipped."""


class NotificationWarning(UserWarning):
    """Warning raised when a notification could not be delivered."""


__all__ = [
    "AlreadyRunningError",
    "CancelledError",
    "CommandError",
    "EXIT_STATUS",
    "ErrorCode",
    "HostEnvironmentError",
    "KforgeError",
    "NotificationWarning",
    "PathResolutionError",
    "PreconditionError",
    "SigningUnavailableWarning",
    "ToolchainError",
    "ValidationError",
    "VerificationError",
]
