"""Errors raised by detection, resolution, execution and the artifact cache.

Every error carries a stable ``E_*`` code for reports. Resolution-pass
failures (configuration conflicts, ABI incompatibilities, cycles) derive
from :class:`ResolutionError` and abort the whole pass. External tool
failures, cancellation included, are node-local: the executor records them
on the failing node and its dependents.
"""

from __future__ import annotations

from collections.abc import Mapping
from enum import StrEnum


class ErrorCode(StrEnum):
    """Codes written to run reports and node outcomes."""

    VALIDATION = "E_VALIDATION"
    DETECTION = "E_DETECTION"
    RESOLUTION = "E_RESOLUTION"
    CONFIG_CONFLICT = "E_CONFIG_CONFLICT"
    ABI_INCOMPATIBLE = "E_ABI_INCOMPATIBLE"
    CYCLE = "E_CYCLE"
    EXTERNAL_TOOL = "E_EXTERNAL_TOOL"
    CANCELLED = "E_CANCELLED"
    CACHE_INTEGRITY = "E_CACHE_INTEGRITY"


class NativePmError(Exception):
    """Base for every nativepm failure; renders its hint and non-empty context lines."""

    code: str
    hint: str | None
    context: Mapping[str, str]

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
        }
        if self.hint is not None:
            payload["hint"] = self.hint
        return payload


class ValidationError(NativePmError):
    def __init__(
        self,
        message: str,
        *,
        hint: str | None = None,
        context: Mapping[str, str] | None = None,
    ) -> None:
        super().__init__(message, code=ErrorCode.VALIDATION, hint=hint, context=context)


class DetectionUnavailableError(NativePmError):
    """No usable compiler was found on the host."""

    def __init__(
        self,
        message: str,
        *,
        hint: str | None = None,
        context: Mapping[str, str] | None = None,
    ) -> None:
        super().__init__(message, code=ErrorCode.DETECTION, hint=hint, context=context)


class ResolutionError(NativePmError):
    """A resolution pass could not produce a valid build plan."""

    def __init__(
        self,
        message: str,
        *,
        hint: str | None = None,
        context: Mapping[str, str] | None = None,
        code: ErrorCode = ErrorCode.RESOLUTION,
    ) -> None:
        super().__init__(message, code=code, hint=hint, context=context)


class ConfigurationConflictError(ResolutionError):
    def __init__(
        self,
        message: str,
        *,
        hint: str | None = None,
        context: Mapping[str, str] | None = None,
    ) -> None:
        super().__init__(
            message, code=ErrorCode.CONFIG_CONFLICT, hint=hint, context=context
        )


class AbiIncompatibilityError(ResolutionError):
    def __init__(
        self,
        message: str,
        *,
        hint: str | None = None,
        context: Mapping[str, str] | None = None,
    ) -> None:
        super().__init__(
            message, code=ErrorCode.ABI_INCOMPATIBLE, hint=hint, context=context
        )


class StructuralCycleError(ResolutionError):
    def __init__(
        self,
        message: str,
        *,
        cycle: tuple[str, ...],
        hint: str | None = None,
        context: Mapping[str, str] | None = None,
    ) -> None:
        merged = {"cycle": " -> ".join(cycle), **dict(context or {})}
        super().__init__(message, code=ErrorCode.CYCLE, hint=hint, context=merged)
        self.cycle = cycle


class ExternalToolError(NativePmError):
    """An external configure/build/install step exited unsuccessfully."""

    def __init__(
        self,
        message: str,
        *,
        hint: str | None = None,
        context: Mapping[str, str] | None = None,
        code: ErrorCode = ErrorCode.EXTERNAL_TOOL,
    ) -> None:
        super().__init__(message, code=code, hint=hint, context=context)


class BuildCancelledError(ExternalToolError):
    def __init__(
        self,
        message: str,
        *,
        hint: str | None = None,
        context: Mapping[str, str] | None = None,
    ) -> None:
        super().__init__(message, code=ErrorCode.CANCELLED, hint=hint, context=context)


class CacheIntegrityError(NativePmError):
    def __init__(
        self,
        message: str,
        *,
        hint: str | None = None,
        context: Mapping[str, str] | None = None,
    ) -> None:
        super().__init__(
            message, code=ErrorCode.CACHE_INTEGRITY, hint=hint, context=context
        )


__all__ = [
    "AbiIncompatibilityError",
    "BuildCancelledError",
    "CacheIntegrityError",
    "ConfigurationConflictError",
    "DetectionUnavailableError",
    "ErrorCode",
    "ExternalToolError",
    "NativePmError",
    "ResolutionError",
    "StructuralCycleError",
    "ValidationError",
]
