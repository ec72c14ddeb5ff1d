"""Typed engine error model with stable, machine-readable error codes."""

from __future__ import annotations

from collections.abc import Mapping
from enum import StrEnum


class ErrorCode(StrEnum):
    """Stable error identifiers used across API surfaces."""

    VALIDATION = "E_VALIDATION"
    RECIPE = "E_RECIPE"
    CHECKSUM_MISMATCH = "E_CHECKSUM_MISMATCH"
    NETWORK_FETCH = "E_NETWORK_FETCH"
    PATCH_APPLICATION = "E_PATCH_APPLICATION"
    UNKNOWN_OPTION = "E_UNKNOWN_OPTION"
    INCOMPATIBLE_TOOLCHAIN = "E_INCOMPATIBLE_TOOLCHAIN"
    EXTERNAL_PROCESS = "E_EXTERNAL_PROCESS"
    UNSUPPORTED_VARIANT = "E_UNSUPPORTED_VARIANT"
    SCRATCH_LOCKED = "E_SCRATCH_LOCKED"
    POLICY = "E_POLICY"


class KilnError(Exception):
    """Base error class that carries code, optional hint, and context."""

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


class ValidationError(KilnError):
    def __init__(
        self,
        message: str,
        *,
        hint: str | None = None,
        context: Mapping[str, str] | None = None,
    ) -> None:
        super().__init__(message, code=ErrorCode.VALIDATION, hint=hint, context=context)


class RecipeError(KilnError):
    def __init__(
        self,
        message: str,
        *,
        hint: str | None = None,
        context: Mapping[str, str] | None = None,
    ) -> None:
        super().__init__(message, code=ErrorCode.RECIPE, hint=hint, context=context)


class ChecksumMismatchError(KilnError):
    """Downloaded content does not match the declared digest. Never retried."""

    def __init__(
        self,
        message: str,
        *,
        hint: str | None = None,
        context: Mapping[str, str] | None = None,
    ) -> None:
        super().__init__(message, code=ErrorCode.CHECKSUM_MISMATCH, hint=hint, context=context)


class NetworkFetchError(KilnError):
    """A network or VCS retrieval failed; retried up to the policy bound."""

    def __init__(
        self,
        message: str,
        *,
        hint: str | None = None,
        context: Mapping[str, str] | None = None,
    ) -> None:
        super().__init__(message, code=ErrorCode.NETWORK_FETCH, hint=hint, context=context)


class PatchApplicationError(KilnError):
    index: int | None

    def __init__(
        self,
        message: str,
        *,
        index: int | None = None,
        hint: str | None = None,
        context: Mapping[str, str] | None = None,
    ) -> None:
        merged = dict(context or {})
        if index is not None:
            merged.setdefault("patch_index", str(index))
        super().__init__(message, code=ErrorCode.PATCH_APPLICATION, hint=hint, context=merged)
        self.index = index


class UnknownOptionError(KilnError):
    option: str

    def __init__(
        self,
        message: str,
        *,
        option: str,
        hint: str | None = None,
        context: Mapping[str, str] | None = None,
    ) -> None:
        merged = {"option": option, **dict(context or {})}
        super().__init__(message, code=ErrorCode.UNKNOWN_OPTION, hint=hint, context=merged)
        self.option = option


class IncompatibleToolchainError(KilnError):
    def __init__(
        self,
        message: str,
        *,
        hint: str | None = None,
        context: Mapping[str, str] | None = None,
    ) -> None:
        super().__init__(
            message, code=ErrorCode.INCOMPATIBLE_TOOLCHAIN, hint=hint, context=context
        )


class ExternalProcessError(KilnError):
    stage: str
    returncode: int | None

    def __init__(
        self,
        message: str,
        *,
        stage: str,
        returncode: int | None = None,
        hint: str | None = None,
        context: Mapping[str, str] | None = None,
    ) -> None:
        merged = {"stage": stage, **dict(context or {})}
        if returncode is not None:
            merged["returncode"] = str(returncode)
        super().__init__(message, code=ErrorCode.EXTERNAL_PROCESS, hint=hint, context=merged)
        self.stage = stage
        self.returncode = returncode


class UnsupportedVariantError(KilnError):
    def __init__(
        self,
        message: str,
        *,
        hint: str | None = None,
        context: Mapping[str, str] | None = None,
    ) -> None:
        super().__init__(message, code=ErrorCode.UNSUPPORTED_VARIANT, hint=hint, context=context)


class ScratchLockedError(KilnError):
    def __init__(
        self,
        message: str,
        *,
        hint: str | None = None,
        context: Mapping[str, str] | None = None,
    ) -> None:
        super().__init__(message, code=ErrorCode.SCRATCH_LOCKED, hint=hint, context=context)


class PolicyError(KilnError):
    def __init__(
        self,
        message: str,
        *,
        hint: str | None = None,
        context: Mapping[str, str] | None = None,
    ) -> None:
        super().__init__(message, code=ErrorCode.POLICY, hint=hint, context=context)


__all__ = [
    "ChecksumMismatchError",
    "ErrorCode",
    "ExternalProcessError",
    "IncompatibleToolchainError",
    "KilnError",
    "NetworkFetchError",
    "PatchApplicationError",
    "PolicyError",
    "RecipeError",
    "ScratchLockedError",
    "UnknownOptionError",
    "UnsupportedVariantError",
    "ValidationError",
]
