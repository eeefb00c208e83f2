"""Error taxonomy and classifier for the document intelligence pipeline.

Every failure the OCR and chat subsystems can surface maps onto a closed set of
``ErrorCode`` values. ``classify`` turns an arbitrary low-level cause into the matching
``ErrorInfo`` entry and never raises, so callers at the pipeline boundary can always produce
a structured result.
"""

from __future__ import annotations

import logging
from enum import Enum
from typing import Optional

from PIL import Image, UnidentifiedImageError
from pydantic import BaseModel, ConfigDict

logger = logging.getLogger(__name__)


class ErrorCode(str, Enum):
    OCR_INIT_FAILED = "OCR_INIT_FAILED"
    OCR_SYSTEM_INCOMPATIBLE = "OCR_SYSTEM_INCOMPATIBLE"
    OCR_SERVICE_UNAVAILABLE = "OCR_SERVICE_UNAVAILABLE"
    EXTRACTION_INPUT_INVALID = "EXTRACTION_INPUT_INVALID"
    GENERATION_TIMEOUT = "GENERATION_TIMEOUT"
    GENERATION_FAILED = "GENERATION_FAILED"
    RETRIEVAL_SCOPE_VIOLATION = "RETRIEVAL_SCOPE_VIOLATION"


class Remediation(str, Enum):
    RETRY_AFTER_COOLDOWN = "retry_after_cooldown"
    MANUAL_ENTRY = "manual_entry"
    RETRY_SOON = "retry_soon"
    NO_RETRY = "no_retry"
    ALERT = "alert"


class ErrorInfo(BaseModel):
    """Taxonomy entry describing how a failure is reported and remediated."""

    code: ErrorCode
    http_status: int
    user_message: str
    remediation: Remediation
    retryable: bool
    manual_entry: bool
    default_retry_after: Optional[int] = None

    model_config = ConfigDict(frozen=True)


_TAXONOMY: dict[ErrorCode, ErrorInfo] = {
    ErrorCode.OCR_INIT_FAILED: ErrorInfo(
        code=ErrorCode.OCR_INIT_FAILED,
        http_status=503,
        user_message=(
            "Receipt scanning could not start. You can enter the receipt manually "
            "or try again in a few minutes."
        ),
        remediation=Remediation.RETRY_AFTER_COOLDOWN,
        retryable=True,
        manual_entry=True,
        default_retry_after=300,
    ),
    ErrorCode.OCR_SYSTEM_INCOMPATIBLE: ErrorInfo(
        code=ErrorCode.OCR_SYSTEM_INCOMPATIBLE,
        http_status=503,
        user_message=(
            "OCR service is currently unavailable due to a system compatibility issue. "
            "Please use manual entry."
        ),
        remediation=Remediation.MANUAL_ENTRY,
        retryable=False,
        manual_entry=True,
        default_retry_after=1800,
    ),
    ErrorCode.OCR_SERVICE_UNAVAILABLE: ErrorInfo(
        code=ErrorCode.OCR_SERVICE_UNAVAILABLE,
        http_status=503,
        user_message="Receipt scanning is busy right now. Please try again shortly.",
        remediation=Remediation.RETRY_SOON,
        retryable=True,
        manual_entry=True,
        default_retry_after=5,
    ),
    ErrorCode.EXTRACTION_INPUT_INVALID: ErrorInfo(
        code=ErrorCode.EXTRACTION_INPUT_INVALID,
        http_status=422,
        user_message="The uploaded image could not be read. Please upload a clear photo of the receipt.",
        remediation=Remediation.NO_RETRY,
        retryable=False,
        manual_entry=True,
    ),
    ErrorCode.GENERATION_TIMEOUT: ErrorInfo(
        code=ErrorCode.GENERATION_TIMEOUT,
        http_status=504,
        user_message="I'm taking longer than usual to respond. Please try again.",
        remediation=Remediation.RETRY_SOON,
        retryable=True,
        manual_entry=False,
        default_retry_after=5,
    ),
    ErrorCode.GENERATION_FAILED: ErrorInfo(
        code=ErrorCode.GENERATION_FAILED,
        http_status=502,
        user_message="The assistant is temporarily unavailable. Please try again later.",
        remediation=Remediation.RETRY_SOON,
        retryable=True,
        manual_entry=False,
        default_retry_after=30,
    ),
    ErrorCode.RETRIEVAL_SCOPE_VIOLATION: ErrorInfo(
        code=ErrorCode.RETRIEVAL_SCOPE_VIOLATION,
        http_status=500,
        user_message="An internal error occurred.",
        remediation=Remediation.ALERT,
        retryable=False,
        manual_entry=False,
    ),
}

_missing = set(ErrorCode) - set(_TAXONOMY)
if _missing:  # pragma: no cover - guarded at import time
    raise RuntimeError(f"Error taxonomy is missing entries for {sorted(code.value for code in _missing)}")


def describe(code: ErrorCode) -> ErrorInfo:
    """Return the taxonomy entry for ``code``."""

    return _TAXONOMY[code]


class HeyBillsError(RuntimeError):
    """Base class for classified domain failures."""

    default_code: ErrorCode = ErrorCode.OCR_SERVICE_UNAVAILABLE

    def __init__(
        self,
        message: str | None = None,
        *,
        info: ErrorInfo | None = None,
        retry_after: int | None = None,
    ) -> None:
        self.info = info or describe(self.default_code)
        self.retry_after = retry_after if retry_after is not None else self.info.default_retry_after
        super().__init__(message or self.info.user_message)

    @property
    def code(self) -> ErrorCode:
        return self.info.code


class EngineUnavailable(HeyBillsError):
    """The OCR engine cannot serve requests right now."""

    default_code = ErrorCode.OCR_SERVICE_UNAVAILABLE


class EngineIncompatible(EngineUnavailable):
    """The OCR engine cannot run in this deployment at all."""

    default_code = ErrorCode.OCR_SYSTEM_INCOMPATIBLE


class ExtractionInputInvalid(HeyBillsError):
    """The supplied image is malformed, corrupt or holds no text."""

    default_code = ErrorCode.EXTRACTION_INPUT_INVALID


class RetrievalScopeViolation(HeyBillsError):
    """A retrieval result crossed a user ownership boundary."""

    default_code = ErrorCode.RETRIEVAL_SCOPE_VIOLATION


class GenerationError(HeyBillsError):
    default_code = ErrorCode.GENERATION_FAILED


class GenerationTimeout(GenerationError):
    default_code = ErrorCode.GENERATION_TIMEOUT


class GenerationFailed(GenerationError):
    default_code = ErrorCode.GENERATION_FAILED


# Substrings seen in failures where the OCR runtime cannot work on this host at all.
INCOMPATIBILITY_SIGNATURES = (
    "setvariable",
    "tesseractnotfounderror",
    "tesseract is not installed",
    "not in your path",
    "failed loading language",
    "error opening data file",
    "unsupported platform",
    "exec format error",
)

_INPUT_SIGNATURES = (
    "cannot identify image file",
    "image file is truncated",
    "broken data stream",
    "decompression bomb",
    "no text found",
)

_TIMEOUT_SIGNATURES = ("process timeout", "timed out", "timeout")


def _describe_cause(cause: BaseException) -> str:
    return f"{type(cause).__name__}: {cause}".lower()


def classify(cause: BaseException, *, during_init: bool = False) -> ErrorInfo:
    """Map a low-level failure onto the error taxonomy.

    ``during_init`` selects the fallback entry for unrecognized causes: an engine that fails
    while being constructed is ``OCR_INIT_FAILED``, anything later is treated as a transient
    service failure.
    """

    fallback = describe(ErrorCode.OCR_INIT_FAILED if during_init else ErrorCode.OCR_SERVICE_UNAVAILABLE)
    try:
        if isinstance(cause, HeyBillsError):
            return cause.info
        if isinstance(cause, (UnidentifiedImageError, Image.DecompressionBombError)):
            return describe(ErrorCode.EXTRACTION_INPUT_INVALID)

        text = _describe_cause(cause)
        if any(signature in text for signature in INCOMPATIBILITY_SIGNATURES):
            return describe(ErrorCode.OCR_SYSTEM_INCOMPATIBLE)
        if isinstance(cause, TimeoutError) or any(sig in text for sig in _TIMEOUT_SIGNATURES):
            return describe(ErrorCode.OCR_SERVICE_UNAVAILABLE)
        if any(signature in text for signature in _INPUT_SIGNATURES):
            return describe(ErrorCode.EXTRACTION_INPUT_INVALID)
    except Exception:  # pragma: no cover - str() of exotic exceptions
        logger.debug("Unable to inspect failure cause %r", cause, exc_info=True)
    return fallback


def to_exception(info: ErrorInfo, *, retry_after: int | None = None, message: str | None = None) -> HeyBillsError:
    """Build the exception type matching a taxonomy entry."""

    exc_type: type[HeyBillsError] = {
        ErrorCode.OCR_INIT_FAILED: EngineUnavailable,
        ErrorCode.OCR_SYSTEM_INCOMPATIBLE: EngineIncompatible,
        ErrorCode.OCR_SERVICE_UNAVAILABLE: EngineUnavailable,
        ErrorCode.EXTRACTION_INPUT_INVALID: ExtractionInputInvalid,
        ErrorCode.GENERATION_TIMEOUT: GenerationTimeout,
        ErrorCode.GENERATION_FAILED: GenerationFailed,
        ErrorCode.RETRIEVAL_SCOPE_VIOLATION: RetrievalScopeViolation,
    }[info.code]
    return exc_type(message, info=info, retry_after=retry_after)


__all__ = [
    "ErrorCode",
    "ErrorInfo",
    "Remediation",
    "HeyBillsError",
    "EngineUnavailable",
    "EngineIncompatible",
    "ExtractionInputInvalid",
    "RetrievalScopeViolation",
    "GenerationError",
    "GenerationTimeout",
    "GenerationFailed",
    "INCOMPATIBILITY_SIGNATURES",
    "classify",
    "describe",
    "to_exception",
]
