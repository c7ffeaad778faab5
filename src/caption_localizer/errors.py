"""
Error taxonomy shared by every pipeline component.

Every error carries a stable `code`, an `ErrorKind` that decides retry/HTTP
treatment, and a `to_dict()` used both for `job.error_detail` and HTTP bodies,
so the job snapshot and the event projection always agree on why a job failed.
"""

from __future__ import annotations

from enum import Enum
from typing import Any


class ErrorKind(str, Enum):
    validation = "validation"
    not_found = "not_found"
    conflict = "conflict"
    transient = "transient"
    quality = "quality"
    resource = "resource"
    fatal = "fatal"


class LocalizerError(RuntimeError):
    code = "LOCALIZER_ERROR"
    kind = ErrorKind.fatal
    http_status = 500

    def __init__(self, message: str = "", *, details: dict[str, Any] | None = None) -> None:
        super().__init__(message or self.code)
        self.message = message or self.code
        self.details = dict(details or {})

    @property
    def retryable(self) -> bool:
        return self.kind == ErrorKind.transient

    def to_dict(self) -> dict[str, Any]:
        d: dict[str, Any] = {
            "code": self.code,
            "kind": self.kind.value,
            "message": self.message,
            "retryable": self.retryable,
        }
        if self.details:
            d["details"] = dict(self.details)
        return d


# --- validation (4xx, never retried) ---
class ValidationError(LocalizerError):
    code = "VALIDATION_ERROR"
    kind = ErrorKind.validation
    http_status = 400


class InvalidJobId(ValidationError):
    code = "INVALID_JOB_ID"


class UnsupportedLanguage(ValidationError):
    code = "UNSUPPORTED_LANGUAGE"


class InvalidRequest(ValidationError):
    code = "INVALID_REQUEST"
    http_status = 422


class JobNotFound(LocalizerError):
    code = "JOB_NOT_FOUND"
    kind = ErrorKind.not_found
    http_status = 404


# --- state machine conflicts ---
class InvalidTransition(LocalizerError):
    code = "INVALID_TRANSITION"
    kind = ErrorKind.conflict
    http_status = 409


class RegressionError(LocalizerError):
    code = "PROGRESS_REGRESSION"
    kind = ErrorKind.conflict
    http_status = 409


# --- transient infrastructure (retried with backoff) ---
class TransientError(LocalizerError):
    code = "TRANSIENT_ERROR"
    kind = ErrorKind.transient
    http_status = 503


class NetworkError(TransientError):
    code = "NETWORK_ERROR"


class ProviderError(TransientError):
    """
    External service failure. 5xx/429 are retryable; other statuses are not.
    """

    code = "API_ERROR"

    def __init__(
        self,
        message: str = "",
        *,
        status_code: int | None = None,
        retryable: bool = True,
        details: dict[str, Any] | None = None,
    ) -> None:
        d = dict(details or {})
        if status_code is not None:
            d.setdefault("status_code", int(status_code))
        super().__init__(message, details=d)
        self.status_code = status_code
        self._retryable = bool(retryable)

    @property
    def retryable(self) -> bool:
        return self._retryable


class ProviderTimeout(TransientError):
    code = "TIMEOUT_ERROR"


class RenderPipelineError(TransientError):
    code = "RENDER_PIPELINE_ERROR"


# --- quality gate (surfaced, never auto-retried) ---
class QualityError(LocalizerError):
    code = "QUALITY_ERROR"
    kind = ErrorKind.quality
    http_status = 422


class QualityValidationFailed(QualityError):
    code = "QUALITY_VALIDATION_FAILED"


class LanguageConfidenceTooLow(QualityError):
    code = "LANGUAGE_CONFIDENCE_TOO_LOW"


class InsufficientCoverage(QualityError):
    code = "INSUFFICIENT_COVERAGE"


# --- resource limits (rejected before the costly operation) ---
class ResourceLimitError(LocalizerError):
    code = "RESOURCE_LIMIT"
    kind = ErrorKind.resource
    http_status = 429


class CostLimitExceeded(ResourceLimitError):
    code = "COST_LIMIT_EXCEEDED"


class ConcurrencyLimitExceeded(ResourceLimitError):
    code = "CONCURRENCY_LIMIT_EXCEEDED"


class FileTooLarge(ResourceLimitError):
    code = "FILE_TOO_LARGE"
    http_status = 413


# --- fatal pipeline errors (job -> failed) ---
class FatalPipelineError(LocalizerError):
    code = "FATAL_PIPELINE_ERROR"
    kind = ErrorKind.fatal
    http_status = 500


class EmptyOutput(FatalPipelineError):
    code = "EMPTY_OUTPUT"


class UnsupportedCodec(FatalPipelineError):
    code = "UNSUPPORTED"
    http_status = 415


class MissingAudioTrack(FatalPipelineError):
    code = "NO_AUDIO"
    http_status = 422


class DurationTooLong(FatalPipelineError):
    code = "TOO_LONG"
    http_status = 422


class SourceNotFound(FatalPipelineError):
    code = "FILE_NOT_FOUND"
    http_status = 404


class AudioExtractionError(FatalPipelineError):
    code = "AUDIO_EXTRACTION_ERROR"
    http_status = 422


class MalformedResponse(FatalPipelineError):
    code = "MALFORMED_RESPONSE"
    http_status = 502


class RetryExhausted(FatalPipelineError):
    code = "RETRY_EXHAUSTED"


class JobTimeout(FatalPipelineError):
    code = "TIMEOUT"
    http_status = 504


class JobCancelled(FatalPipelineError):
    code = "CANCELLED"
    http_status = 409


def error_payload(ex: BaseException) -> dict[str, Any]:
    """
    Normalize any exception into the structure stored on `job.error_detail`.
    """
    if isinstance(ex, LocalizerError):
        return ex.to_dict()
    return {
        "code": "INTERNAL_ERROR",
        "kind": ErrorKind.fatal.value,
        "message": str(ex) or type(ex).__name__,
        "retryable": False,
    }
