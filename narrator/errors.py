from __future__ import annotations

from typing import Any


class NarratorError(Exception):
    """Base error carrying a stable code and a structured payload."""

    code = "NARRATOR_ERROR"
    retryable = False

    def __init__(
        self,
        message: str,
        *,
        code: str | None = None,
        details: dict[str, Any] | None = None,
        retryable: bool | None = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        if code is not None:
            self.code = code
        if retryable is not None:
            self.retryable = retryable
        self.details = details or {}

    def to_payload(self) -> dict[str, Any]:
        payload: dict[str, Any] = {"code": self.code, "message": self.message}
        if self.details:
            payload["details"] = self.details
        return payload


class ValidationError(NarratorError):
    code = "VALIDATION_ERROR"


class InvalidLocation(ValidationError):
    code = "INVALID_LOCATION"

    def __init__(self, location: str, reason: str) -> None:
        super().__init__(f"Invalid media location {location!r}: {reason}", details={"location": location})


class AlreadyPolling(ValidationError):
    code = "ALREADY_POLLING"

    def __init__(self, job_id: str) -> None:
        super().__init__(f"Job {job_id} is already being polled", details={"job_id": job_id})


class DependencyError(NarratorError):
    """A collaborator call failed in a way that may succeed on retry."""

    code = "DEPENDENCY_ERROR"
    retryable = True

    def __init__(
        self,
        message: str,
        *,
        service: str | None = None,
        status_code: int | None = None,
        code: str | None = None,
        details: dict[str, Any] | None = None,
        retryable: bool | None = None,
    ) -> None:
        merged = dict(details or {})
        if service is not None:
            merged.setdefault("service", service)
        if status_code is not None:
            merged.setdefault("status_code", status_code)
        super().__init__(message, code=code, details=merged, retryable=retryable)
        self.service = service
        self.status_code = status_code


class ServiceRequestError(DependencyError):
    """The collaborator rejected the request; repeating it will not help."""

    code = "SERVICE_REQUEST_REJECTED"
    retryable = False


class RetryExhausted(DependencyError):
    code = "RETRY_EXHAUSTED"
    retryable = False

    def __init__(self, label: str, attempts: int, last_error: BaseException) -> None:
        super().__init__(
            f"{label} failed after {attempts} attempts: {last_error}",
            details={"attempts": attempts, "last_error": str(last_error)},
        )
        self.attempts = attempts
        self.last_error = last_error


class CircuitOpenError(DependencyError):
    code = "CIRCUIT_OPEN"
    retryable = False

    def __init__(self, name: str, retry_after_seconds: float) -> None:
        super().__init__(
            f"Circuit breaker '{name}' is open; retry in {retry_after_seconds:.1f}s",
            service=name,
            details={"retry_after_seconds": round(retry_after_seconds, 3)},
        )
        self.retry_after_seconds = retry_after_seconds


class RateLimitExceeded(DependencyError):
    code = "RATE_LIMIT_EXCEEDED"
    retryable = False


class DetectionFailed(NarratorError):
    code = "DETECTION_FAILED"


class ExtractionFailed(NarratorError):
    code = "EXTRACTION_FAILED"

    def __init__(self, message: str, *, diagnostic: str = "", details: dict[str, Any] | None = None) -> None:
        merged = dict(details or {})
        if diagnostic:
            merged["diagnostic"] = diagnostic
        super().__init__(message, details=merged)
        self.diagnostic = diagnostic


class ParseError(NarratorError):
    code = "PARSE_ERROR"


class InvalidResponseFormat(ParseError):
    code = "INVALID_RESPONSE_FORMAT"


class JSONParseFailed(ParseError):
    code = "JSON_PARSE_FAILED"


class MissingRequiredFields(ParseError):
    code = "MISSING_REQUIRED_FIELDS"

    def __init__(self, missing: list[str]) -> None:
        super().__init__(
            f"Analysis response is missing required fields: {', '.join(missing)}",
            details={"missing": missing},
        )
        self.missing = missing


class NoAnalyses(NarratorError):
    code = "NO_ANALYSES"

    def __init__(self, message: str = "No scene analyses were provided for compilation") -> None:
        super().__init__(message)


class ChunkSynthesisFailed(NarratorError):
    code = "CHUNK_SYNTHESIS_FAILED"

    def __init__(self, chunk_index: int, chunk_count: int, cause: BaseException) -> None:
        super().__init__(
            f"Speech synthesis failed for chunk {chunk_index + 1}/{chunk_count}: {cause}",
            details={"chunk_index": chunk_index, "chunk_count": chunk_count},
        )
        self.chunk_index = chunk_index


class StageExhausted(NarratorError):
    """A stage finished without a single usable output."""

    code = "STAGE_EXHAUSTED"

    def __init__(self, stage: str, message: str, errors: list[dict[str, Any]] | None = None) -> None:
        details: dict[str, Any] = {"stage": stage}
        if errors:
            details["errors"] = errors
        super().__init__(message, details=details)
        self.stage = stage


class PolledJobFailed(NarratorError):
    code = "JOB_FAILED"

    def __init__(self, job_id: str, remote_error: Any = None, message: str | None = None) -> None:
        details: dict[str, Any] = {"job_id": job_id}
        if remote_error is not None:
            details["remote_error"] = remote_error
        super().__init__(message or f"Polled job {job_id} reported failure", details=details)
        self.job_id = job_id
        self.remote_error = remote_error


class StageTimeout(NarratorError):
    code = "TIMEOUT"


class PollingTimeout(StageTimeout):
    code = "POLLING_TIMEOUT"

    def __init__(self, job_id: str, timeout_seconds: float, attempts: int) -> None:
        super().__init__(
            f"Polling job {job_id} timed out after {timeout_seconds:g}s",
            details={"job_id": job_id, "timeout_seconds": timeout_seconds, "attempts": attempts},
        )
        self.job_id = job_id
        self.attempts = attempts


class SegmentationTimeout(StageTimeout):
    code = "SEGMENTATION_TIMEOUT"


class Cancelled(NarratorError):
    code = "CANCELLED"


class PollingCancelled(Cancelled):
    code = "POLLING_CANCELLED"

    def __init__(self, job_id: str, reason: str | None = None) -> None:
        super().__init__(
            "Job polling was cancelled" + (f": {reason}" if reason else ""),
            details={"job_id": job_id},
        )
        self.job_id = job_id


class JobNotFound(NarratorError):
    code = "JOB_NOT_FOUND"

    def __init__(self, job_id: str) -> None:
        super().__init__(f"Job {job_id} was not found", details={"job_id": job_id})


class ResultNotReady(NarratorError):
    code = "RESULT_NOT_READY"


class JobStateError(NarratorError):
    code = "INVALID_JOB_TRANSITION"
