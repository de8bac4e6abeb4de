"""Error taxonomy shared by the transcription and summary services."""

from __future__ import annotations

from typing import Any


class RecorderError(Exception):
    """Base exception for all recorder errors.

    Attributes:
        status_code: HTTP status code returned when the error reaches the gateway.
        error_code: Machine-readable error identifier for clients.
        context: Arbitrary key-value pairs providing additional error context.
    """

    status_code: int = 500

    def __init__(self, message: str, error_code: str = "INTERNAL_ERROR", **context: Any) -> None:
        super().__init__(message)
        self.error_code = error_code
        self.context = context


class ConfigurationError(RecorderError):
    """Backend settings are missing or invalid, or a split budget is unusable."""

    status_code: int = 400

    def __init__(self, message: str, **context: Any) -> None:
        super().__init__(message, error_code="CONFIGURATION_ERROR", **context)


class FormatError(RecorderError):
    """Malformed WAV container or unsupported sample layout."""

    status_code: int = 422

    def __init__(self, message: str, **context: Any) -> None:
        super().__init__(message, error_code="FORMAT_ERROR", **context)


class ConversionError(RecorderError):
    """Audio decode/resample capability is missing or failed."""

    status_code: int = 422

    def __init__(self, message: str, **context: Any) -> None:
        super().__init__(message, error_code="CONVERSION_ERROR", **context)


class BackendError(RecorderError):
    """An ASR or LLM backend answered with an error or an unusable payload."""

    status_code: int = 502

    def __init__(self, message: str, status: int | None = None, **context: Any) -> None:
        super().__init__(message, error_code="BACKEND_ERROR", **context)
        self.status = status


class OperationTimeoutError(RecorderError, TimeoutError):
    """A subprocess or polling bound was exceeded."""

    status_code: int = 504

    def __init__(self, message: str, **context: Any) -> None:
        super().__init__(message, error_code="TIMEOUT", **context)


class EmptyResultError(RecorderError):
    """A backend finished but produced no usable text."""

    status_code: int = 502

    def __init__(self, message: str, **context: Any) -> None:
        super().__init__(message, error_code="EMPTY_RESULT", **context)


class ResourceNotFoundError(RecorderError):
    """A recording or sidecar file does not exist in storage."""

    status_code: int = 404

    def __init__(self, message: str, **context: Any) -> None:
        super().__init__(message, error_code="NOT_FOUND", **context)
