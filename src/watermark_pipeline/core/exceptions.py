"""Custom exceptions and error handling utilities for the watermark pipeline."""

from __future__ import annotations

from contextlib import contextmanager
from typing import Any, Optional


class WatermarkPipelineError(Exception):
    """Base exception for all watermark pipeline errors."""


class ConfigurationError(WatermarkPipelineError):
    """Error raised for invalid configuration options."""


class PlatformError(WatermarkPipelineError):
    """Error raised when the commerce platform API rejects a request."""


class TransientPlatformError(PlatformError):
    """Rate limiting, timeouts and 5xx responses. Safe to retry."""

    def __init__(self, message: str, retry_after: Optional[float] = None):
        super().__init__(message)
        self.retry_after = retry_after


class PlatformUserError(PlatformError):
    """A mutation returned userErrors or mediaUserErrors."""

    def __init__(self, operation: str, errors: list[dict[str, Any]]):
        messages = "; ".join(str(e.get("message", e)) for e in errors)
        super().__init__(f"{operation} failed: {messages}")
        self.operation = operation
        self.errors = errors


class ImageValidationError(WatermarkPipelineError):
    """Source image is too large, has unsupported format or bad dimensions."""


class ImageProcessingError(WatermarkPipelineError):
    """Error raised when compositing or encoding a single image fails."""


class UploadError(WatermarkPipelineError):
    """Error raised when a staged upload or media creation fails."""


class ScopeResolutionError(WatermarkPipelineError):
    """Error raised when a job scope cannot be expanded into products."""


class JobNotFoundError(WatermarkPipelineError):
    """Error raised when a job id does not exist."""


class InvalidJobStateError(WatermarkPipelineError):
    """Error raised when a job transition is not allowed from its status."""


class CredentialError(WatermarkPipelineError):
    """Error raised when no access token is stored for a shop."""


class ArchiveError(WatermarkPipelineError):
    """Error raised when an original image cannot be archived."""


class RestoreVerificationError(WatermarkPipelineError):
    """Restored media never reached a ready state."""


class PollTimeoutError(RestoreVerificationError):
    """A bounded poll ran out of attempts."""


NON_RETRYABLE_ERRORS = (JobNotFoundError, InvalidJobStateError, ConfigurationError)


@contextmanager
def batch_error_handler() -> Any:
    """Context manager to wrap image codec work with error handling."""
    try:
        yield
    except WatermarkPipelineError:
        raise
    except Exception as exc:  # noqa: BLE001
        raise ImageProcessingError(str(exc)) from exc
