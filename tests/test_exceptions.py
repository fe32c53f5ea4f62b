import pytest

from watermark_pipeline.core.exceptions import (
    NON_RETRYABLE_ERRORS,
    ConfigurationError,
    ImageProcessingError,
    InvalidJobStateError,
    JobNotFoundError,
    PlatformError,
    PlatformUserError,
    PollTimeoutError,
    RestoreVerificationError,
    TransientPlatformError,
    UploadError,
    WatermarkPipelineError,
    batch_error_handler,
)


def test_hierarchy_shares_base_class() -> None:
    for error_type in (ConfigurationError, PlatformError, UploadError, ImageProcessingError):
        assert issubclass(error_type, WatermarkPipelineError)
    assert issubclass(TransientPlatformError, PlatformError)
    assert issubclass(PlatformUserError, PlatformError)
    assert issubclass(PollTimeoutError, RestoreVerificationError)


def test_transient_error_keeps_retry_hint() -> None:
    error = TransientPlatformError("throttled", retry_after=2.5)
    assert error.retry_after == 2.5
    assert TransientPlatformError("timeout").retry_after is None


def test_platform_user_error_joins_messages() -> None:
    error = PlatformUserError(
        "productCreateMedia",
        [{"field": ["media"], "message": "Image URL is invalid"}, {"message": "Too many"}],
    )
    assert str(error) == "productCreateMedia failed: Image URL is invalid; Too many"
    assert error.operation == "productCreateMedia"
    assert len(error.errors) == 2


def test_non_retryable_errors() -> None:
    assert isinstance(JobNotFoundError("x"), NON_RETRYABLE_ERRORS)
    assert isinstance(InvalidJobStateError("x"), NON_RETRYABLE_ERRORS)
    assert not isinstance(PlatformError("x"), NON_RETRYABLE_ERRORS)


def test_batch_error_handler_wraps_codec_errors() -> None:
    with pytest.raises(ImageProcessingError, match="boom") as excinfo:
        with batch_error_handler():
            raise OSError("boom")
    assert isinstance(excinfo.value.__cause__, OSError)


def test_batch_error_handler_passes_pipeline_errors() -> None:
    with pytest.raises(UploadError):
        with batch_error_handler():
            raise UploadError("staged upload rejected")
