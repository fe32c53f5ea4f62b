# tests/core/test_error_handling.py

import asyncio
import logging
from unittest import mock

import pytest

from watermark_pipeline.core.error_handling import (
    BatchOperationContextManager,
    poll_until,
    retry_transient,
)
from watermark_pipeline.core.exceptions import (
    PlatformError,
    PollTimeoutError,
    RestoreVerificationError,
    TransientPlatformError,
)
from watermark_pipeline.core.observability import (
    LogContext,
    MetricsCollector,
    StageTiming,
    StructuredLogger,
    log_operation_end,
    log_operation_start,
    timed_stage,
)


@pytest.fixture
def mock_logger():
    """Fixture to mock the loggers created through logging.getLogger."""
    with mock.patch('logging.getLogger') as mock_get_logger:
        mock_log_instance = mock.Mock()
        mock_get_logger.return_value = mock_log_instance
        yield mock_log_instance


@pytest.fixture
def mock_sleep():
    """Fixture replacing asyncio.sleep so retries and polls run instantly."""
    with mock.patch('watermark_pipeline.core.error_handling.asyncio.sleep', new_callable=mock.AsyncMock) as sleep:
        yield sleep


# --- Tests for @retry_transient decorator ---

def test_retry_transient_success_on_first_attempt(mock_logger, mock_sleep):
    """Test @retry_transient returns immediately when the call succeeds."""
    @retry_transient(max_attempts=3, initial_delay=0.01)
    async def call_succeeds():
        return "success"

    assert asyncio.run(call_succeeds()) == "success"
    mock_sleep.assert_not_called()
    mock_logger.info.assert_not_called()
    mock_logger.error.assert_not_called()


def test_retry_transient_success_after_retries(mock_logger, mock_sleep):
    """Test @retry_transient backs off exponentially between transient failures."""
    platform_call = mock.AsyncMock(side_effect=[
        TransientPlatformError("HTTP 503"),
        TransientPlatformError("HTTP 502"),
        "success",
    ])

    @retry_transient(max_attempts=3, initial_delay=0.5, backoff_factor=2.0)
    async def call_to_retry():
        return await platform_call()

    assert asyncio.run(call_to_retry()) == "success"
    assert platform_call.await_count == 3
    assert [c.args[0] for c in mock_sleep.await_args_list] == [0.5, 1.0]
    mock_logger.info.assert_any_call(
        "Platform call 'call_to_retry' failed. Attempt 1/3. Retrying in 0.50s. Error: HTTP 503"
    )


def test_retry_transient_honors_retry_after(mock_logger, mock_sleep):
    """Test a retry_after hint replaces the computed delay, capped by max_delay."""
    platform_call = mock.AsyncMock(side_effect=[
        TransientPlatformError("throttled", retry_after=4.0),
        TransientPlatformError("throttled", retry_after=120.0),
        "ok",
    ])

    @retry_transient(max_attempts=3, initial_delay=1.0, max_delay=30.0)
    async def throttled_call():
        return await platform_call()

    assert asyncio.run(throttled_call()) == "ok"
    assert [c.args[0] for c in mock_sleep.await_args_list] == [4.0, 30.0]


def test_retry_transient_fails_after_max_attempts(mock_logger, mock_sleep):
    """Test @retry_transient re-raises after the last attempt."""
    platform_call = mock.AsyncMock(side_effect=TransientPlatformError("still throttled"))

    @retry_transient(max_attempts=3, initial_delay=0.01)
    async def call_fails_persistently():
        return await platform_call()

    with pytest.raises(TransientPlatformError, match="still throttled"):
        asyncio.run(call_fails_persistently())

    assert platform_call.await_count == 3
    assert mock_sleep.await_count == 2
    mock_logger.error.assert_called_once_with(
        "Platform call 'call_fails_persistently' failed after 3 attempts. Error: still throttled"
    )


def test_retry_transient_does_not_retry_permanent_errors(mock_logger, mock_sleep):
    """Test non-transient platform errors propagate on the first failure."""
    platform_call = mock.AsyncMock(side_effect=PlatformError("access denied"))

    @retry_transient(max_attempts=3, initial_delay=0.01)
    async def call_denied():
        return await platform_call()

    with pytest.raises(PlatformError):
        asyncio.run(call_denied())

    assert platform_call.await_count == 1
    mock_sleep.assert_not_called()


# --- Tests for poll_until ---

def test_poll_until_returns_first_done_result(mock_sleep):
    """Test polling stops as soon as the predicate accepts the result."""
    fetch = mock.AsyncMock(side_effect=["PROCESSING", "UPLOADED", "READY"])

    result = asyncio.run(poll_until(fetch, lambda s: s == "READY", attempts=5, delay=0.1))

    assert result == "READY"
    assert fetch.await_count == 3
    assert mock_sleep.await_count == 2


def test_poll_until_raises_on_failure_state(mock_sleep):
    """Test a failure state ends polling with RestoreVerificationError."""
    fetch = mock.AsyncMock(side_effect=["PROCESSING", "FAILED", "READY"])

    with pytest.raises(RestoreVerificationError, match="media reported failure"):
        asyncio.run(poll_until(
            fetch,
            lambda s: s == "READY",
            attempts=5,
            is_failed=lambda s: s == "FAILED",
            description="media",
        ))

    assert fetch.await_count == 2


def test_poll_until_times_out(mock_sleep):
    """Test running out of attempts raises PollTimeoutError without a trailing sleep."""
    fetch = mock.AsyncMock(return_value="PROCESSING")

    with pytest.raises(PollTimeoutError, match="not ready after 3 attempts"):
        asyncio.run(poll_until(fetch, lambda s: s == "READY", attempts=3, delay=1.0))

    assert fetch.await_count == 3
    assert mock_sleep.await_count == 2


def test_poll_until_requires_an_attempt():
    """Test attempts below one are rejected."""
    fetch = mock.AsyncMock(return_value="READY")
    with pytest.raises(ValueError):
        asyncio.run(poll_until(fetch, lambda s: True, attempts=0))
    fetch.assert_not_called()


# --- Tests for BatchOperationContextManager ---

def test_batch_manager_no_errors(mock_logger):
    """Test BatchOperationContextManager when no errors are reported."""
    with BatchOperationContextManager(operation_name="Reorder media") as manager:
        assert not manager.has_errors

    mock_logger.debug.assert_any_call("Starting Reorder media.")
    mock_logger.debug.assert_any_call("Reorder media completed successfully.")
    mock_logger.warning.assert_not_called()


def test_batch_manager_with_errors_added(mock_logger):
    """Test BatchOperationContextManager collecting and logging errors via add_error."""
    with BatchOperationContextManager(operation_name="Attach media") as manager:
        manager.add_error(error_message="Media not ready", item_identifier="media-1")
        manager.add_error(error_message="Invalid URL", item_identifier="media-2")

    assert manager.has_errors
    assert manager.errors[0] == {"item": "media-1", "error": "Media not ready"}
    mock_logger.warning.assert_any_call("Attach media completed with 2 error(s).")
    mock_logger.error.assert_any_call("  Error 1/2 for item 'media-1': Media not ready")
    mock_logger.error.assert_any_call("  Error 2/2 for item 'media-2': Invalid URL")


def test_batch_manager_propagates_unhandled_exception(mock_logger):
    """Test exceptions raised inside the block are never suppressed."""
    class ContextFailure(Exception):
        pass

    with pytest.raises(ContextFailure):
        with BatchOperationContextManager(operation_name="Upload batch"):
            raise ContextFailure("connection reset")

    args, kwargs = mock_logger.error.call_args
    assert "Upload batch failed due to an unhandled exception: connection reset" in args[0]
    assert isinstance(kwargs["exc_info"][1], ContextFailure)


# --- Tests for observability helpers ---

def test_structured_logger_formats_context():
    """Test operation, correlation id and metadata are rendered into the message."""
    backing = mock.Mock(spec=logging.Logger)
    logger = StructuredLogger("test", logger=backing)
    context = LogContext(correlation_id="corr-1", shop="shop.example.com").with_operation("apply_job")

    logger.info("Processing product", context.with_metadata(product="p1"), attempt=2)

    backing.info.assert_called_once_with(
        "[apply_job] [corr-1] Processing product (shop=shop.example.com, product=p1, attempt=2)"
    )


def test_structured_logger_without_context():
    """Test plain keyword metadata is appended when no context is given."""
    backing = mock.Mock(spec=logging.Logger)
    StructuredLogger("test", logger=backing).warning("Slow poll", attempts=3)
    backing.warning.assert_called_once_with("Slow poll (attempts=3)")


def test_log_context_copies_are_independent():
    """Test with_metadata never mutates the original context."""
    base = LogContext(operation="rollback")
    derived = base.with_metadata(job_id="j1")

    assert base.metadata == {}
    assert derived.metadata == {"job_id": "j1"}
    assert derived.correlation_id == base.correlation_id


def test_log_operation_start_and_end():
    """Test start returns the operation context and end reports failures."""
    backing = mock.Mock(spec=logging.Logger)
    logger = StructuredLogger("test", logger=backing)

    context = log_operation_start("rollback_job", logger, job_id="j1")
    log_operation_end("rollback_job", logger, context, success=False, error_message="token missing")

    assert context.operation == "rollback_job"
    assert context.metadata == {"job_id": "j1"}
    assert "Starting rollback_job" in backing.info.call_args[0][0]
    assert "Failed rollback_job: token missing" in backing.error.call_args[0][0]


def test_metrics_collector_summary():
    """Test summaries aggregate success counts and durations per operation."""
    collector = MetricsCollector()
    collector.record(StageTiming("download", 0.0, 1.0, True))
    collector.record(StageTiming("download", 0.0, 3.0, False, "HTTP 404"))
    collector.record(StageTiming("upload", 0.0, 0.5, True))

    summary = collector.summary("download")

    assert summary["count"] == 2
    assert summary["failed"] == 1
    assert summary["success_rate"] == 0.5
    assert summary["avg_duration"] == 2.0
    assert collector.summary("composite") == {}


def test_timed_stage_records_success_and_failure():
    """Test timed_stage records one metric per stage and re-raises errors."""
    collector = MetricsCollector()

    async def run_stages():
        async with timed_stage("download", collector, media_id="m1"):
            pass
        with pytest.raises(RuntimeError):
            async with timed_stage("composite", collector):
                raise RuntimeError("decode failed")

    asyncio.run(run_stages())

    (download,) = collector.timings("download")
    (composite,) = collector.timings("composite")
    assert download.success and download.metadata == {"media_id": "m1"}
    assert not composite.success
    assert composite.error_message == "decode failed"
