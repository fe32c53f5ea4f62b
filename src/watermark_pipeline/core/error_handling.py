# src/watermark_pipeline/core/error_handling.py

import asyncio
import functools
import logging
from typing import Any, Awaitable, Callable, Optional, TypeVar

from .exceptions import (
    PollTimeoutError,
    RestoreVerificationError,
    TransientPlatformError,
)

T = TypeVar("T")


def retry_transient(max_attempts=3, initial_delay=1.0, backoff_factor=2.0, max_delay=30.0):
    """
    Decorator to retry async platform calls with exponential backoff.

    Only ``TransientPlatformError`` is retried. A ``retry_after`` hint on the
    error replaces the computed delay for that attempt.
    """
    def decorator(func):
        @functools.wraps(func)
        async def wrapper(*args, **kwargs):
            logger = logging.getLogger(func.__module__ + '.' + func.__name__)
            delay = initial_delay
            for attempt in range(1, max_attempts + 1):
                try:
                    return await func(*args, **kwargs)
                except TransientPlatformError as e:
                    if attempt >= max_attempts:
                        logger.error(
                            f"Platform call '{func.__name__}' failed after {max_attempts} attempts. Error: {e}"
                        )
                        raise
                    wait = e.retry_after if e.retry_after is not None else delay
                    wait = min(wait, max_delay)
                    logger.info(
                        f"Platform call '{func.__name__}' failed. Attempt {attempt}/{max_attempts}. "
                        f"Retrying in {wait:.2f}s. Error: {e}"
                    )
                    await asyncio.sleep(wait)
                    delay *= backoff_factor
        return wrapper
    return decorator


async def poll_until(
    fetch: Callable[[], Awaitable[T]],
    is_done: Callable[[T], bool],
    attempts: int = 10,
    delay: float = 2.0,
    is_failed: Optional[Callable[[T], bool]] = None,
    description: str = "operation",
) -> T:
    """
    Call ``fetch`` until ``is_done`` accepts its result.

    Makes at most ``attempts`` calls separated by ``delay`` seconds. Raises
    ``RestoreVerificationError`` as soon as ``is_failed`` matches and
    ``PollTimeoutError`` when attempts run out. Cancellation of the awaiting
    task propagates out of the sleep unchanged.
    """
    if attempts < 1:
        raise ValueError("attempts must be at least 1")

    last: Any = None
    for attempt in range(1, attempts + 1):
        last = await fetch()
        if is_done(last):
            return last
        if is_failed is not None and is_failed(last):
            raise RestoreVerificationError(f"{description} reported failure: {last!r}")
        if attempt < attempts:
            await asyncio.sleep(delay)

    raise PollTimeoutError(
        f"{description} not ready after {attempts} attempts (last state: {last!r})"
    )


class BatchOperationContextManager:
    """
    Context manager for batch operations to collect and summarize errors.
    """
    def __init__(self, operation_name="Batch Operation"):
        self.operation_name = operation_name
        self.errors = []
        self.logger = logging.getLogger(self.__class__.__module__ + '.' + self.__class__.__name__)

    def __enter__(self):
        self.logger.debug(f"Starting {self.operation_name}.")
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        if self.errors:
            self.logger.warning(
                f"{self.operation_name} completed with {len(self.errors)} error(s)."
            )
            for i, error_detail in enumerate(self.errors):
                item_identifier = error_detail.get('item', 'Unknown item')
                error_message = error_detail.get('error', 'Unknown error')
                self.logger.error(
                    f"  Error {i+1}/{len(self.errors)} for item '{item_identifier}': {error_message}"
                )
        elif exc_type:
            self.logger.error(
                f"{self.operation_name} failed due to an unhandled exception: {exc_val}",
                exc_info=(exc_type, exc_val, exc_tb)
            )
        else:
            self.logger.debug(f"{self.operation_name} completed successfully.")

        # Exceptions not reported through add_error propagate.
        return False

    @property
    def has_errors(self) -> bool:
        return bool(self.errors)

    def add_error(self, error_message: str, item_identifier: str = "Unknown item"):
        """
        Call this method within the 'with' block to report an error for a specific item.

        Args:
            error_message (str): The error message or exception string.
            item_identifier (str): A string identifying the item that failed (e.g., media id).
        """
        self.errors.append({"item": item_identifier, "error": str(error_message)})
        self.logger.debug(f"Error added for item '{item_identifier}' in {self.operation_name}: {error_message}")
