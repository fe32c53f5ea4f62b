"""Workers that pull job messages off the durable queue."""

import asyncio
from typing import Any, Awaitable, Callable, Optional

from sqlalchemy.exc import SQLAlchemyError

from ..core.exceptions import NON_RETRYABLE_ERRORS
from ..core.models import JobMessage
from ..core.observability import (
    LogContext,
    StructuredLogger,
    log_operation_end,
    log_operation_start,
)
from ..storage.queue import JobQueue, QueuedMessage

Handler = Callable[[str], Awaitable[Any]]


class QueueConsumer:
    """
    Runs ``concurrency`` workers against one named queue.

    A handler that returns normally completes (removes) the message. A
    handler that raises fails the attempt: errors in ``NON_RETRYABLE_ERRORS``
    go straight to ``failed``, everything else is retried with backoff.

    While a handler runs its claim is refreshed every ``heartbeat_interval``
    seconds (a third of the visibility timeout by default), so a long job is
    never handed to a second worker as stale.
    """

    def __init__(
        self,
        queue: JobQueue,
        queue_name: str,
        handler: Handler,
        concurrency: int = 1,
        poll_interval: float = 1.0,
        visibility_timeout: Optional[float] = None,
        logger: Optional[StructuredLogger] = None,
        heartbeat_interval: Optional[float] = None,
    ):
        self._queue = queue
        self._queue_name = queue_name
        self._handler = handler
        self._concurrency = max(1, concurrency)
        self._poll_interval = poll_interval
        self._visibility_timeout = visibility_timeout
        self._logger = logger or StructuredLogger("consumer")
        if heartbeat_interval is None and visibility_timeout:
            heartbeat_interval = visibility_timeout / 3
        self._heartbeat_interval = heartbeat_interval

    async def _keep_claimed(self, message: QueuedMessage, context: LogContext) -> None:
        while True:
            await asyncio.sleep(self._heartbeat_interval)
            try:
                if not await self._queue.heartbeat(message.id):
                    self._logger.warning("Message no longer active; heartbeat stopped", context)
                    return
            except SQLAlchemyError as exc:
                self._logger.warning(f"Heartbeat failed: {exc}", context)

    async def handle(self, message: QueuedMessage) -> bool:
        """Process one claimed message. Returns True when the handler succeeded."""
        payload = JobMessage.model_validate(message.payload)
        context = log_operation_start(
            self._queue_name,
            self._logger,
            LogContext(correlation_id=payload.job_id, component="consumer", shop=payload.shop),
            attempt=message.attempts,
        )
        heartbeat = None
        if self._heartbeat_interval:
            heartbeat = asyncio.create_task(self._keep_claimed(message, context))
        try:
            await self._handler(payload.job_id)
        except Exception as exc:  # noqa: BLE001
            await self._stop_heartbeat(heartbeat)
            retryable = not isinstance(exc, NON_RETRYABLE_ERRORS)
            await self._queue.fail(message.id, str(exc), retryable=retryable)
            log_operation_end(
                self._queue_name, self._logger, context, success=False, error_message=str(exc)
            )
            return False
        await self._stop_heartbeat(heartbeat)
        await self._queue.complete(message.id)
        log_operation_end(self._queue_name, self._logger, context)
        return True

    @staticmethod
    async def _stop_heartbeat(heartbeat: Optional[asyncio.Task]) -> None:
        if heartbeat is None:
            return
        heartbeat.cancel()
        await asyncio.gather(heartbeat, return_exceptions=True)

    async def _requeue_stale(self) -> None:
        if self._visibility_timeout:
            await self._queue.requeue_stale(self._queue_name, self._visibility_timeout)

    async def drain(self) -> int:
        """Handle messages until none is available. Returns how many were handled."""
        await self._requeue_stale()
        handled = 0

        async def worker() -> None:
            nonlocal handled
            while True:
                message = await self._queue.claim(self._queue_name)
                if message is None:
                    return
                await self.handle(message)
                handled += 1

        await asyncio.gather(*(worker() for _ in range(self._concurrency)))
        return handled

    async def run(self, stop_event: asyncio.Event) -> None:
        """Poll until ``stop_event`` is set. In-flight messages finish first."""
        self._logger.info(
            f"Consuming {self._queue_name}",
            concurrency=self._concurrency,
            poll_interval=self._poll_interval,
        )
        await self._requeue_stale()

        async def worker() -> None:
            while not stop_event.is_set():
                message = await self._queue.claim(self._queue_name)
                if message is None:
                    try:
                        await asyncio.wait_for(stop_event.wait(), timeout=self._poll_interval)
                    except asyncio.TimeoutError:
                        pass
                    continue
                await self.handle(message)

        await asyncio.gather(*(worker() for _ in range(self._concurrency)))
        self._logger.info(f"Stopped consuming {self._queue_name}")
