"""
Durable job queue on top of the SQL store.

Messages move waiting -> active -> (deleted | waiting again | failed).
Claims are an optimistic ``UPDATE ... WHERE status = 'waiting'`` so several
workers can poll the same table without double-processing a message.
"""

import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, Optional

from sqlalchemy import delete, select, update
from sqlalchemy.ext.asyncio import async_sessionmaker

from ..core.logging_config import get_logger
from .tables import QueueMessageRow

APPLY_QUEUE = "watermark:apply"
ROLLBACK_QUEUE = "watermark:rollback"

WAITING = "waiting"
ACTIVE = "active"
FAILED = "failed"

logger = get_logger("queue")


@dataclass
class QueuedMessage:
    id: int
    queue_name: str
    job_key: str
    payload: Dict[str, Any]
    attempts: int
    max_attempts: int


class JobQueue:
    def __init__(
        self,
        session_factory: async_sessionmaker,
        max_attempts: int = 3,
        backoff_delay: float = 5.0,
        clock: Callable[[], float] = time.time,
    ):
        self._sessions = session_factory
        self._max_attempts = max_attempts
        self._backoff_delay = backoff_delay
        self._clock = clock

    async def enqueue(
        self, queue_name: str, job_key: str, payload: Dict[str, Any], delay: float = 0.0
    ) -> int:
        """Add a message. A waiting or active message with the same key is reused."""
        async with self._sessions.begin() as session:
            existing = await session.scalar(
                select(QueueMessageRow).where(
                    QueueMessageRow.queue_name == queue_name,
                    QueueMessageRow.job_key == job_key,
                    QueueMessageRow.status.in_((WAITING, ACTIVE)),
                )
            )
            if existing is not None:
                logger.debug(f"Message for {job_key} already queued on {queue_name}")
                return existing.id
            row = QueueMessageRow(
                queue_name=queue_name,
                job_key=job_key,
                payload=payload,
                status=WAITING,
                attempts=0,
                max_attempts=self._max_attempts,
                available_at=self._clock() + delay,
            )
            session.add(row)
            await session.flush()
            return row.id

    async def claim(self, queue_name: str) -> Optional[QueuedMessage]:
        """Take the oldest available message, or None when there is nothing to do."""
        now = self._clock()
        async with self._sessions.begin() as session:
            candidates = await session.scalars(
                select(QueueMessageRow)
                .where(
                    QueueMessageRow.queue_name == queue_name,
                    QueueMessageRow.status == WAITING,
                    QueueMessageRow.available_at <= now,
                )
                .order_by(QueueMessageRow.available_at, QueueMessageRow.id)
                .limit(5)
            )
            for row in list(candidates):
                result = await session.execute(
                    update(QueueMessageRow)
                    .where(QueueMessageRow.id == row.id, QueueMessageRow.status == WAITING)
                    .values(status=ACTIVE, attempts=QueueMessageRow.attempts + 1, claimed_at=now)
                    .execution_options(synchronize_session=False)
                )
                if result.rowcount == 1:
                    return QueuedMessage(
                        id=row.id,
                        queue_name=row.queue_name,
                        job_key=row.job_key,
                        payload=dict(row.payload),
                        attempts=row.attempts + 1,
                        max_attempts=row.max_attempts,
                    )
        return None

    async def complete(self, message_id: int) -> None:
        async with self._sessions.begin() as session:
            await session.execute(delete(QueueMessageRow).where(QueueMessageRow.id == message_id))

    async def fail(self, message_id: int, error: str, retryable: bool = True) -> bool:
        """
        Record a failed attempt. Returns True when the message will run again.

        Retries back off exponentially from ``backoff_delay``.
        """
        async with self._sessions.begin() as session:
            row = await session.get(QueueMessageRow, message_id)
            if row is None:
                return False
            row.last_error = error
            if retryable and row.attempts < row.max_attempts:
                delay = self._backoff_delay * 2 ** (row.attempts - 1)
                row.status = WAITING
                row.available_at = self._clock() + delay
                logger.warning(
                    f"{row.queue_name} message {row.job_key} failed attempt "
                    f"{row.attempts}/{row.max_attempts}; retrying in {delay:.1f}s: {error}"
                )
                return True
            row.status = FAILED
            logger.error(f"{row.queue_name} message {row.job_key} failed permanently: {error}")
            return False

    async def remove(self, queue_name: str, job_key: str) -> bool:
        """Drop a waiting message. Active messages are left to their worker."""
        async with self._sessions.begin() as session:
            result = await session.execute(
                delete(QueueMessageRow).where(
                    QueueMessageRow.queue_name == queue_name,
                    QueueMessageRow.job_key == job_key,
                    QueueMessageRow.status == WAITING,
                )
            )
            return result.rowcount > 0

    async def heartbeat(self, message_id: int) -> bool:
        """Refresh the claim of an active message. False once it is no longer active."""
        async with self._sessions.begin() as session:
            result = await session.execute(
                update(QueueMessageRow)
                .where(QueueMessageRow.id == message_id, QueueMessageRow.status == ACTIVE)
                .values(claimed_at=self._clock())
                .execution_options(synchronize_session=False)
            )
            return result.rowcount == 1

    async def requeue_stale(self, queue_name: str, visibility_timeout: float) -> int:
        """Return active messages whose worker vanished to the waiting state."""
        cutoff = self._clock() - visibility_timeout
        async with self._sessions.begin() as session:
            result = await session.execute(
                update(QueueMessageRow)
                .where(
                    QueueMessageRow.queue_name == queue_name,
                    QueueMessageRow.status == ACTIVE,
                    QueueMessageRow.claimed_at < cutoff,
                )
                .values(status=WAITING, available_at=self._clock())
                .execution_options(synchronize_session=False)
            )
            if result.rowcount:
                logger.warning(f"Requeued {result.rowcount} stale message(s) on {queue_name}")
            return result.rowcount

    async def get_message(self, queue_name: str, job_key: str) -> Optional[QueuedMessage]:
        async with self._sessions() as session:
            row = await session.scalar(
                select(QueueMessageRow)
                .where(QueueMessageRow.queue_name == queue_name, QueueMessageRow.job_key == job_key)
                .order_by(QueueMessageRow.id.desc())
                .limit(1)
            )
            if row is None:
                return None
            return QueuedMessage(
                id=row.id,
                queue_name=row.queue_name,
                job_key=row.job_key,
                payload=dict(row.payload),
                attempts=row.attempts,
                max_attempts=row.max_attempts,
            )

    async def get_status(self, message_id: int) -> Optional[str]:
        async with self._sessions() as session:
            row = await session.get(QueueMessageRow, message_id)
            return row.status if row else None

    async def count(self, queue_name: str, status: str = WAITING) -> int:
        async with self._sessions() as session:
            rows = await session.scalars(
                select(QueueMessageRow.id).where(
                    QueueMessageRow.queue_name == queue_name, QueueMessageRow.status == status
                )
            )
            return len(list(rows))
