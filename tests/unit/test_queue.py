"""Tests for the SQL-backed job queue."""

import asyncio

from watermark_pipeline.storage import (
    APPLY_QUEUE,
    ROLLBACK_QUEUE,
    JobQueue,
    create_engine,
    create_session_factory,
    init_db,
)


class FakeClock:
    def __init__(self, now: float = 1000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


def run_with_queue(tmp_path, scenario, **queue_kwargs):
    """Run ``scenario(queue, clock)`` against a fresh SQLite database."""
    clock = FakeClock()

    async def runner():
        engine = create_engine(f"sqlite+aiosqlite:///{tmp_path / 'queue.db'}")
        await init_db(engine)
        try:
            queue = JobQueue(create_session_factory(engine), clock=clock, **queue_kwargs)
            return await scenario(queue, clock)
        finally:
            await engine.dispose()

    return asyncio.run(runner())


def _payload(job_id: str) -> dict:
    return {"jobId": job_id, "shop": "demo.myshopify.com"}


class TestEnqueueAndClaim:
    """Tests for adding and claiming messages."""

    def test_claim_returns_oldest_message(self, tmp_path):
        """Test messages are claimed in order and counted as attempts."""

        async def scenario(queue, clock):
            await queue.enqueue(APPLY_QUEUE, "job-1", _payload("job-1"))
            clock.advance(1)
            await queue.enqueue(APPLY_QUEUE, "job-2", _payload("job-2"))
            first = await queue.claim(APPLY_QUEUE)
            second = await queue.claim(APPLY_QUEUE)
            third = await queue.claim(APPLY_QUEUE)
            return first, second, third

        first, second, third = run_with_queue(tmp_path, scenario)

        assert first.job_key == "job-1"
        assert first.payload == _payload("job-1")
        assert first.attempts == 1
        assert second.job_key == "job-2"
        assert third is None

    def test_enqueue_reuses_pending_message(self, tmp_path):
        """Test queuing the same job twice yields one message."""

        async def scenario(queue, clock):
            first = await queue.enqueue(APPLY_QUEUE, "job-1", _payload("job-1"))
            second = await queue.enqueue(APPLY_QUEUE, "job-1", _payload("job-1"))
            other_queue = await queue.enqueue(ROLLBACK_QUEUE, "job-1", _payload("job-1"))
            return first, second, other_queue, await queue.count(APPLY_QUEUE)

        first, second, other_queue, waiting = run_with_queue(tmp_path, scenario)

        assert first == second
        assert other_queue != first
        assert waiting == 1

    def test_delayed_message_not_claimed_early(self, tmp_path):
        """Test a delayed message becomes available only after its delay."""

        async def scenario(queue, clock):
            await queue.enqueue(APPLY_QUEUE, "job-1", _payload("job-1"), delay=30)
            early = await queue.claim(APPLY_QUEUE)
            clock.advance(30)
            return early, await queue.claim(APPLY_QUEUE)

        early, later = run_with_queue(tmp_path, scenario)

        assert early is None
        assert later.job_key == "job-1"

    def test_complete_deletes_message(self, tmp_path):
        """Test completed messages are removed."""

        async def scenario(queue, clock):
            message_id = await queue.enqueue(APPLY_QUEUE, "job-1", _payload("job-1"))
            message = await queue.claim(APPLY_QUEUE)
            await queue.complete(message.id)
            return message_id, await queue.get_status(message_id)

        message_id, status = run_with_queue(tmp_path, scenario)
        assert status is None


class TestFailures:
    """Tests for retry, backoff and permanent failure."""

    def test_retry_backs_off_exponentially(self, tmp_path):
        """Test failed attempts wait backoff_delay * 2^(attempt-1) before retrying."""

        async def scenario(queue, clock):
            await queue.enqueue(APPLY_QUEUE, "job-1", _payload("job-1"))
            message = await queue.claim(APPLY_QUEUE)
            retried = await queue.fail(message.id, "HTTP 503")

            clock.advance(4)
            too_early = await queue.claim(APPLY_QUEUE)
            clock.advance(2)
            second = await queue.claim(APPLY_QUEUE)
            await queue.fail(second.id, "HTTP 503")

            clock.advance(9)
            still_early = await queue.claim(APPLY_QUEUE)
            clock.advance(2)
            third = await queue.claim(APPLY_QUEUE)
            final = await queue.fail(third.id, "HTTP 503")
            return retried, too_early, second, still_early, third, final, await queue.get_status(message.id)

        retried, too_early, second, still_early, third, final, status = run_with_queue(
            tmp_path, scenario, max_attempts=3, backoff_delay=5.0
        )

        assert retried is True
        assert too_early is None
        assert second.attempts == 2
        assert still_early is None
        assert third.attempts == 3
        assert final is False
        assert status == "failed"

    def test_non_retryable_failure_is_permanent(self, tmp_path):
        """Test non-retryable failures skip the remaining attempts."""

        async def scenario(queue, clock):
            await queue.enqueue(APPLY_QUEUE, "job-1", _payload("job-1"))
            message = await queue.claim(APPLY_QUEUE)
            retried = await queue.fail(message.id, "Job not found", retryable=False)
            return retried, await queue.get_status(message.id), await queue.count(APPLY_QUEUE, "failed")

        retried, status, failed = run_with_queue(tmp_path, scenario)

        assert retried is False
        assert status == "failed"
        assert failed == 1

    def test_failed_message_allows_requeue(self, tmp_path):
        """Test a permanently failed job can be queued again."""

        async def scenario(queue, clock):
            first = await queue.enqueue(APPLY_QUEUE, "job-1", _payload("job-1"))
            message = await queue.claim(APPLY_QUEUE)
            await queue.fail(message.id, "boom", retryable=False)
            second = await queue.enqueue(APPLY_QUEUE, "job-1", _payload("job-1"))
            latest = await queue.get_message(APPLY_QUEUE, "job-1")
            return first, second, latest

        first, second, latest = run_with_queue(tmp_path, scenario)

        assert second != first
        assert latest.id == second
        assert latest.attempts == 0


class TestRemovalAndRecovery:
    """Tests for removing and recovering messages."""

    def test_remove_only_waiting_messages(self, tmp_path):
        """Test removal drops waiting messages and leaves active ones to their worker."""

        async def scenario(queue, clock):
            await queue.enqueue(APPLY_QUEUE, "job-1", _payload("job-1"))
            await queue.enqueue(APPLY_QUEUE, "job-2", _payload("job-2"))
            active = await queue.claim(APPLY_QUEUE)
            removed_active = await queue.remove(APPLY_QUEUE, active.job_key)
            removed_waiting = await queue.remove(APPLY_QUEUE, "job-2")
            removed_missing = await queue.remove(APPLY_QUEUE, "job-3")
            return removed_active, removed_waiting, removed_missing, await queue.get_status(active.id)

        removed_active, removed_waiting, removed_missing, status = run_with_queue(tmp_path, scenario)

        assert removed_active is False
        assert removed_waiting is True
        assert removed_missing is False
        assert status == "active"

    def test_requeue_stale_messages(self, tmp_path):
        """Test active messages past the visibility timeout return to waiting."""

        async def scenario(queue, clock):
            await queue.enqueue(APPLY_QUEUE, "job-1", _payload("job-1"))
            message = await queue.claim(APPLY_QUEUE)
            clock.advance(60)
            fresh = await queue.requeue_stale(APPLY_QUEUE, visibility_timeout=120)
            clock.advance(61)
            stale = await queue.requeue_stale(APPLY_QUEUE, visibility_timeout=120)
            reclaimed = await queue.claim(APPLY_QUEUE)
            return message, fresh, stale, reclaimed

        message, fresh, stale, reclaimed = run_with_queue(tmp_path, scenario)

        assert fresh == 0
        assert stale == 1
        assert reclaimed.id == message.id
        assert reclaimed.attempts == 2

    def test_heartbeat_keeps_message_claimed(self, tmp_path):
        """Test a refreshed claim survives the visibility timeout."""

        async def scenario(queue, clock):
            await queue.enqueue(APPLY_QUEUE, "job-1", _payload("job-1"))
            message = await queue.claim(APPLY_QUEUE)
            clock.advance(100)
            refreshed = await queue.heartbeat(message.id)
            clock.advance(100)
            kept = await queue.requeue_stale(APPLY_QUEUE, visibility_timeout=120)
            clock.advance(30)
            stale = await queue.requeue_stale(APPLY_QUEUE, visibility_timeout=120)
            after_requeue = await queue.heartbeat(message.id)
            return refreshed, kept, stale, after_requeue

        refreshed, kept, stale, after_requeue = run_with_queue(tmp_path, scenario)

        assert refreshed is True
        assert kept == 0
        assert stale == 1
        assert after_requeue is False
