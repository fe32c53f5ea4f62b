"""Job lifecycle commands issued from outside the workers."""

from typing import Any, Optional

from ..core.exceptions import ConfigurationError, InvalidJobStateError, JobNotFoundError
from ..core.logging_config import get_logger
from ..core.models import (
    JobMessage,
    JobStatus,
    JobType,
    ScopeType,
    WatermarkJob,
    WatermarkSettings,
)
from ..core.protocols import JobStore
from ..core.scope import manual_product_ids
from ..storage.queue import APPLY_QUEUE, ROLLBACK_QUEUE, JobQueue

CANCELLABLE_STATUSES = {JobStatus.PENDING, JobStatus.PROCESSING}

logger = get_logger("control")


async def _require_job(store: JobStore, job_id: str) -> WatermarkJob:
    job = await store.get_job(job_id)
    if job is None:
        raise JobNotFoundError(f"Job {job_id} not found")
    return job


async def submit_apply_job(
    store: JobStore,
    queue: JobQueue,
    shop: str,
    scope_type: ScopeType,
    scope_value: Optional[Any] = None,
    settings: Optional[WatermarkSettings] = None,
) -> WatermarkJob:
    """
    Create a PENDING apply job and queue it.

    The settings are frozen into the job so later edits to the shop's design
    do not leak into a running or resumed job. Without explicit settings the
    worker falls back to the shop's saved design.
    """
    scope_type = ScopeType(scope_type)
    if scope_type is ScopeType.COLLECTION and not scope_value:
        raise ConfigurationError("A collection scope needs a collection id")
    if scope_type is ScopeType.MANUAL:
        scope_value = manual_product_ids(scope_value)
        if not scope_value:
            raise ConfigurationError("A manual scope needs at least one product id")
    if settings is not None and not settings.has_layers:
        raise ConfigurationError("Watermark settings have neither a logo nor a text layer enabled")

    job = await store.create_job(
        shop,
        scope_type,
        scope_value,
        settings_snapshot=settings.model_dump(mode="json") if settings is not None else None,
    )
    message = JobMessage(job_id=job.id, shop=job.shop)
    await queue.enqueue(APPLY_QUEUE, job.id, message.to_payload())
    logger.info(f"Queued apply job {job.id} for {job.shop} ({scope_type.value})")
    return job


async def cancel_job(store: JobStore, queue: JobQueue, job_id: str) -> WatermarkJob:
    """
    Cancel a pending or running job.

    A waiting queue message is dropped; a job already running stops before
    its next product. Work already done stays in place.
    """
    job = await _require_job(store, job_id)
    if job.status not in CANCELLABLE_STATUSES:
        raise InvalidJobStateError(f"Job {job_id} is {job.status.value} and cannot be cancelled")
    await store.complete_job(job.id, JobStatus.CANCELLED)
    removed = await queue.remove(APPLY_QUEUE, job.id)
    logger.info(f"Cancelled job {job.id}" + (" and removed its queue message" if removed else ""))
    return await _require_job(store, job_id)


async def request_rollback(store: JobStore, queue: JobQueue, job_id: str) -> int:
    """Queue a rollback of a completed apply job. Returns the queue message id."""
    job = await _require_job(store, job_id)
    if job.job_type is not JobType.APPLY:
        raise InvalidJobStateError(f"Job {job_id} is not an apply job")
    if job.status is not JobStatus.COMPLETED:
        raise InvalidJobStateError(
            f"Job {job_id} is {job.status.value}; only completed jobs can be rolled back"
        )
    message = JobMessage(job_id=job.id, shop=job.shop)
    message_id = await queue.enqueue(ROLLBACK_QUEUE, job.id, message.to_payload())
    logger.info(f"Queued rollback of job {job.id}")
    return message_id
