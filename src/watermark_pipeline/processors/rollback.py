"""Rollback path: restore archived originals, then remove watermarked media."""

from typing import Callable, Optional

from ..core.config import WorkerConfig
from ..core.error_handling import poll_until
from ..core.exceptions import (
    CredentialError,
    InvalidJobStateError,
    JobNotFoundError,
    PlatformError,
    RestoreVerificationError,
    WatermarkPipelineError,
)
from ..core.models import (
    ItemStatus,
    JobItem,
    JobStatus,
    ProductSnapshot,
    RollbackRun,
    RollbackStatus,
    is_platform_reference,
)
from ..core.observability import LogContext, StructuredLogger
from ..core.protocols import CatalogClientProtocol, CredentialStoreProtocol, JobStore

MEDIA_READY = "READY"
MEDIA_FAILED = "FAILED"

ROLLBACK_ALLOWED_STATUSES = {JobStatus.COMPLETED, JobStatus.PROCESSING}

CatalogFactory = Callable[[str, str], CatalogClientProtocol]


class RollbackReconciler:
    """
    Reverses a completed apply job item by item.

    For every item the archived original is made live again and polled
    until the platform reports it ready. Only then is it moved back into
    place, the variants pointed back at it and the watermarked replacement
    deleted. An item whose restore is not verified keeps its watermarked
    image and stays ``completed``.
    """

    def __init__(
        self,
        store: JobStore,
        credentials: CredentialStoreProtocol,
        catalog_factory: CatalogFactory,
        config: WorkerConfig,
        logger: Optional[StructuredLogger] = None,
    ):
        self._store = store
        self._credentials = credentials
        self._catalog_factory = catalog_factory
        self._config = config
        self._logger = logger or StructuredLogger("rollback")

    async def run_rollback(self, job_id: str) -> Optional[RollbackRun]:
        job = await self._store.get_job(job_id)
        if job is None:
            raise JobNotFoundError(f"Job {job_id} not found")

        context = LogContext(
            correlation_id=job.id, component="rollback", shop=job.shop
        ).with_operation("rollback_job")

        if job.status is JobStatus.ROLLED_BACK:
            self._logger.info("Job already rolled back", context)
            return await self._store.get_latest_rollback_run(job.id)
        if job.status not in ROLLBACK_ALLOWED_STATUSES:
            raise InvalidJobStateError(
                f"Job {job_id} is {job.status.value}; only completed jobs can be rolled back"
            )

        token = await self._credentials.get_access_token(job.shop)
        if not token:
            raise CredentialError(f"No access token stored for {job.shop}")
        catalog = self._catalog_factory(job.shop, token)

        items = await self._store.list_items(job.id, status=ItemStatus.COMPLETED)
        run = await self._store.get_open_rollback_run(job.id)
        if run is None:
            run = await self._store.create_rollback_run(job.id, job.shop, len(items))
        await self._store.start_rollback_run(run.id, run.items_rolled_back + len(items))
        await self._store.update_job_status(job.id, JobStatus.PROCESSING)
        self._logger.info("Starting rollback", context, run=run.id, items=len(items))

        try:
            for item in items:
                item_context = context.with_metadata(item=item.id, product=item.product_id)
                try:
                    if await self.rollback_item(catalog, item, run.id):
                        self._logger.debug("Item restored", item_context)
                except WatermarkPipelineError as exc:
                    self._logger.warning(f"Item not rolled back: {exc}", item_context)
                    await self._store.update_item(item.id, error_message=f"Rollback failed: {exc}")

            remaining = await self._store.list_items(job.id, status=ItemStatus.COMPLETED)
            if remaining:
                await self._store.update_job_status(
                    job.id,
                    JobStatus.COMPLETED,
                    error_log=f"Rollback left {len(remaining)} item(s) unrestored",
                )
            else:
                await self._store.complete_job(job.id, JobStatus.ROLLED_BACK)
            run = await self._store.complete_rollback_run(run.id, RollbackStatus.COMPLETED)
        except Exception as exc:
            self._logger.error(f"Rollback failed: {exc}", context)
            await self._store.complete_rollback_run(run.id, RollbackStatus.FAILED)
            await self._store.update_job_status(job.id, JobStatus.COMPLETED, error_log=str(exc))
            raise

        self._logger.info(
            "Rollback finished",
            context,
            restored=run.items_rolled_back,
            requested=run.items_to_rollback,
        )
        return run

    async def rollback_item(
        self, catalog: CatalogClientProtocol, item: JobItem, run_id: Optional[int] = None
    ) -> bool:
        """
        Restore one item. Returns False when there was nothing to do.

        Raises when the original cannot be restored and verified; in that
        case nothing has been removed from the product.
        """
        current = await self._store.get_item(item.id)
        if current is None or current.status is not ItemStatus.COMPLETED:
            return False
        item = current

        product = await catalog.get_product(item.product_id)
        if product is None:
            raise PlatformError(f"Product {item.product_id} no longer exists")

        reference = item.original_media_url
        if not reference:
            raise RestoreVerificationError(f"Item {item.id} has no archived original")

        restored_id, owned = await self._restore(catalog, item, reference, product)
        try:
            await poll_until(
                lambda: catalog.get_media_status(restored_id),
                lambda status: status == MEDIA_READY,
                attempts=self._config.verify_attempts,
                delay=self._config.verify_delay,
                is_failed=lambda status: status == MEDIA_FAILED,
                description=f"restored media {restored_id}",
            )
        except RestoreVerificationError:
            if owned and await self._discard_restore(catalog, item.product_id, restored_id):
                await self._store.update_item(item.id, restored_media_id=None)
            raise

        try:
            await catalog.reorder_product_media(item.product_id, [(restored_id, item.original_position)])
        except WatermarkPipelineError as exc:
            self._logger.warning(f"Restored media {restored_id} left out of position: {exc}")

        if item.variant_ids:
            await catalog.update_variant_media(
                item.product_id, [(variant_id, restored_id) for variant_id in item.variant_ids]
            )

        if product.has_media(item.new_media_id):
            await catalog.delete_product_media(item.product_id, [item.new_media_id])

        await self._store.mark_item_rolled_back(item.id)
        if run_id is not None:
            await self._store.increment_rolled_back(run_id)
        return True

    async def _restore(self, catalog, item: JobItem, reference: str, product: ProductSnapshot):
        """
        Returns (live media id, whether the media belongs to this rollback).

        Media created from an archived copy is recorded on the item before
        anything else happens, so a retried rollback reuses it instead of
        creating a second copy.
        """
        if is_platform_reference(reference):
            if not product.has_media(reference):
                await catalog.attach_file(reference, item.product_id)
            return reference, False

        if product.has_media(item.restored_media_id):
            return item.restored_media_id, True

        created = await catalog.create_product_media(
            item.product_id, [{"original_source": reference, "alt": ""}]
        )
        if not created:
            raise RestoreVerificationError(f"Platform did not create media from {reference}")
        await self._store.update_item(item.id, restored_media_id=created[0].id)
        return created[0].id, True

    async def _discard_restore(self, catalog, product_id: str, media_id: str) -> bool:
        try:
            await catalog.delete_product_media(product_id, [media_id])
        except WatermarkPipelineError as exc:
            self._logger.error(f"Could not remove unverified restore {media_id}: {exc}")
            return False
        return True
