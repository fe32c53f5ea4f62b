"""Apply path: per-product watermarking driven by the job orchestrator."""

import asyncio
from dataclasses import dataclass, field
from typing import Callable, List, Optional, Tuple

import httpx

from ..core.compositor import LayerCompositor, render_svg
from ..core.config import WorkerConfig
from ..core.error_handling import BatchOperationContextManager
from ..core.exceptions import (
    ConfigurationError,
    CredentialError,
    InvalidJobStateError,
    JobNotFoundError,
    PlatformError,
    WatermarkPipelineError,
)
from ..core.fetch import ImageFetchPipeline
from ..core.models import (
    ItemStatus,
    JobItem,
    JobStatus,
    JobType,
    MediaNode,
    ProductSnapshot,
    WatermarkJob,
    WatermarkSettings,
    is_platform_reference,
)
from ..core.observability import (
    LogContext,
    MetricsCollector,
    StructuredLogger,
    log_metrics_summary,
    timed_stage,
)
from ..core.protocols import (
    ArchiveStoreProtocol,
    CatalogClientProtocol,
    CredentialStoreProtocol,
    JobStore,
    SettingsStoreProtocol,
)
from ..core.scope import ScopeResolver
from ..core.uploads import PendingUpload, StagedUploadPipeline, chunked

CatalogFactory = Callable[[str, str], CatalogClientProtocol]

SKIP_JOB_STATUSES = {JobStatus.COMPLETED, JobStatus.CANCELLED, JobStatus.ROLLED_BACK}
SETTLED_ITEM_STATUSES = {ItemStatus.COMPLETED, ItemStatus.ROLLED_BACK, ItemStatus.SKIPPED}


@dataclass
class ProductOutcome:
    product_id: str
    completed: int = 0
    failed: int = 0
    skipped: int = 0
    errors: List[str] = field(default_factory=list)

    @property
    def succeeded(self) -> bool:
        return self.failed == 0


@dataclass
class _PreparedImage:
    item: JobItem
    media: MediaNode
    position: int
    encoded: object


@dataclass
class _SwappedImage:
    item: JobItem
    media: MediaNode
    position: int
    new_media: MediaNode


class ProductProcessor:
    """
    Watermarks every image of one product for one job.

    Each image gets a JobItem row before anything on the product changes.
    The original is archived (or, when it is already a library file, kept by
    reference) before the replacement is created. The replacement's id is
    recorded on the item as soon as the platform creates it, the item is
    completed once the variants point at it, and only then is the original
    detached. A run interrupted anywhere in between is finished or undone
    by the next run from what the items say.
    """

    def __init__(
        self,
        job: WatermarkJob,
        catalog: CatalogClientProtocol,
        store: JobStore,
        fetcher: ImageFetchPipeline,
        uploader: StagedUploadPipeline,
        archive: ArchiveStoreProtocol,
        logger: StructuredLogger,
        context: LogContext,
        batch_size: int = 25,
        metrics_collector: Optional[MetricsCollector] = None,
    ):
        self._job = job
        self._catalog = catalog
        self._store = store
        self._fetcher = fetcher
        self._uploader = uploader
        self._archive = archive
        self._logger = logger
        self._context = context
        self._batch_size = batch_size
        self._metrics = metrics_collector

    async def process(self, product_id: str) -> ProductOutcome:
        outcome = ProductOutcome(product_id)
        product = await self._catalog.get_product(product_id)
        if product is None:
            raise PlatformError(f"Product {product_id} not found")

        work = await self._plan(product, outcome)
        context = self._context.with_metadata(product=product_id, images=len(work))
        self._logger.debug("Processing product", context)

        with BatchOperationContextManager(f"Watermark {product_id}") as batch:
            for chunk in chunked(work, self._batch_size):
                prepared = await self._prepare(product, chunk, outcome, batch)
                if prepared:
                    await self._replace(product, prepared, outcome, batch)
            outcome.errors = [e["error"] for e in batch.errors]

        return outcome

    async def _plan(
        self, product: ProductSnapshot, outcome: ProductOutcome
    ) -> List[Tuple[MediaNode, int, Optional[JobItem]]]:
        """Images still to do, in product order, with any earlier attempt's item."""
        existing = {
            item.original_media_id: item
            for item in await self._store.list_items(self._job.id, product_id=product.id)
        }
        own_outputs = {
            media_id
            for item in existing.values()
            for media_id in (item.new_media_id, item.staged_media_id)
            if media_id
        }

        work = []
        for position, media in enumerate(product.media):
            if not media.is_image or media.id in own_outputs:
                continue
            prior = existing.get(media.id)
            if prior is not None and prior.status in SETTLED_ITEM_STATUSES:
                if prior.status is ItemStatus.COMPLETED:
                    # Swapped, but the original is still on the product
                    await self._detach_original(product.id, prior)
                outcome.skipped += 1
                continue
            earlier = await self._store.find_item_by_new_media(self._job.shop, media.id)
            if earlier is not None:
                await self._store.create_item(
                    **self._item_fields(product, media, position),
                    status=ItemStatus.SKIPPED,
                    error_message=f"Already watermarked by job {earlier.job_id}",
                )
                outcome.skipped += 1
                continue
            work.append((media, position, prior))
        return work

    def _item_fields(self, product: ProductSnapshot, media: MediaNode, position: int) -> dict:
        return {
            "job_id": self._job.id,
            "shop": self._job.shop,
            "product_id": product.id,
            "product_title": product.title,
            "original_media_id": media.id,
            "original_position": position,
            "original_is_featured": product.featured_media_id == media.id,
            "variant_ids": product.variants_for(media.id),
        }

    async def _record_intent(
        self, product: ProductSnapshot, media: MediaNode, position: int, prior: Optional[JobItem]
    ) -> JobItem:
        fields = self._item_fields(product, media, position)
        if prior is None:
            return await self._store.create_item(**fields)

        if prior.staged_media_id:
            # Replacement from an interrupted run; its variants may already point at it
            if product.has_media(prior.staged_media_id):
                await self._uploader.discard(product.id, [prior.staged_media_id])
            fields["variant_ids"] = fields["variant_ids"] or prior.variant_ids
        fields.pop("job_id")
        fields.pop("shop")
        return await self._store.update_item(
            prior.id, status=ItemStatus.PENDING, error_message=None, staged_media_id=None, **fields
        )

    async def _prepare(self, product, chunk, outcome, batch) -> List[_PreparedImage]:
        prepared: List[_PreparedImage] = []
        for media, position, prior in chunk:
            item = await self._record_intent(product, media, position, prior)
            encoded = None
            try:
                if not media.url:
                    raise WatermarkPipelineError(f"Media {media.id} has no image URL")
                encoded = await self._fetcher.process(
                    media.url, filename=f"watermarked-{media.id.rsplit('/', 1)[-1]}"
                )
                reference = await self._archive_original(product, media, encoded.source_hash)
                item = await self._store.update_item(
                    item.id,
                    image_hash=encoded.source_hash,
                    original_media_url=reference,
                    status=ItemStatus.PROCESSING,
                )
            except WatermarkPipelineError as exc:
                if encoded is not None:
                    encoded.close()
                await self._fail_item(item, str(exc), outcome, batch)
                continue
            prepared.append(_PreparedImage(item, media, position, encoded))
        return prepared

    async def _archive_original(
        self, product: ProductSnapshot, media: MediaNode, source_hash: str
    ) -> str:
        """
        Returns the archived reference of the original.

        A library file is its own archive and is later detached, not
        deleted. Anything else is copied to the archive store first.
        """
        previous = await self._store.find_archived_original(self._job.shop, media.id)
        if previous is not None:
            return previous.original_media_url

        file_id = await self._catalog.resolve_file_reference(media.id)
        if file_id is not None:
            return file_id

        duplicate = await self._store.find_item_by_hash(self._job.id, source_hash)
        if duplicate is not None and self._can_share_archive(duplicate, product.id):
            self._logger.debug(
                "Reusing archive of identical image",
                self._context,
                media=media.id,
                duplicate_of=duplicate.original_media_id,
            )
            return duplicate.original_media_url

        return await self._archive.archive(self._catalog, self._job.shop, media)

    @classmethod
    def _can_share_archive(cls, duplicate: JobItem, product_id: str) -> bool:
        if not cls._is_archive_copy(duplicate):
            return False
        # A library file restores as one media per product
        return not (
            is_platform_reference(duplicate.original_media_url)
            and duplicate.product_id == product_id
        )

    @staticmethod
    def _is_archive_copy(item: JobItem) -> bool:
        reference = item.original_media_url
        if not is_platform_reference(reference):
            return True
        return reference != item.original_media_id

    async def _record_staged(self, item_id: int, media: MediaNode) -> None:
        await self._store.update_item(item_id, staged_media_id=media.id)

    async def _replace(self, product, prepared: List[_PreparedImage], outcome, batch) -> None:
        try:
            async with timed_stage("upload", self._metrics, product=product.id):
                results = await self._uploader.upload_and_attach(
                    product.id,
                    [PendingUpload(p.item.id, p.encoded, alt=p.media.alt) for p in prepared],
                    on_created=self._record_staged,
                )
        finally:
            for p in prepared:
                p.encoded.close()

        swapped: List[_SwappedImage] = []
        for p, result in zip(prepared, results):
            if result.ok:
                swapped.append(_SwappedImage(p.item, p.media, p.position, result.media))
            else:
                await self._fail_item(p.item, result.error or "Upload failed", outcome, batch)

        swapped = await self._reassign_variants(product, swapped, outcome, batch)
        if not swapped:
            return

        for s in swapped:
            s.item = await self._store.mark_item_completed(s.item.id, s.new_media.id, s.new_media.url)
            outcome.completed += 1

        for s in swapped:
            await self._detach_original(product.id, s.item)

        try:
            await self._uploader.reorder(
                product.id, [(s.new_media.id, s.position) for s in swapped]
            )
        except WatermarkPipelineError as exc:
            self._logger.warning(
                "Media reorder failed; images kept their upload order",
                self._context,
                product=product.id,
                error=str(exc),
            )

    async def _detach_original(self, product_id: str, item: JobItem) -> None:
        """Remove a completed item's original from the product; failures stay on the item."""
        try:
            if self._is_archive_copy(item):
                await self._catalog.delete_product_media(product_id, [item.original_media_id])
            else:
                await self._catalog.detach_file(item.original_media_url, product_id)
        except WatermarkPipelineError as exc:
            self._logger.warning(
                "Could not detach original",
                self._context,
                media=item.original_media_id,
                error=str(exc),
            )
            await self._store.update_item(item.id, error_message=f"Original still attached: {exc}")
            return
        if item.error_message:
            await self._store.update_item(item.id, error_message=None)

    async def _reassign_variants(self, product, swapped, outcome, batch) -> List[_SwappedImage]:
        assignments = [
            (variant_id, s.new_media.id) for s in swapped for variant_id in s.item.variant_ids
        ]
        if not assignments:
            return swapped
        try:
            await self._uploader.assign_variants(product.id, assignments)
            return swapped
        except WatermarkPipelineError as exc:
            affected = [s for s in swapped if s.item.variant_ids]
            await self._uploader.discard(product.id, [s.new_media.id for s in affected])
            for s in affected:
                await self._fail_item(s.item, f"Variant reassignment failed: {exc}", outcome, batch)
            return [s for s in swapped if not s.item.variant_ids]

    async def _fail_item(self, item: JobItem, message: str, outcome, batch) -> None:
        await self._store.mark_item_failed(item.id, message)
        outcome.failed += 1
        batch.add_error(message, item.original_media_id)


class JobOrchestrator:
    """
    Runs one apply job end to end.

    Progress lives only in the store: counters are incremented per product
    and items record every image, so a job restarted after a crash resumes
    from what the store says rather than from memory.
    """

    def __init__(
        self,
        store: JobStore,
        credentials: CredentialStoreProtocol,
        settings_store: SettingsStoreProtocol,
        catalog_factory: CatalogFactory,
        archive: ArchiveStoreProtocol,
        http_client: httpx.AsyncClient,
        config: WorkerConfig,
        logger: Optional[StructuredLogger] = None,
        svg_renderer=render_svg,
    ):
        self._store = store
        self._credentials = credentials
        self._settings_store = settings_store
        self._catalog_factory = catalog_factory
        self._archive = archive
        self._http = http_client
        self._config = config
        self._logger = logger or StructuredLogger("apply")
        self._svg_renderer = svg_renderer

    async def run_apply_job(self, job_id: str) -> WatermarkJob:
        job = await self._store.get_job(job_id)
        if job is None:
            raise JobNotFoundError(f"Job {job_id} not found")
        if job.job_type is not JobType.APPLY:
            raise InvalidJobStateError(f"Job {job_id} is not an apply job")

        context = LogContext(correlation_id=job.id, component="apply", shop=job.shop).with_operation(
            "apply_job"
        )
        if job.status in SKIP_JOB_STATUSES:
            self._logger.info(f"Skipping job in status {job.status.value}", context)
            return job

        metrics = MetricsCollector()
        try:
            token = await self._credentials.get_access_token(job.shop)
            if not token:
                raise CredentialError(f"No access token stored for {job.shop}")
            settings = await self._effective_settings(job)

            await self._store.start_job(job.id)
            self._logger.info("Starting job", context, scope=job.scope_type.value)

            catalog = self._catalog_factory(job.shop, token)
            fetcher = ImageFetchPipeline(self._http, self._config, metrics_collector=metrics)
            fetcher.compositor = await self._build_compositor(settings, fetcher)

            resolver = ScopeResolver(catalog, self._config.max_products_per_job)
            resolved = await resolver.resolve(job.scope_type, job.scope_value)
            await self._store.set_total_products(job.id, len(resolved))
            if resolved.truncated:
                note = f"Scope truncated to the first {len(resolved)} products"
                await self._store.append_job_log(job.id, note)
                self._logger.warning(note, context)

            processor = ProductProcessor(
                job,
                catalog,
                self._store,
                fetcher,
                StagedUploadPipeline(
                    catalog,
                    self._config.staged_upload_batch_size,
                    self._config.media_create_batch_size,
                    self._config.verify_attempts,
                    self._config.verify_delay,
                ),
                self._archive,
                self._logger,
                context,
                batch_size=self._config.staged_upload_batch_size,
                metrics_collector=metrics,
            )
            cancelled = await self._run_products(job, resolved.product_ids, processor, context)
            cancelled = cancelled or await self._is_cancelled(job.id)
        except Exception as exc:
            self._logger.error(f"Job failed: {exc}", context)
            current = await self._store.get_job(job.id)
            if current is not None and current.status is not JobStatus.CANCELLED:
                await self._store.complete_job(job.id, JobStatus.FAILED, error_log=str(exc))
            raise

        final_status = JobStatus.CANCELLED if cancelled else JobStatus.COMPLETED
        await self._store.complete_job(job.id, final_status)
        log_metrics_summary(self._logger, context, metrics)
        finished = await self._store.get_job(job.id)
        self._logger.info(
            f"Job {final_status.value}",
            context,
            processed=finished.processed_products,
            failed=finished.failed_products,
            total=finished.total_products,
        )
        return finished

    async def _effective_settings(self, job: WatermarkJob) -> WatermarkSettings:
        if job.settings_snapshot:
            settings = WatermarkSettings.model_validate(job.settings_snapshot)
        else:
            settings = await self._settings_store.get_settings(job.shop)
        if not settings.has_layers:
            raise ConfigurationError("Watermark settings have neither a logo nor a text layer enabled")
        return settings

    async def _build_compositor(
        self, settings: WatermarkSettings, fetcher: ImageFetchPipeline
    ) -> LayerCompositor:
        logo_bytes = None
        if settings.logo_enabled:
            logo_bytes = await fetcher.fetch_bytes(settings.logo_url)
        return LayerCompositor.from_logo_bytes(
            settings, logo_bytes, svg_renderer=self._svg_renderer
        )

    async def _run_products(
        self,
        job: WatermarkJob,
        product_ids: List[str],
        processor: ProductProcessor,
        context: LogContext,
    ) -> bool:
        """Returns True when the job was cancelled before every product ran."""
        pending = iter(product_ids)
        cancelled = False

        async def worker() -> None:
            nonlocal cancelled
            for product_id in pending:
                if cancelled or await self._is_cancelled(job.id):
                    cancelled = True
                    return
                await self._run_product(job, product_id, processor, context)

        workers = min(self._config.product_concurrency, max(len(product_ids), 1))
        await asyncio.gather(*(worker() for _ in range(workers)))
        return cancelled

    async def _run_product(self, job, product_id, processor, context) -> None:
        product_context = context.with_metadata(product=product_id)
        try:
            outcome = await processor.process(product_id)
        except Exception as exc:  # noqa: BLE001
            self._logger.error(f"Product failed: {exc}", product_context)
            await self._store.increment_failed(job.id)
            return

        if outcome.succeeded:
            await self._store.increment_processed(job.id)
        else:
            self._logger.warning(
                "Product finished with failed images",
                product_context,
                completed=outcome.completed,
                failed=outcome.failed,
            )
            await self._store.increment_failed(job.id)

    async def _is_cancelled(self, job_id: str) -> bool:
        job = await self._store.get_job(job_id)
        return job is not None and job.status is JobStatus.CANCELLED
