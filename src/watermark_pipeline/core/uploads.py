"""Two-phase staged upload and batched media registration."""

from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Iterator, List, Optional, Sequence, Tuple, TypeVar

import httpx

from .config import MAX_MEDIA_CREATE_BATCH, MAX_STAGED_UPLOAD_BATCH
from .error_handling import BatchOperationContextManager, poll_until
from .exceptions import UploadError, WatermarkPipelineError
from .logging_config import get_logger
from .models import MediaNode
from .protocols import CatalogClientProtocol

T = TypeVar("T")

CreatedCallback = Callable[[Any, MediaNode], Awaitable[None]]

MEDIA_READY = "READY"
MEDIA_FAILED = "FAILED"

logger = get_logger("uploads")


def chunked(items: Sequence[T], size: int) -> Iterator[List[T]]:
    for start in range(0, len(items), size):
        yield list(items[start : start + size])


@dataclass
class PendingUpload:
    """One encoded image waiting to become product media. ``key`` is the caller's handle."""

    key: Any
    encoded: Any
    alt: str = ""


@dataclass
class UploadOutcome:
    key: Any
    media: Optional[MediaNode] = None
    error: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.media is not None and self.error is None


class StagedUploadPipeline:
    """
    Upload encoded images and register them as product media.

    Targets are requested at most ``staged_batch_size`` at a time and media
    created at most ``media_batch_size`` at a time. A failure marks only the
    images it touched; siblings carry on. Created media is polled until the
    platform has processed it, and media that never gets ready is removed
    again so the product is left as it was.
    """

    def __init__(
        self,
        catalog: CatalogClientProtocol,
        staged_batch_size: int = MAX_STAGED_UPLOAD_BATCH,
        media_batch_size: int = MAX_MEDIA_CREATE_BATCH,
        ready_attempts: int = 10,
        ready_delay: float = 2.0,
    ):
        self._catalog = catalog
        self._staged_batch_size = min(staged_batch_size, MAX_STAGED_UPLOAD_BATCH)
        self._media_batch_size = min(media_batch_size, MAX_MEDIA_CREATE_BATCH)
        self._ready_attempts = ready_attempts
        self._ready_delay = ready_delay

    async def upload_and_attach(
        self,
        product_id: str,
        uploads: Sequence[PendingUpload],
        on_created: Optional[CreatedCallback] = None,
    ) -> List[UploadOutcome]:
        """
        Returns one outcome per upload, in input order.

        ``on_created(key, media)`` runs as soon as the platform has created
        the media, before it is polled for readiness.
        """
        outcomes = {id(u): UploadOutcome(u.key) for u in uploads}

        with BatchOperationContextManager(f"Upload media for {product_id}") as batch:
            staged = await self._stage(uploads, outcomes, batch)
            await self._create_media(product_id, staged, outcomes, batch, on_created)
            await self._await_ready(product_id, uploads, outcomes, batch)

        return [outcomes[id(u)] for u in uploads]

    async def _stage(self, uploads, outcomes, batch) -> List[Tuple[PendingUpload, str]]:
        staged: List[Tuple[PendingUpload, str]] = []
        for chunk in chunked(uploads, self._staged_batch_size):
            try:
                targets = await self._catalog.create_staged_uploads(
                    [
                        {
                            "filename": u.encoded.filename,
                            "mime_type": u.encoded.mime_type,
                            "file_size": u.encoded.size,
                        }
                        for u in chunk
                    ]
                )
                if len(targets) != len(chunk):
                    raise UploadError(
                        f"Requested {len(chunk)} upload targets, received {len(targets)}"
                    )
            except WatermarkPipelineError as exc:
                self._fail(chunk, outcomes, batch, f"Staged upload request failed: {exc}")
                continue

            for upload, target in zip(chunk, targets):
                try:
                    await self._catalog.upload_to_target(target, upload.encoded)
                except (WatermarkPipelineError, httpx.HTTPError) as exc:
                    self._fail([upload], outcomes, batch, f"Upload to staged target failed: {exc}")
                    continue
                staged.append((upload, target.resource_url))
        return staged

    async def _create_media(self, product_id, staged, outcomes, batch, on_created=None) -> None:
        for chunk in chunked(staged, self._media_batch_size):
            uploads = [u for u, _ in chunk]
            try:
                created = await self._catalog.create_product_media(
                    product_id,
                    [{"original_source": url, "alt": u.alt} for u, url in chunk],
                )
            except WatermarkPipelineError as exc:
                self._fail(uploads, outcomes, batch, f"Media creation failed: {exc}")
                continue

            for index, upload in enumerate(uploads):
                if index < len(created):
                    outcomes[id(upload)].media = created[index]
                    if on_created is not None:
                        await on_created(upload.key, created[index])
                else:
                    self._fail([upload], outcomes, batch, "Platform accepted fewer media than submitted")

    async def _await_ready(self, product_id, uploads, outcomes, batch) -> None:
        abandoned: List[str] = []
        for upload in uploads:
            outcome = outcomes[id(upload)]
            if outcome.media is None:
                continue
            media_id = outcome.media.id
            try:
                await poll_until(
                    lambda: self._catalog.get_media_status(media_id),
                    lambda status: status == MEDIA_READY,
                    attempts=self._ready_attempts,
                    delay=self._ready_delay,
                    is_failed=lambda status: status in (MEDIA_FAILED, None),
                    description=f"media {media_id}",
                )
            except WatermarkPipelineError as exc:
                self._fail([upload], outcomes, batch, f"New media never became ready: {exc}")
                abandoned.append(media_id)

        if abandoned:
            await self.discard(product_id, abandoned)

    async def discard(self, product_id: str, media_ids: Sequence[str]) -> None:
        """Remove media this pipeline created but that will not be used."""
        if not media_ids:
            return
        try:
            await self._catalog.delete_product_media(product_id, list(media_ids))
        except WatermarkPipelineError as exc:
            logger.error(f"Could not remove unused media {list(media_ids)} from {product_id}: {exc}")

    async def assign_variants(
        self, product_id: str, assignments: Sequence[Tuple[str, str]]
    ) -> None:
        if assignments:
            await self._catalog.update_variant_media(product_id, list(assignments))

    async def reorder(self, product_id: str, moves: Sequence[Tuple[str, int]]) -> None:
        """Apply moves in ascending target position so earlier slots settle first."""
        if moves:
            ordered = sorted(moves, key=lambda move: move[1])
            await self._catalog.reorder_product_media(product_id, ordered)

    @staticmethod
    def _fail(uploads, outcomes, batch, message: str) -> None:
        for upload in uploads:
            outcome = outcomes[id(upload)]
            outcome.error = message
            batch.add_error(message, str(upload.key))
