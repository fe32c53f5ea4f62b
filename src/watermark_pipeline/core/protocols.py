"""Protocol definitions for dependency injection and testability."""

from abc import ABC, abstractmethod
from typing import Any, Dict, List, Optional, Protocol, Sequence, Tuple

from .models import (
    ItemStatus,
    JobItem,
    JobStatus,
    MediaNode,
    ProductPage,
    ProductSnapshot,
    RollbackRun,
    StagedTarget,
    WatermarkJob,
    WatermarkSettings,
)


class CatalogClientProtocol(Protocol):
    """Operations consumed from the commerce platform's admin API."""

    async def list_products(self, cursor: Optional[str] = None) -> ProductPage:
        """List one page of active product ids."""
        ...

    async def list_collection_products(
        self, collection_id: str, cursor: Optional[str] = None
    ) -> ProductPage:
        """List one page of product ids in a collection."""
        ...

    async def get_product(self, product_id: str) -> Optional[ProductSnapshot]:
        """Fetch a product with its ordered media and variants."""
        ...

    async def create_staged_uploads(
        self, uploads: Sequence[Dict[str, Any]]
    ) -> List[StagedTarget]:
        """Request one upload target per entry (filename, mime_type, file_size)."""
        ...

    async def upload_to_target(self, target: StagedTarget, encoded: Any) -> None:
        """Stream encoded bytes to a staged target."""
        ...

    async def create_product_media(
        self, product_id: str, media: Sequence[Dict[str, Any]]
    ) -> List[MediaNode]:
        """Register resources as product media, in input order."""
        ...

    async def delete_product_media(
        self, product_id: str, media_ids: Sequence[str]
    ) -> List[str]:
        """Delete media from a product."""
        ...

    async def reorder_product_media(
        self, product_id: str, moves: Sequence[Tuple[str, int]]
    ) -> None:
        """Move media to zero-based positions."""
        ...

    async def update_variant_media(
        self, product_id: str, assignments: Sequence[Tuple[str, str]]
    ) -> None:
        """Point each (variant_id, media_id) variant at a media item."""
        ...

    async def create_file(self, original_source: str, alt: str = "") -> str:
        """Copy a source URL into the files library; returns the file id."""
        ...

    async def resolve_file_reference(self, media_id: str) -> Optional[str]:
        """File id backing a media item, or None when it is not file backed."""
        ...

    async def attach_file(self, file_id: str, product_id: str) -> None:
        """Add a product reference to a library file."""
        ...

    async def detach_file(self, file_id: str, product_id: str) -> None:
        """Remove a product reference from a library file."""
        ...

    async def get_media_status(self, media_id: str) -> Optional[str]:
        """Processing status of a media item, or None when it does not exist."""
        ...

    async def get_file_status(self, file_id: str) -> Optional[str]:
        """Processing status of a library file, or None when it does not exist."""
        ...


class CredentialStoreProtocol(Protocol):
    async def get_access_token(self, shop: str) -> Optional[str]:
        ...


class SettingsStoreProtocol(Protocol):
    async def get_settings(self, shop: str) -> WatermarkSettings:
        ...


class ArchiveStoreProtocol(Protocol):
    """Permanent copy of an original image that is not file backed."""

    async def archive(
        self, catalog: CatalogClientProtocol, shop: str, media: MediaNode
    ) -> str:
        """Archive ``media`` and return the archived reference."""
        ...


class JobStore(ABC):
    """Durable job, item and rollback-run state."""

    # Jobs

    @abstractmethod
    async def create_job(
        self,
        shop: str,
        scope_type: Any,
        scope_value: Any = None,
        settings_snapshot: Optional[Dict[str, Any]] = None,
        job_id: Optional[str] = None,
    ) -> WatermarkJob:
        ...

    @abstractmethod
    async def get_job(self, job_id: str) -> Optional[WatermarkJob]:
        ...

    @abstractmethod
    async def update_job_status(
        self, job_id: str, status: JobStatus, error_log: Optional[str] = None
    ) -> None:
        ...

    @abstractmethod
    async def start_job(self, job_id: str) -> None:
        """Mark PROCESSING, stamp started_at and zero the progress counters."""
        ...

    @abstractmethod
    async def complete_job(
        self, job_id: str, status: JobStatus, error_log: Optional[str] = None
    ) -> None:
        ...

    @abstractmethod
    async def set_total_products(self, job_id: str, total: int) -> None:
        ...

    @abstractmethod
    async def increment_processed(self, job_id: str) -> None:
        ...

    @abstractmethod
    async def increment_failed(self, job_id: str) -> None:
        ...

    @abstractmethod
    async def append_job_log(self, job_id: str, message: str) -> None:
        ...

    # Items

    @abstractmethod
    async def create_item(self, **fields: Any) -> JobItem:
        ...

    @abstractmethod
    async def update_item(self, item_id: int, **fields: Any) -> JobItem:
        ...

    @abstractmethod
    async def mark_item_completed(
        self,
        item_id: int,
        new_media_id: str,
        new_media_url: Optional[str] = None,
        error_message: Optional[str] = None,
    ) -> JobItem:
        ...

    @abstractmethod
    async def mark_item_failed(self, item_id: int, error_message: str) -> JobItem:
        ...

    @abstractmethod
    async def mark_item_rolled_back(self, item_id: int) -> JobItem:
        ...

    @abstractmethod
    async def get_item(self, item_id: int) -> Optional[JobItem]:
        ...

    @abstractmethod
    async def list_items(
        self,
        job_id: str,
        status: Optional[ItemStatus] = None,
        product_id: Optional[str] = None,
    ) -> List[JobItem]:
        """Items ordered by creation."""
        ...

    @abstractmethod
    async def find_item_by_hash(self, job_id: str, image_hash: str) -> Optional[JobItem]:
        """Another item of the same job whose source had this content hash."""
        ...

    @abstractmethod
    async def find_archived_original(
        self, shop: str, original_media_id: str
    ) -> Optional[JobItem]:
        """Latest completed, file-backed item archiving this media for the shop."""
        ...

    @abstractmethod
    async def find_item_by_new_media(self, shop: str, media_id: str) -> Optional[JobItem]:
        """Completed item that produced ``media_id`` as its watermarked output."""
        ...

    # Rollback runs

    @abstractmethod
    async def create_rollback_run(
        self, job_id: str, shop: str, items_to_rollback: int
    ) -> RollbackRun:
        ...

    @abstractmethod
    async def get_open_rollback_run(self, job_id: str) -> Optional[RollbackRun]:
        ...

    @abstractmethod
    async def get_latest_rollback_run(self, job_id: str) -> Optional[RollbackRun]:
        ...

    @abstractmethod
    async def start_rollback_run(self, run_id: int, items_to_rollback: int) -> None:
        ...

    @abstractmethod
    async def increment_rolled_back(self, run_id: int) -> None:
        ...

    @abstractmethod
    async def complete_rollback_run(self, run_id: int, status: Any) -> RollbackRun:
        ...
