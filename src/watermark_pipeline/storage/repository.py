"""SQL-backed job, credential and settings stores."""

import uuid
from typing import Any, List, Optional

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import async_sessionmaker

from ..core.exceptions import JobNotFoundError
from ..core.models import (
    ItemStatus,
    JobItem,
    JobStatus,
    RollbackRun,
    RollbackStatus,
    ScopeType,
    WatermarkJob,
    WatermarkSettings,
    normalize_shop,
)
from ..core.protocols import JobStore
from .tables import JobItemRow, JobRow, RollbackRunRow, SettingsRow, ShopRow, utcnow

TERMINAL_JOB_STATUSES = {
    JobStatus.COMPLETED,
    JobStatus.FAILED,
    JobStatus.CANCELLED,
    JobStatus.ROLLED_BACK,
}
OPEN_ROLLBACK_STATUSES = (RollbackStatus.PENDING, RollbackStatus.PROCESSING)
ARCHIVE_SOURCE_STATUSES = (ItemStatus.COMPLETED, ItemStatus.ROLLED_BACK)


class SqlJobStore(JobStore):
    """
    Every method runs in its own transaction and commits before returning,
    so a crash never loses an acknowledged write.
    """

    def __init__(self, session_factory: async_sessionmaker):
        self._sessions = session_factory

    # Jobs

    async def create_job(
        self,
        shop: str,
        scope_type: ScopeType,
        scope_value: Any = None,
        settings_snapshot: Optional[dict] = None,
        job_id: Optional[str] = None,
    ) -> WatermarkJob:
        row = JobRow(
            id=job_id or str(uuid.uuid4()),
            shop=normalize_shop(shop),
            scope_type=ScopeType(scope_type),
            scope_value=scope_value,
            settings_snapshot=settings_snapshot,
            status=JobStatus.PENDING,
            processed_products=0,
            failed_products=0,
        )
        async with self._sessions.begin() as session:
            session.add(row)
        return WatermarkJob.model_validate(row)

    async def get_job(self, job_id: str) -> Optional[WatermarkJob]:
        async with self._sessions() as session:
            row = await session.get(JobRow, job_id)
            return WatermarkJob.model_validate(row) if row else None

    async def require_job(self, job_id: str) -> WatermarkJob:
        job = await self.get_job(job_id)
        if job is None:
            raise JobNotFoundError(f"Job {job_id} not found")
        return job

    async def list_jobs(self, shop: str, limit: int = 20) -> List[WatermarkJob]:
        async with self._sessions() as session:
            result = await session.scalars(
                select(JobRow)
                .where(JobRow.shop == normalize_shop(shop))
                .order_by(JobRow.created_at.desc())
                .limit(limit)
            )
            return [WatermarkJob.model_validate(r) for r in result]

    async def delete_job(self, job_id: str) -> None:
        async with self._sessions.begin() as session:
            row = await session.get(JobRow, job_id)
            if row is not None:
                await session.delete(row)

    async def _update_job(self, job_id: str, **values: Any) -> None:
        async with self._sessions.begin() as session:
            result = await session.execute(
                update(JobRow).where(JobRow.id == job_id).values(updated_at=utcnow(), **values)
            )
            if result.rowcount == 0:
                raise JobNotFoundError(f"Job {job_id} not found")

    async def update_job_status(
        self, job_id: str, status: JobStatus, error_log: Optional[str] = None
    ) -> None:
        values: dict = {"status": status}
        if error_log is not None:
            values["error_log"] = error_log
        await self._update_job(job_id, **values)

    async def start_job(self, job_id: str) -> None:
        await self._update_job(
            job_id,
            status=JobStatus.PROCESSING,
            started_at=utcnow(),
            completed_at=None,
            total_products=None,
            processed_products=0,
            failed_products=0,
        )

    async def complete_job(
        self, job_id: str, status: JobStatus, error_log: Optional[str] = None
    ) -> None:
        values: dict = {"status": status}
        if status in TERMINAL_JOB_STATUSES:
            values["completed_at"] = utcnow()
        if error_log is not None:
            values["error_log"] = error_log
        await self._update_job(job_id, **values)

    async def set_total_products(self, job_id: str, total: int) -> None:
        await self._update_job(job_id, total_products=total)

    async def increment_processed(self, job_id: str) -> None:
        await self._update_job(job_id, processed_products=JobRow.processed_products + 1)

    async def increment_failed(self, job_id: str) -> None:
        await self._update_job(job_id, failed_products=JobRow.failed_products + 1)

    async def append_job_log(self, job_id: str, message: str) -> None:
        async with self._sessions.begin() as session:
            row = await session.get(JobRow, job_id)
            if row is None:
                raise JobNotFoundError(f"Job {job_id} not found")
            row.error_log = f"{row.error_log}\n{message}" if row.error_log else message

    # Items

    async def create_item(self, **fields: Any) -> JobItem:
        fields.setdefault("status", ItemStatus.PENDING)
        fields.setdefault("variant_ids", [])
        fields["shop"] = normalize_shop(fields["shop"])
        row = JobItemRow(**fields)
        async with self._sessions.begin() as session:
            session.add(row)
        return JobItem.model_validate(row)

    async def update_item(self, item_id: int, **fields: Any) -> JobItem:
        async with self._sessions.begin() as session:
            row = await session.get(JobItemRow, item_id)
            if row is None:
                raise LookupError(f"Job item {item_id} not found")
            for key, value in fields.items():
                setattr(row, key, value)
            return JobItem.model_validate(row)

    async def mark_item_completed(
        self,
        item_id: int,
        new_media_id: str,
        new_media_url: Optional[str] = None,
        error_message: Optional[str] = None,
    ) -> JobItem:
        return await self.update_item(
            item_id,
            status=ItemStatus.COMPLETED,
            new_media_id=new_media_id,
            new_media_url=new_media_url,
            staged_media_id=None,
            error_message=error_message,
            processed_at=utcnow(),
        )

    async def mark_item_failed(self, item_id: int, error_message: str) -> JobItem:
        return await self.update_item(
            item_id,
            status=ItemStatus.FAILED,
            new_media_id=None,
            new_media_url=None,
            staged_media_id=None,
            error_message=error_message,
            processed_at=utcnow(),
        )

    async def mark_item_rolled_back(self, item_id: int) -> JobItem:
        return await self.update_item(
            item_id, status=ItemStatus.ROLLED_BACK, error_message=None, processed_at=utcnow()
        )

    async def get_item(self, item_id: int) -> Optional[JobItem]:
        async with self._sessions() as session:
            row = await session.get(JobItemRow, item_id)
            return JobItem.model_validate(row) if row else None

    async def list_items(
        self,
        job_id: str,
        status: Optional[ItemStatus] = None,
        product_id: Optional[str] = None,
    ) -> List[JobItem]:
        query = select(JobItemRow).where(JobItemRow.job_id == job_id)
        if status is not None:
            query = query.where(JobItemRow.status == status)
        if product_id is not None:
            query = query.where(JobItemRow.product_id == product_id)
        query = query.order_by(JobItemRow.created_at, JobItemRow.id)
        async with self._sessions() as session:
            return [JobItem.model_validate(r) for r in await session.scalars(query)]

    async def find_item_by_hash(self, job_id: str, image_hash: str) -> Optional[JobItem]:
        query = (
            select(JobItemRow)
            .where(
                JobItemRow.job_id == job_id,
                JobItemRow.image_hash == image_hash,
                JobItemRow.original_media_url.is_not(None),
            )
            .order_by(JobItemRow.id)
            .limit(1)
        )
        async with self._sessions() as session:
            row = await session.scalar(query)
            return JobItem.model_validate(row) if row else None

    async def find_archived_original(
        self, shop: str, original_media_id: str
    ) -> Optional[JobItem]:
        query = (
            select(JobItemRow)
            .where(
                JobItemRow.shop == normalize_shop(shop),
                JobItemRow.original_media_id == original_media_id,
                JobItemRow.status.in_(ARCHIVE_SOURCE_STATUSES),
                JobItemRow.original_media_url.like("gid://%"),
            )
            .order_by(JobItemRow.id.desc())
            .limit(1)
        )
        async with self._sessions() as session:
            row = await session.scalar(query)
            return JobItem.model_validate(row) if row else None

    async def find_item_by_new_media(self, shop: str, media_id: str) -> Optional[JobItem]:
        query = (
            select(JobItemRow)
            .where(
                JobItemRow.shop == normalize_shop(shop),
                JobItemRow.new_media_id == media_id,
                JobItemRow.status == ItemStatus.COMPLETED,
            )
            .limit(1)
        )
        async with self._sessions() as session:
            row = await session.scalar(query)
            return JobItem.model_validate(row) if row else None

    # Rollback runs

    async def create_rollback_run(
        self, job_id: str, shop: str, items_to_rollback: int = 0
    ) -> RollbackRun:
        row = RollbackRunRow(
            job_id=job_id,
            shop=normalize_shop(shop),
            status=RollbackStatus.PENDING,
            items_to_rollback=items_to_rollback,
            items_rolled_back=0,
        )
        async with self._sessions.begin() as session:
            session.add(row)
        return RollbackRun.model_validate(row)

    async def get_open_rollback_run(self, job_id: str) -> Optional[RollbackRun]:
        query = (
            select(RollbackRunRow)
            .where(
                RollbackRunRow.job_id == job_id,
                RollbackRunRow.status.in_(OPEN_ROLLBACK_STATUSES),
            )
            .order_by(RollbackRunRow.id.desc())
            .limit(1)
        )
        async with self._sessions() as session:
            row = await session.scalar(query)
            return RollbackRun.model_validate(row) if row else None

    async def get_latest_rollback_run(self, job_id: str) -> Optional[RollbackRun]:
        query = (
            select(RollbackRunRow)
            .where(RollbackRunRow.job_id == job_id)
            .order_by(RollbackRunRow.id.desc())
            .limit(1)
        )
        async with self._sessions() as session:
            row = await session.scalar(query)
            return RollbackRun.model_validate(row) if row else None

    async def start_rollback_run(self, run_id: int, items_to_rollback: int) -> None:
        async with self._sessions.begin() as session:
            await session.execute(
                update(RollbackRunRow)
                .where(RollbackRunRow.id == run_id)
                .values(
                    status=RollbackStatus.PROCESSING,
                    items_to_rollback=items_to_rollback,
                    started_at=utcnow(),
                )
            )

    async def increment_rolled_back(self, run_id: int) -> None:
        async with self._sessions.begin() as session:
            await session.execute(
                update(RollbackRunRow)
                .where(RollbackRunRow.id == run_id)
                .values(items_rolled_back=RollbackRunRow.items_rolled_back + 1)
            )

    async def complete_rollback_run(self, run_id: int, status: RollbackStatus) -> RollbackRun:
        async with self._sessions.begin() as session:
            row = await session.get(RollbackRunRow, run_id)
            if row is None:
                raise LookupError(f"Rollback run {run_id} not found")
            row.status = status
            row.completed_at = utcnow()
            return RollbackRun.model_validate(row)


class SqlCredentialStore:
    def __init__(self, session_factory: async_sessionmaker):
        self._sessions = session_factory

    async def get_access_token(self, shop: str) -> Optional[str]:
        async with self._sessions() as session:
            row = await session.get(ShopRow, normalize_shop(shop))
            return row.access_token if row else None

    async def save_access_token(self, shop: str, access_token: str) -> None:
        async with self._sessions.begin() as session:
            row = await session.get(ShopRow, normalize_shop(shop))
            if row is None:
                session.add(ShopRow(shop=normalize_shop(shop), access_token=access_token))
            else:
                row.access_token = access_token


class SqlSettingsStore:
    """Per-shop watermark design. Shops without a saved design get the defaults."""

    def __init__(self, session_factory: async_sessionmaker):
        self._sessions = session_factory

    async def get_settings(self, shop: str) -> WatermarkSettings:
        async with self._sessions() as session:
            row = await session.get(SettingsRow, normalize_shop(shop))
            if row is None:
                return WatermarkSettings()
            return WatermarkSettings.model_validate(row.settings)

    async def save_settings(self, shop: str, settings: WatermarkSettings) -> None:
        document = settings.model_dump(mode="json")
        async with self._sessions.begin() as session:
            row = await session.get(SettingsRow, normalize_shop(shop))
            if row is None:
                session.add(SettingsRow(shop=normalize_shop(shop), settings=document))
            else:
                row.settings = document
