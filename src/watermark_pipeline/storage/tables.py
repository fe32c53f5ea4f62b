"""
ORM tables.

Jobs own their items (delete cascades). Counters on jobs and rollback runs
are only ever changed with single UPDATE statements so progress survives a
worker restart.
"""

from datetime import datetime, timezone
from typing import Any, List, Optional

from sqlalchemy import (
    JSON,
    Boolean,
    DateTime,
    Enum,
    Float,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship

from ..core.models import ItemStatus, JobStatus, JobType, RollbackStatus, ScopeType


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Base(DeclarativeBase):
    pass


class TimestampMixin:
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow
    )


class JobRow(Base, TimestampMixin):
    __tablename__ = "watermark_jobs"

    id: Mapped[str] = mapped_column(String(36), primary_key=True)
    shop: Mapped[str] = mapped_column(String(255), nullable=False, index=True)
    job_type: Mapped[JobType] = mapped_column(
        Enum(JobType, native_enum=False, values_callable=lambda e: [m.value for m in e]),
        nullable=False,
        default=JobType.APPLY,
    )
    status: Mapped[JobStatus] = mapped_column(
        Enum(JobStatus, native_enum=False, values_callable=lambda e: [m.value for m in e]),
        nullable=False,
        default=JobStatus.PENDING,
    )
    scope_type: Mapped[ScopeType] = mapped_column(
        Enum(ScopeType, native_enum=False, values_callable=lambda e: [m.value for m in e]),
        nullable=False,
    )
    scope_value: Mapped[Optional[Any]] = mapped_column(JSON, nullable=True)
    settings_snapshot: Mapped[Optional[dict]] = mapped_column(JSON, nullable=True)
    total_products: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    processed_products: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    failed_products: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    error_log: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    started_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    completed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))

    items: Mapped[List["JobItemRow"]] = relationship(
        back_populates="job", cascade="all, delete-orphan", passive_deletes=True
    )


class JobItemRow(Base):
    __tablename__ = "watermark_job_items"
    __table_args__ = (
        Index("ix_job_items_job_hash", "job_id", "image_hash"),
        Index("ix_job_items_shop_original", "shop", "original_media_id"),
        Index("ix_job_items_shop_new_media", "shop", "new_media_id"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    job_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("watermark_jobs.id", ondelete="CASCADE"), nullable=False, index=True
    )
    shop: Mapped[str] = mapped_column(String(255), nullable=False)
    product_id: Mapped[str] = mapped_column(String(255), nullable=False)
    product_title: Mapped[Optional[str]] = mapped_column(String(512))
    original_media_id: Mapped[str] = mapped_column(String(255), nullable=False)
    original_media_url: Mapped[Optional[str]] = mapped_column(Text)
    original_position: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    original_is_featured: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    new_media_id: Mapped[Optional[str]] = mapped_column(String(255))
    new_media_url: Mapped[Optional[str]] = mapped_column(Text)
    staged_media_id: Mapped[Optional[str]] = mapped_column(String(255))
    restored_media_id: Mapped[Optional[str]] = mapped_column(String(255))
    image_hash: Mapped[Optional[str]] = mapped_column(String(64))
    variant_ids: Mapped[list] = mapped_column(JSON, nullable=False, default=list)
    status: Mapped[ItemStatus] = mapped_column(
        Enum(ItemStatus, native_enum=False, values_callable=lambda e: [m.value for m in e]),
        nullable=False,
        default=ItemStatus.PENDING,
    )
    error_message: Mapped[Optional[str]] = mapped_column(Text)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)
    processed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))

    job: Mapped[JobRow] = relationship(back_populates="items")


class RollbackRunRow(Base):
    __tablename__ = "rollback_runs"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    job_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("watermark_jobs.id", ondelete="CASCADE"), nullable=False, index=True
    )
    shop: Mapped[str] = mapped_column(String(255), nullable=False)
    status: Mapped[RollbackStatus] = mapped_column(
        Enum(RollbackStatus, native_enum=False, values_callable=lambda e: [m.value for m in e]),
        nullable=False,
        default=RollbackStatus.PENDING,
    )
    items_to_rollback: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    items_rolled_back: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)
    started_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    completed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))


class ShopRow(Base, TimestampMixin):
    __tablename__ = "shops"

    shop: Mapped[str] = mapped_column(String(255), primary_key=True)
    access_token: Mapped[str] = mapped_column(Text, nullable=False)


class SettingsRow(Base, TimestampMixin):
    __tablename__ = "watermark_settings"

    shop: Mapped[str] = mapped_column(String(255), primary_key=True)
    settings: Mapped[dict] = mapped_column(JSON, nullable=False, default=dict)


class QueueMessageRow(Base, TimestampMixin):
    __tablename__ = "queue_messages"
    __table_args__ = (
        Index("ix_queue_claim", "queue_name", "status", "available_at"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    queue_name: Mapped[str] = mapped_column(String(64), nullable=False)
    job_key: Mapped[str] = mapped_column(String(64), nullable=False)
    payload: Mapped[dict] = mapped_column(JSON, nullable=False)
    status: Mapped[str] = mapped_column(String(16), nullable=False, default="waiting")
    attempts: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    max_attempts: Mapped[int] = mapped_column(Integer, nullable=False, default=3)
    available_at: Mapped[float] = mapped_column(Float, nullable=False)
    claimed_at: Mapped[Optional[float]] = mapped_column(Float)
    last_error: Mapped[Optional[str]] = mapped_column(Text)
