"""Shared data models for the watermark pipeline."""

from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

HEX_COLOR_PATTERN = r"^#(?:[0-9a-fA-F]{3}|[0-9a-fA-F]{6})$"
PORTRAIT_THRESHOLD = 1.2


class Anchor(str, Enum):
    """Named placements on the 3x3 grid."""

    TOP_LEFT = "top-left"
    TOP_CENTER = "top-center"
    TOP_RIGHT = "top-right"
    MIDDLE_LEFT = "middle-left"
    CENTER = "center"
    MIDDLE_RIGHT = "middle-right"
    BOTTOM_LEFT = "bottom-left"
    BOTTOM_CENTER = "bottom-center"
    BOTTOM_RIGHT = "bottom-right"


class JobType(str, Enum):
    APPLY = "apply"
    ROLLBACK = "rollback"


class JobStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"
    ROLLED_BACK = "rolled_back"


class ItemStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"
    ROLLED_BACK = "rolled_back"
    SKIPPED = "skipped"


class RollbackStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


class ScopeType(str, Enum):
    ALL = "all"
    COLLECTION = "collection"
    MANUAL = "manual"


ITEM_STATUSES_WITH_MEDIA = {ItemStatus.COMPLETED, ItemStatus.ROLLED_BACK}


class WatermarkSettings(BaseModel):
    """Immutable watermark design. Percent coordinates mark the overlay center."""

    model_config = ConfigDict(frozen=True, extra="ignore")

    # Logo
    logo_enabled: bool = False
    logo_url: Optional[str] = None
    logo_position: Anchor = Anchor.BOTTOM_RIGHT
    logo_opacity: float = Field(0.8, ge=0.0, le=1.0)
    logo_scale: float = Field(0.2, gt=0.0, le=1.0)
    logo_margin: int = Field(20, ge=0)
    logo_rotation: float = Field(0.0, ge=-180.0, le=180.0)
    logo_x: float = Field(50.0, ge=0.0, le=100.0)
    logo_y: float = Field(50.0, ge=0.0, le=100.0)

    # Text
    text_enabled: bool = False
    text_content: str = ""
    text_font: str = "Arial"
    text_size: int = Field(24, gt=0)
    text_color: str = Field("#FFFFFF", pattern=HEX_COLOR_PATTERN)
    text_opacity: float = Field(0.8, ge=0.0, le=1.0)
    text_position: Anchor = Anchor.BOTTOM_RIGHT
    text_outline: bool = True
    text_outline_color: str = Field("#000000", pattern=HEX_COLOR_PATTERN)
    text_rotation: float = Field(0.0, ge=-180.0, le=180.0)
    text_x: float = Field(50.0, ge=0.0, le=100.0)
    text_y: float = Field(80.0, ge=0.0, le=100.0)

    use_custom_placement: bool = False

    # Mobile profile, used for portrait sources
    mobile_enabled: bool = False
    mobile_position: Anchor = Anchor.BOTTOM_RIGHT
    mobile_scale: float = Field(0.15, gt=0.0, le=1.0)

    @field_validator("logo_position", "text_position", "mobile_position", mode="before")
    @classmethod
    def default_missing_position(cls, v: Any) -> Any:
        return Anchor.BOTTOM_RIGHT if v in (None, "") else v

    @model_validator(mode="after")
    def validate_layers(self) -> "WatermarkSettings":
        if self.logo_enabled and not self.logo_url:
            raise ValueError("logo_enabled requires logo_url")
        if self.text_enabled and not self.text_content.strip():
            raise ValueError("text_enabled requires text_content")
        return self

    @property
    def has_layers(self) -> bool:
        return self.logo_enabled or self.text_enabled

    def use_mobile_profile(self, width: int, height: int) -> bool:
        """Mobile profile applies to portrait sources when enabled."""
        return self.mobile_enabled and width > 0 and height / width > PORTRAIT_THRESHOLD


class WatermarkJob(BaseModel):
    """One bulk apply operation and its durable progress counters."""

    model_config = ConfigDict(from_attributes=True)

    id: str
    shop: str
    job_type: JobType = JobType.APPLY
    status: JobStatus = JobStatus.PENDING
    scope_type: ScopeType
    scope_value: Optional[Any] = None
    settings_snapshot: Optional[Dict[str, Any]] = None
    total_products: Optional[int] = None
    processed_products: int = 0
    failed_products: int = 0
    error_log: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None


class JobItem(BaseModel):
    """
    Per-image provenance record.

    ``staged_media_id`` names a replacement the platform has created but whose
    swap has not finished; ``restored_media_id`` names media a rollback created
    from an archived copy.
    """

    model_config = ConfigDict(from_attributes=True)

    id: int
    job_id: str
    shop: str
    product_id: str
    product_title: Optional[str] = None
    original_media_id: str
    original_media_url: Optional[str] = None
    original_position: int = 0
    original_is_featured: bool = False
    new_media_id: Optional[str] = None
    new_media_url: Optional[str] = None
    staged_media_id: Optional[str] = None
    restored_media_id: Optional[str] = None
    image_hash: Optional[str] = None
    variant_ids: List[str] = Field(default_factory=list)
    status: ItemStatus = ItemStatus.PENDING
    error_message: Optional[str] = None
    created_at: Optional[datetime] = None
    processed_at: Optional[datetime] = None

    @model_validator(mode="after")
    def validate_new_media(self) -> "JobItem":
        has_media = self.new_media_id is not None
        if has_media != (self.status in ITEM_STATUSES_WITH_MEDIA):
            raise ValueError(
                f"new_media_id must be set exactly when status is completed or rolled_back "
                f"(status={self.status.value}, new_media_id={self.new_media_id})"
            )
        return self

    @property
    def archive_is_platform_file(self) -> bool:
        return is_platform_reference(self.original_media_url)


class RollbackRun(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    job_id: str
    shop: str
    status: RollbackStatus = RollbackStatus.PENDING
    items_to_rollback: int = 0
    items_rolled_back: int = 0
    created_at: Optional[datetime] = None
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None


class JobMessage(BaseModel):
    """Queue payload. Scope and settings are always re-read from the job row."""

    model_config = ConfigDict(populate_by_name=True)

    job_id: str = Field(alias="jobId")
    shop: str

    def to_payload(self) -> Dict[str, str]:
        return self.model_dump(by_alias=True)


# Platform catalog views


class MediaNode(BaseModel):
    id: str
    url: Optional[str] = None
    content_type: str = "IMAGE"
    status: str = "READY"
    alt: str = ""

    @property
    def is_image(self) -> bool:
        return self.content_type == "IMAGE"


class VariantRef(BaseModel):
    id: str
    media_ids: List[str] = Field(default_factory=list)


class ProductSnapshot(BaseModel):
    id: str
    title: str = ""
    featured_media_id: Optional[str] = None
    media: List[MediaNode] = Field(default_factory=list)
    variants: List[VariantRef] = Field(default_factory=list)

    @property
    def images(self) -> List[MediaNode]:
        return [m for m in self.media if m.is_image]

    def position_of(self, media_id: str) -> Optional[int]:
        for index, media in enumerate(self.media):
            if media.id == media_id:
                return index
        return None

    def has_media(self, media_id: Optional[str]) -> bool:
        return media_id is not None and self.position_of(media_id) is not None

    def variants_for(self, media_id: str) -> List[str]:
        return [v.id for v in self.variants if media_id in v.media_ids]


class ProductPage(BaseModel):
    product_ids: List[str] = Field(default_factory=list)
    has_next_page: bool = False
    end_cursor: Optional[str] = None


class StagedTarget(BaseModel):
    """Upload target. Parameters keep the platform's order."""

    url: str
    resource_url: str
    parameters: List[tuple[str, str]] = Field(default_factory=list)


class ImageMetadata(BaseModel):
    width: int
    height: int
    format: str

    @property
    def mime_type(self) -> str:
        return FORMAT_MIME_TYPES[self.format]


FORMAT_MIME_TYPES = {"JPEG": "image/jpeg", "PNG": "image/png", "WEBP": "image/webp"}
FORMAT_EXTENSIONS = {"JPEG": "jpg", "PNG": "png", "WEBP": "webp"}


def is_platform_reference(reference: Optional[str]) -> bool:
    """Platform-native ids (``gid://...``) versus plain URLs."""
    return bool(reference) and reference.startswith("gid://")


def normalize_shop(shop: str) -> str:
    return shop.strip().lower()
