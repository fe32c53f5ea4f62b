"""Core utilities and shared components for the watermark pipeline."""

from .config import WorkerConfig, get_config, load_config
from .exceptions import (
    ConfigurationError,
    ImageProcessingError,
    ImageValidationError,
    PlatformError,
    RestoreVerificationError,
    TransientPlatformError,
    WatermarkPipelineError,
)
from .logging_config import configure_worker_logging, get_logger, setup_logger
from .models import (
    Anchor,
    ItemStatus,
    JobItem,
    JobStatus,
    RollbackRun,
    ScopeType,
    WatermarkJob,
    WatermarkSettings,
)
from .positioning import compute_position

__all__ = [
    "Anchor",
    "ConfigurationError",
    "ImageProcessingError",
    "ImageValidationError",
    "ItemStatus",
    "JobItem",
    "JobStatus",
    "PlatformError",
    "RestoreVerificationError",
    "RollbackRun",
    "ScopeType",
    "TransientPlatformError",
    "WatermarkJob",
    "WatermarkPipelineError",
    "WatermarkSettings",
    "WorkerConfig",
    "compute_position",
    "configure_worker_logging",
    "get_config",
    "get_logger",
    "load_config",
    "setup_logger",
]
