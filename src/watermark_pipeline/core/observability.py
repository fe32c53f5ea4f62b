"""
Job-scoped structured logging and per-stage timings.

Every log line of a job carries the job id as correlation id, so the lines
of one apply or rollback run can be grepped out of a shared worker log.
"""

import logging
import time
import uuid
from contextlib import asynccontextmanager
from dataclasses import dataclass, field, replace
from typing import Any, AsyncIterator, Dict, List, Optional

from .logging_config import get_logger

PIPELINE_STAGES = ("download", "composite", "upload")


@dataclass(frozen=True)
class LogContext:
    """Who is logging: job (correlation id), operation, component and shop."""

    correlation_id: str = field(default_factory=lambda: str(uuid.uuid4()))
    operation: str = ""
    component: str = ""
    shop: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)

    def with_operation(self, operation: str) -> "LogContext":
        return replace(self, operation=operation, metadata=dict(self.metadata))

    def with_metadata(self, **kwargs) -> "LogContext":
        return replace(self, metadata={**self.metadata, **kwargs})

    def fields(self) -> Dict[str, Any]:
        prefix = {"shop": self.shop} if self.shop else {}
        return {**prefix, **self.metadata}


def _render(message: str, context: Optional[LogContext], extra: Dict[str, Any]) -> str:
    fields: Dict[str, Any] = {}
    if context is not None:
        message = f"[{context.correlation_id}] {message}"
        if context.operation:
            message = f"[{context.operation}] {message}"
        fields.update(context.fields())
    fields.update(extra)
    if fields:
        message = f"{message} ({', '.join(f'{k}={v}' for k, v in fields.items())})"
    return message


class StructuredLogger:
    """
    Thin wrapper over a stdlib logger.

    ``logger.info("Starting job", context, scope="all")`` renders as
    ``[apply_job] [<job id>] Starting job (shop=..., scope=all)``.
    """

    def __init__(self, name: str, logger: Optional[logging.Logger] = None):
        self._logger = logger or get_logger(name)

    def _log(self, level: int, message: str, context: Optional[LogContext], extra: Dict[str, Any]):
        emit = {
            logging.DEBUG: self._logger.debug,
            logging.INFO: self._logger.info,
            logging.WARNING: self._logger.warning,
            logging.ERROR: self._logger.error,
        }[level]
        emit(_render(message, context, extra))

    def debug(self, message: str, context: Optional[LogContext] = None, **kwargs):
        self._log(logging.DEBUG, message, context, kwargs)

    def info(self, message: str, context: Optional[LogContext] = None, **kwargs):
        self._log(logging.INFO, message, context, kwargs)

    def warning(self, message: str, context: Optional[LogContext] = None, **kwargs):
        self._log(logging.WARNING, message, context, kwargs)

    def error(self, message: str, context: Optional[LogContext] = None, **kwargs):
        self._log(logging.ERROR, message, context, kwargs)


@dataclass
class StageTiming:
    """Wall-clock timing of one stage for one image."""

    stage: str
    started: float
    finished: float
    success: bool
    error_message: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)

    @property
    def duration(self) -> float:
        return self.finished - self.started


class MetricsCollector:
    """Accumulates stage timings for one job run."""

    def __init__(self):
        self._timings: List[StageTiming] = []

    def record(self, timing: StageTiming) -> None:
        self._timings.append(timing)

    def timings(self, stage: Optional[str] = None) -> List[StageTiming]:
        return [t for t in self._timings if stage is None or t.stage == stage]

    def summary(self, stage: str) -> Dict[str, Any]:
        """Count, failures and duration statistics for one stage; empty if never run."""
        timings = self.timings(stage)
        if not timings:
            return {}
        durations = [t.duration for t in timings]
        failed = sum(1 for t in timings if not t.success)
        return {
            "count": len(timings),
            "failed": failed,
            "success_rate": (len(timings) - failed) / len(timings),
            "avg_duration": sum(durations) / len(durations),
            "max_duration": max(durations),
        }


@asynccontextmanager
async def timed_stage(
    stage: str,
    metrics_collector: Optional[MetricsCollector] = None,
    **metadata: Any,
) -> AsyncIterator[None]:
    """Time one pipeline stage (download, composite, upload) of one image."""
    started = time.time()
    success = False
    error_message = None
    try:
        yield
        success = True
    except Exception as e:
        error_message = str(e)
        raise
    finally:
        if metrics_collector is not None:
            metrics_collector.record(
                StageTiming(
                    stage,
                    started,
                    time.time(),
                    success=success,
                    error_message=error_message,
                    metadata=metadata,
                )
            )


def log_operation_start(
    operation: str,
    logger: StructuredLogger,
    context: Optional[LogContext] = None,
    **metadata,
) -> LogContext:
    """Log the start of an operation and return the context to finish it with."""
    operation_context = (context or LogContext()).with_operation(operation).with_metadata(**metadata)
    logger.info(f"Starting {operation}", operation_context)
    return operation_context


def log_operation_end(
    operation: str,
    logger: StructuredLogger,
    context: LogContext,
    success: bool = True,
    error_message: Optional[str] = None,
):
    if success:
        logger.info(f"Completed {operation}", context)
    else:
        logger.error(f"Failed {operation}: {error_message}", context)


def log_metrics_summary(
    logger: StructuredLogger, context: LogContext, metrics_collector: MetricsCollector
):
    """One line per pipeline stage that ran during the job."""
    for stage in PIPELINE_STAGES:
        summary = metrics_collector.summary(stage)
        if summary:
            logger.info(
                f"Stage summary: {stage}",
                context,
                count=summary["count"],
                failed=summary["failed"],
                avg_ms=round(summary["avg_duration"] * 1000, 1),
                max_ms=round(summary["max_duration"] * 1000, 1),
            )
