"""Job processors: apply, rollback, queue consumption and job control."""

from .apply import JobOrchestrator, ProductOutcome, ProductProcessor
from .consumer import QueueConsumer
from .control import cancel_job, request_rollback, submit_apply_job
from .rollback import RollbackReconciler

__all__ = [
    "JobOrchestrator",
    "ProductOutcome",
    "ProductProcessor",
    "QueueConsumer",
    "RollbackReconciler",
    "cancel_job",
    "request_rollback",
    "submit_apply_job",
]
