"""Persistence: tables, repositories, the durable queue and archives."""

from .archive import PlatformFileArchive, S3Archive
from .db import create_engine, create_session_factory, drop_db, init_db
from .queue import APPLY_QUEUE, ROLLBACK_QUEUE, JobQueue
from .repository import SqlCredentialStore, SqlJobStore, SqlSettingsStore

__all__ = [
    "APPLY_QUEUE",
    "ROLLBACK_QUEUE",
    "JobQueue",
    "PlatformFileArchive",
    "S3Archive",
    "SqlCredentialStore",
    "SqlJobStore",
    "SqlSettingsStore",
    "create_engine",
    "create_session_factory",
    "drop_db",
    "init_db",
]
