"""Factory classes for creating configured service instances."""

from typing import Callable, Optional

import httpx

from ..platform import ShopifyCatalogClient
from ..processors.apply import JobOrchestrator
from ..processors.consumer import QueueConsumer
from ..processors.rollback import RollbackReconciler
from ..storage import (
    APPLY_QUEUE,
    ROLLBACK_QUEUE,
    JobQueue,
    PlatformFileArchive,
    S3Archive,
    SqlCredentialStore,
    SqlJobStore,
    SqlSettingsStore,
    create_engine,
    create_session_factory,
)
from .config import WorkerConfig
from .protocols import ArchiveStoreProtocol, CatalogClientProtocol

CatalogFactory = Callable[[str, str], CatalogClientProtocol]


class HttpClientFactory:
    """Factory for the shared async HTTP client."""

    @staticmethod
    def create_http_client(config: WorkerConfig) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            timeout=httpx.Timeout(config.request_timeout),
            follow_redirects=True,
        )


class CatalogClientFactory:
    """Factory for per-shop catalog clients sharing one HTTP client."""

    @staticmethod
    def create_catalog_factory(config: WorkerConfig, http_client: httpx.AsyncClient) -> CatalogFactory:
        def create(shop: str, access_token: str) -> CatalogClientProtocol:
            return ShopifyCatalogClient(
                shop,
                access_token,
                http_client,
                api_version=config.api_version,
                upload_timeout=config.upload_timeout,
            )

        return create


class ArchiveFactory:
    """Factory for the configured archive backend."""

    @staticmethod
    def create_archive(config: WorkerConfig, http_client: httpx.AsyncClient) -> ArchiveStoreProtocol:
        if config.archive_backend == "s3":
            return S3Archive(
                http_client,
                bucket=config.s3_bucket,
                public_base_url=config.s3_public_base_url,
                prefix=config.s3_prefix,
                endpoint_url=config.s3_endpoint_url,
                max_file_size=config.max_file_size,
            )
        return PlatformFileArchive(config.verify_attempts, config.verify_delay)


class WorkerRuntime:
    """
    Everything a worker process needs, wired from one config.

    Owns the database engine and the HTTP client; call ``close()`` when done.
    """

    def __init__(
        self,
        config: WorkerConfig,
        http_client: Optional[httpx.AsyncClient] = None,
        catalog_factory: Optional[CatalogFactory] = None,
        archive: Optional[ArchiveStoreProtocol] = None,
    ):
        self.config = config
        self.engine = create_engine(config.database_url)
        self.sessions = create_session_factory(self.engine)
        self.store = SqlJobStore(self.sessions)
        self.credentials = SqlCredentialStore(self.sessions)
        self.settings_store = SqlSettingsStore(self.sessions)
        self.queue = JobQueue(
            self.sessions,
            max_attempts=config.queue_max_attempts,
            backoff_delay=config.queue_backoff_delay,
        )
        self.http_client = http_client or HttpClientFactory.create_http_client(config)
        self.catalog_factory = catalog_factory or CatalogClientFactory.create_catalog_factory(
            config, self.http_client
        )
        self.archive = archive or ArchiveFactory.create_archive(config, self.http_client)
        self.orchestrator = JobOrchestrator(
            self.store,
            self.credentials,
            self.settings_store,
            self.catalog_factory,
            self.archive,
            self.http_client,
            config,
        )
        self.reconciler = RollbackReconciler(
            self.store, self.credentials, self.catalog_factory, config
        )

    def apply_consumer(self) -> QueueConsumer:
        return QueueConsumer(
            self.queue,
            APPLY_QUEUE,
            self.orchestrator.run_apply_job,
            concurrency=self.config.queue_concurrency,
            poll_interval=self.config.queue_poll_interval,
            visibility_timeout=self.config.queue_visibility_timeout,
        )

    def rollback_consumer(self) -> QueueConsumer:
        return QueueConsumer(
            self.queue,
            ROLLBACK_QUEUE,
            self.reconciler.run_rollback,
            concurrency=1,
            poll_interval=self.config.queue_poll_interval,
            visibility_timeout=self.config.queue_visibility_timeout,
        )

    async def close(self) -> None:
        await self.http_client.aclose()
        await self.engine.dispose()
