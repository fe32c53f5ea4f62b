"""Tests for wiring worker components from configuration."""

import asyncio
from unittest import mock

import httpx

from watermark_pipeline.core.config import WorkerConfig
from watermark_pipeline.core.factories import (
    ArchiveFactory,
    CatalogClientFactory,
    HttpClientFactory,
    WorkerRuntime,
)
from watermark_pipeline.core.models import MediaNode
from watermark_pipeline.platform import ShopifyCatalogClient
from watermark_pipeline.storage import APPLY_QUEUE, ROLLBACK_QUEUE, PlatformFileArchive, S3Archive
from watermark_pipeline.testing import FakeArchive, FakeCatalog


class TestFactories:
    """Tests for the individual factories."""

    def test_platform_archive_is_default(self):
        """Test the Files library archive is used unless S3 is configured."""
        archive = ArchiveFactory.create_archive(WorkerConfig(verify_attempts=3), mock.Mock(spec=httpx.AsyncClient))
        assert isinstance(archive, PlatformFileArchive)

    def test_s3_archive_from_config(self):
        """Test the S3 backend is built from the s3_* settings."""
        config = WorkerConfig(
            archive_backend="s3",
            s3_bucket="originals",
            s3_public_base_url="https://originals.example.com",
        )
        with mock.patch("watermark_pipeline.storage.archive.aioboto3.Session"):
            archive = ArchiveFactory.create_archive(config, mock.Mock(spec=httpx.AsyncClient))

        assert isinstance(archive, S3Archive)
        assert archive.object_key(
            "demo.myshopify.com", MediaNode(id="gid://shopify/MediaImage/1")
        ) == "watermark-originals/demo.myshopify.com/1"

    def test_catalog_factory_builds_per_shop_clients(self):
        """Test each call yields a client bound to the given shop."""
        http = mock.Mock(spec=httpx.AsyncClient)
        create = CatalogClientFactory.create_catalog_factory(WorkerConfig(), http)

        client = create("demo.myshopify.com", "shpat_test")

        assert isinstance(client, ShopifyCatalogClient)
        assert client.shop == "demo.myshopify.com"

    def test_http_client_uses_request_timeout(self):
        """Test the shared client honours the configured timeout."""
        client = HttpClientFactory.create_http_client(WorkerConfig(request_timeout=12.5))
        try:
            assert client.timeout.read == 12.5
            assert client.follow_redirects is True
        finally:
            asyncio.run(client.aclose())


class TestWorkerRuntime:
    """Tests for WorkerRuntime."""

    def test_runtime_wires_consumers(self, tmp_path):
        """Test the runtime builds one consumer per queue and closes cleanly."""
        config = WorkerConfig(
            database_url=f"sqlite+aiosqlite:///{tmp_path / 'runtime.db'}",
            queue_concurrency=3,
        )

        async def scenario():
            async with httpx.AsyncClient() as http:
                runtime = WorkerRuntime(
                    config,
                    http_client=http,
                    catalog_factory=lambda shop, token: FakeCatalog(),
                    archive=FakeArchive(),
                )
                apply_consumer = runtime.apply_consumer()
                rollback_consumer = runtime.rollback_consumer()
                await runtime.engine.dispose()
                return runtime, apply_consumer, rollback_consumer

        runtime, apply_consumer, rollback_consumer = asyncio.run(scenario())

        assert apply_consumer._queue_name == APPLY_QUEUE
        assert apply_consumer._concurrency == 3
        assert rollback_consumer._queue_name == ROLLBACK_QUEUE
        assert rollback_consumer._concurrency == 1
        assert isinstance(runtime.archive, FakeArchive)
