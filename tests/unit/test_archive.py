"""Tests for archiving originals to the Files library or S3."""

import asyncio
from unittest import mock

import httpx
import pytest

from watermark_pipeline.core.exceptions import ArchiveError
from watermark_pipeline.core.fetch import CHUNK_SIZE
from watermark_pipeline.core.models import MediaNode
from watermark_pipeline.storage import PlatformFileArchive, S3Archive
from watermark_pipeline.testing import FakeCatalog, FakeImageServer, FakeS3Session

SHOP = "Demo.myshopify.com"
ORIGINAL_URL = "https://cdn.example.com/files/shirt.JPG?v=123"


def _media(url=ORIGINAL_URL) -> MediaNode:
    return MediaNode(id="gid://shopify/MediaImage/42", url=url, alt="front")


class TestPlatformFileArchive:
    """Tests for PlatformFileArchive."""

    def test_archive_creates_ready_file(self):
        """Test the original becomes a library file and its id is returned."""
        catalog = FakeCatalog()

        file_id = asyncio.run(PlatformFileArchive(ready_delay=0).archive(catalog, SHOP, _media()))

        assert file_id in catalog.files
        assert catalog.files[file_id].url == ORIGINAL_URL
        assert catalog.calls_to("create_file") == [ORIGINAL_URL]

    def test_archive_waits_for_ready(self):
        """Test file status is polled until READY."""
        catalog = FakeCatalog()
        statuses = iter(["UPLOADED", "PROCESSING", "READY"])

        async def file_status(file_id):
            catalog.calls.append(("get_file_status", file_id))
            return next(statuses)

        catalog.get_file_status = file_status

        asyncio.run(PlatformFileArchive(ready_attempts=3, ready_delay=0).archive(catalog, SHOP, _media()))

        assert len(catalog.calls_to("get_file_status")) == 3

    def test_failed_file_raises_archive_error(self):
        """Test a file the platform fails to process aborts archiving."""
        catalog = FakeCatalog()
        original_create = catalog.create_file

        async def create_failed_file(source, alt=""):
            file_id = await original_create(source, alt)
            catalog.files[file_id].status = "FAILED"
            return file_id

        catalog.create_file = create_failed_file

        with pytest.raises(ArchiveError, match="Could not archive"):
            asyncio.run(PlatformFileArchive(ready_delay=0).archive(catalog, SHOP, _media()))

    def test_create_failure_raises_archive_error(self):
        """Test platform errors are wrapped in ArchiveError."""
        catalog = FakeCatalog()
        catalog.set_failure("create_file")

        with pytest.raises(ArchiveError):
            asyncio.run(PlatformFileArchive(ready_delay=0).archive(catalog, SHOP, _media()))

    def test_media_without_url(self):
        """Test media without a source URL cannot be archived."""
        with pytest.raises(ArchiveError, match="no source URL"):
            asyncio.run(PlatformFileArchive().archive(FakeCatalog(), SHOP, _media(url=None)))


class TestS3Archive:
    """Tests for S3Archive."""

    def _run(self, server, session, media=None, **kwargs):
        async def runner():
            async with server.client() as http:
                archive = S3Archive(
                    http,
                    bucket="originals",
                    public_base_url="https://originals.example.com/",
                    session=session,
                    **kwargs,
                )
                return await archive.archive(FakeCatalog(), SHOP, media or _media())

        return asyncio.run(runner())

    def test_archive_uploads_and_returns_public_url(self):
        """Test the original is stored under a per-shop key and served publicly."""
        server = FakeImageServer()
        server.add(ORIGINAL_URL, b"original-bytes")
        session = FakeS3Session(buckets=["originals"])

        url = self._run(server, session, endpoint_url="http://localhost:9000")

        key = "watermark-originals/demo.myshopify.com/42.jpg"
        assert url == f"https://originals.example.com/{key}"
        assert session.buckets["originals"][key].body == b"original-bytes"
        assert session.client_kwargs[0]["endpoint_url"] == "http://localhost:9000"

    def test_object_key_without_extension(self):
        """Test URLs without an extension produce a bare key."""
        archive = S3Archive(mock.Mock(spec=httpx.AsyncClient), "b", "https://x", prefix="/p/", session=FakeS3Session())
        media = MediaNode(id="gid://shopify/MediaImage/7", url="https://cdn/raw")
        assert archive.object_key("shop", media) == "p/shop/7"

    def test_download_failure(self):
        """Test an unreachable original raises ArchiveError."""
        server = FakeImageServer()
        server.fail(ORIGINAL_URL, 404)

        with pytest.raises(ArchiveError, match="HTTP 404"):
            self._run(server, FakeS3Session(buckets=["originals"]))

    def test_size_limit(self):
        """Test originals above the limit are refused."""
        server = FakeImageServer()
        server.add(ORIGINAL_URL, b"x" * 100)

        with pytest.raises(ArchiveError, match="size limit"):
            self._run(server, FakeS3Session(buckets=["originals"]), max_file_size=10)

    def test_oversized_stream_stops_early(self):
        """Test a body without a declared size is abandoned once it passes the limit."""
        served = []

        async def body():
            for _ in range(10):
                served.append(CHUNK_SIZE)
                yield b"x" * CHUNK_SIZE

        async def runner():
            transport = httpx.MockTransport(lambda request: httpx.Response(200, content=body()))
            async with httpx.AsyncClient(transport=transport) as http:
                archive = S3Archive(
                    http,
                    bucket="originals",
                    public_base_url="https://originals.example.com",
                    max_file_size=150_000,
                    session=FakeS3Session(buckets=["originals"]),
                )
                return await archive.archive(FakeCatalog(), SHOP, _media())

        with pytest.raises(ArchiveError, match="size limit"):
            asyncio.run(runner())
        assert len(served) == 3

    def test_storage_failure(self):
        """Test S3 errors are wrapped in ArchiveError."""
        server = FakeImageServer()
        server.add(ORIGINAL_URL, b"original-bytes")
        session = FakeS3Session(buckets=["originals"])
        session.set_failure_mode(True, "Access Denied")

        with pytest.raises(ArchiveError, match="Access Denied"):
            self._run(server, session)
