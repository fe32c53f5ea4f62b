"""Permanent copies of originals that are not already library files."""

from typing import Any, Optional

import aioboto3
import httpx

from ..core.error_handling import poll_until
from ..core.exceptions import ArchiveError, WatermarkPipelineError
from ..core.fetch import CHUNK_SIZE, total_size_from_headers
from ..core.logging_config import get_logger
from ..core.models import MediaNode, normalize_shop
from ..core.protocols import CatalogClientProtocol

FILE_READY = "READY"
FILE_FAILED = "FAILED"

logger = get_logger("archive")


class PlatformFileArchive:
    """Copy the original into the platform's Files library and wait until it is ready."""

    def __init__(self, ready_attempts: int = 10, ready_delay: float = 2.0):
        self._ready_attempts = ready_attempts
        self._ready_delay = ready_delay

    async def archive(self, catalog: CatalogClientProtocol, shop: str, media: MediaNode) -> str:
        if not media.url:
            raise ArchiveError(f"Media {media.id} has no source URL to archive")
        try:
            file_id = await catalog.create_file(media.url, alt=media.alt)
            await poll_until(
                lambda: catalog.get_file_status(file_id),
                lambda status: status == FILE_READY,
                attempts=self._ready_attempts,
                delay=self._ready_delay,
                is_failed=lambda status: status == FILE_FAILED,
                description=f"archived file {file_id}",
            )
        except WatermarkPipelineError as exc:
            raise ArchiveError(f"Could not archive {media.id}: {exc}") from exc
        logger.debug(f"Archived {media.id} as library file {file_id}")
        return file_id


class S3Archive:
    """
    Copy the original into an S3 bucket served under a public base URL.

    Rollback re-creates product media from that URL.
    """

    def __init__(
        self,
        http_client: httpx.AsyncClient,
        bucket: str,
        public_base_url: str,
        prefix: str = "watermark-originals",
        endpoint_url: Optional[str] = None,
        max_file_size: int = 20 * 1024 * 1024,
        session: Optional[Any] = None,
    ):
        self._http = http_client
        self._bucket = bucket
        self._public_base_url = public_base_url.rstrip("/")
        self._prefix = prefix.strip("/")
        self._endpoint_url = endpoint_url
        self._max_file_size = max_file_size
        self._session = session or aioboto3.Session()

    def object_key(self, shop: str, media: MediaNode) -> str:
        media_key = media.id.rsplit("/", 1)[-1]
        extension = ""
        if media.url:
            path = media.url.split("?", 1)[0]
            if "." in path.rsplit("/", 1)[-1]:
                extension = "." + path.rsplit(".", 1)[-1].lower()
        return f"{self._prefix}/{normalize_shop(shop)}/{media_key}{extension}"

    async def _download(self, url: str) -> tuple[bytes, str]:
        """Stream the original, giving up as soon as it passes ``max_file_size``."""
        body = bytearray()
        try:
            async with self._http.stream("GET", url) as response:
                if response.status_code != 200:
                    raise ArchiveError(f"Could not download {url}: HTTP {response.status_code}")
                declared = total_size_from_headers(response)
                if declared is not None and declared > self._max_file_size:
                    raise ArchiveError(f"Original at {url} exceeds the archive size limit")
                content_type = response.headers.get("content-type", "application/octet-stream")
                async for chunk in response.aiter_bytes(CHUNK_SIZE):
                    body.extend(chunk)
                    if len(body) > self._max_file_size:
                        raise ArchiveError(f"Original at {url} exceeds the archive size limit")
        except httpx.HTTPError as exc:
            raise ArchiveError(f"Could not download {url}: {exc}") from exc
        return bytes(body), content_type

    async def archive(self, catalog: CatalogClientProtocol, shop: str, media: MediaNode) -> str:
        if not media.url:
            raise ArchiveError(f"Media {media.id} has no source URL to archive")
        body, content_type = await self._download(media.url)
        key = self.object_key(shop, media)
        try:
            async with self._session.client("s3", endpoint_url=self._endpoint_url) as s3_client:
                await s3_client.put_object(
                    Bucket=self._bucket, Key=key, Body=body, ContentType=content_type
                )
        except Exception as exc:  # noqa: BLE001
            raise ArchiveError(f"Could not store {media.id} in s3://{self._bucket}/{key}: {exc}") from exc
        logger.debug(f"Archived {media.id} to s3://{self._bucket}/{key}")
        return f"{self._public_base_url}/{key}"
