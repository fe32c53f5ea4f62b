"""Streaming fetch, validate and re-encode of a single product image."""

import asyncio
import hashlib
import io
import re
from tempfile import SpooledTemporaryFile
from typing import IO, Optional, Tuple, Union

import httpx
from PIL import Image, UnidentifiedImageError

from .compositor import LayerCompositor
from .config import WorkerConfig
from .exceptions import ImageProcessingError, ImageValidationError
from .image_utils import SUPPORTED_FORMATS, normalize_format
from .logging_config import get_logger
from .models import FORMAT_EXTENSIONS, ImageMetadata
from .observability import MetricsCollector, timed_stage

CHUNK_SIZE = 64 * 1024
SPOOL_MAX_MEMORY = 2 * 1024 * 1024

_CONTENT_RANGE_TOTAL = re.compile(r"/(\d+)\s*$")

logger = get_logger("fetch")


class EncodedImage:
    """
    Composited output held in a spooled temporary file.

    Small results stay in memory, large ones spill to disk. Uploads hand
    the rewound ``file`` to a multipart encoder.
    """

    def __init__(
        self,
        file: IO[bytes],
        metadata: ImageMetadata,
        source_hash: str,
        source_size: int,
        filename: str = "watermarked",
    ):
        self.file = file
        self.metadata = metadata
        self.source_hash = source_hash
        self.source_size = source_size
        self.filename = f"{filename}.{FORMAT_EXTENSIONS[metadata.format]}"

    @property
    def mime_type(self) -> str:
        return self.metadata.mime_type

    @property
    def size(self) -> int:
        position = self.file.tell()
        self.file.seek(0, io.SEEK_END)
        size = self.file.tell()
        self.file.seek(position)
        return size

    def rewind(self) -> IO[bytes]:
        self.file.seek(0)
        return self.file

    def read(self) -> bytes:
        return self.rewind().read()

    def close(self) -> None:
        self.file.close()

    def __enter__(self) -> "EncodedImage":
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        self.close()


def parse_image_header(data: Union[bytes, IO[bytes]]) -> Optional[ImageMetadata]:
    """Read dimensions and format from leading bytes, or None if incomplete."""
    fp = io.BytesIO(data) if isinstance(data, (bytes, bytearray)) else data
    try:
        with Image.open(fp) as image:
            return ImageMetadata(
                width=image.width,
                height=image.height,
                format=normalize_format(image.format),
            )
    except (UnidentifiedImageError, OSError, SyntaxError, ValueError):
        return None


def total_size_from_headers(response: httpx.Response) -> Optional[int]:
    """Full resource size from Content-Range (206) or Content-Length (200)."""
    if response.status_code == 206:
        match = _CONTENT_RANGE_TOTAL.search(response.headers.get("content-range", ""))
        return int(match.group(1)) if match else None
    length = response.headers.get("content-length")
    return int(length) if length and length.isdigit() else None


class ImageFetchPipeline:
    """
    ``process(url)`` downloads one source image, validates it, composites
    the watermark in a worker thread and returns an ``EncodedImage``.

    Peak memory is one image: the source spools to a temporary file while
    it is hashed, and the encoder writes into another.
    """

    def __init__(
        self,
        http_client: httpx.AsyncClient,
        config: WorkerConfig,
        compositor: Optional[LayerCompositor] = None,
        metrics_collector: Optional[MetricsCollector] = None,
    ):
        self._http = http_client
        self._config = config
        self.compositor = compositor
        self._metrics = metrics_collector

    def validate(self, metadata: ImageMetadata) -> None:
        cfg = self._config
        if metadata.format not in SUPPORTED_FORMATS:
            raise ImageValidationError(f"Unsupported image format: {metadata.format}")
        for label, value in (("width", metadata.width), ("height", metadata.height)):
            if value < cfg.min_dimension:
                raise ImageValidationError(
                    f"Image {label} {value}px is below the minimum of {cfg.min_dimension}px"
                )
            if value > cfg.max_dimension:
                raise ImageValidationError(
                    f"Image {label} {value}px exceeds the maximum of {cfg.max_dimension}px"
                )

    def _check_size(self, size: Optional[int]) -> None:
        if size is not None and size > self._config.max_file_size:
            raise ImageValidationError(
                f"Image is {size} bytes, larger than the {self._config.max_file_size} byte limit"
            )

    async def read_header(self, url: str) -> Optional[ImageMetadata]:
        """
        Fetch a leading byte range and parse the container header.

        Returns None when the header cannot be parsed from the range. Servers
        that ignore ``Range`` answer 200; only the first bytes are read before
        the connection is released.
        """
        limit = self._config.header_bytes
        headers = {"Range": f"bytes=0-{limit - 1}"}
        async with self._http.stream("GET", url, headers=headers) as response:
            if response.status_code not in (200, 206):
                return None
            self._check_size(total_size_from_headers(response))
            head = bytearray()
            async for chunk in response.aiter_bytes():
                head.extend(chunk)
                if len(head) >= limit:
                    break
        metadata = parse_image_header(bytes(head[:limit]))
        if metadata is None:
            logger.debug(f"Header read inconclusive for {url}; using full fetch")
        return metadata

    async def download(self, url: str, sink: IO[bytes]) -> Tuple[str, int]:
        """Stream ``url`` into ``sink``. Returns (sha256 hex, byte count)."""
        digest = hashlib.sha256()
        received = 0
        async with self._http.stream("GET", url) as response:
            if response.status_code != 200:
                raise ImageProcessingError(
                    f"Download of {url} failed with HTTP {response.status_code}"
                )
            self._check_size(total_size_from_headers(response))
            async for chunk in response.aiter_bytes(CHUNK_SIZE):
                received += len(chunk)
                self._check_size(received)
                digest.update(chunk)
                sink.write(chunk)
        sink.seek(0)
        return digest.hexdigest(), received

    async def fetch_bytes(self, url: str) -> bytes:
        """Small whole-body download with the size limit, used for the logo."""
        buffer = io.BytesIO()
        await self._bounded(self.download(url, buffer), url)
        return buffer.getvalue()

    async def _bounded(self, awaitable, url: str):
        try:
            return await asyncio.wait_for(awaitable, timeout=self._config.download_timeout)
        except asyncio.TimeoutError as exc:
            raise ImageProcessingError(
                f"Download of {url} exceeded {self._config.download_timeout}s"
            ) from exc
        except httpx.HTTPError as exc:
            raise ImageProcessingError(f"Download of {url} failed: {exc}") from exc

    async def process(self, url: str, filename: str = "watermarked") -> EncodedImage:
        if self.compositor is None:
            raise ImageProcessingError("No compositor configured for this pipeline")
        source = SpooledTemporaryFile(max_size=SPOOL_MAX_MEMORY)
        output = SpooledTemporaryFile(max_size=SPOOL_MAX_MEMORY)
        try:
            async with timed_stage("download", self._metrics, url=url):
                header = await self._bounded(self.read_header(url), url)
                if header is not None:
                    self.validate(header)
                source_hash, source_size = await self._bounded(self.download(url, source), url)

            metadata = header or parse_image_header(source)
            source.seek(0)
            if metadata is None:
                raise ImageValidationError(f"Unrecognized image data at {url}")
            self.validate(metadata)

            async with timed_stage("composite", self._metrics, url=url):
                encoded_metadata = await asyncio.to_thread(
                    self.compositor.composite_to, source, output
                )
            output.seek(0)
        except BaseException:
            output.close()
            raise
        finally:
            source.close()

        return EncodedImage(
            output,
            encoded_metadata,
            source_hash,
            source_size,
            filename=filename,
        )
