"""Async client for the commerce platform's GraphQL admin API."""

from typing import Any, Dict, List, Optional, Sequence, Tuple

import httpx

from ..core.error_handling import retry_transient
from ..core.exceptions import PlatformError, PlatformUserError, TransientPlatformError, UploadError
from ..core.logging_config import get_logger
from ..core.models import MediaNode, ProductPage, ProductSnapshot, StagedTarget, VariantRef
from . import graphql

ACCESS_TOKEN_HEADER = "X-Shopify-Access-Token"
RETRYABLE_STATUS_CODES = {429, 500, 502, 503, 504}

logger = get_logger("platform")


def _retry_after(response: httpx.Response) -> Optional[float]:
    value = response.headers.get("retry-after")
    try:
        return float(value) if value is not None else None
    except ValueError:
        return None


def _check_user_errors(operation: str, payload: Optional[Dict[str, Any]]) -> Dict[str, Any]:
    if payload is None:
        raise PlatformError(f"{operation} returned no payload")
    errors = (payload.get("userErrors") or []) + (payload.get("mediaUserErrors") or [])
    if errors:
        raise PlatformUserError(operation, errors)
    return payload


def _edges(connection: Optional[Dict[str, Any]]) -> List[Dict[str, Any]]:
    if not connection:
        return []
    return [edge["node"] for edge in connection.get("edges", []) if edge.get("node")]


def _media_node(node: Dict[str, Any]) -> MediaNode:
    return MediaNode(
        id=node["id"],
        url=(node.get("image") or {}).get("url"),
        content_type=node.get("mediaContentType") or "IMAGE",
        status=node.get("status") or "UPLOADED",
        alt=node.get("alt") or "",
    )


def _product_page(connection: Dict[str, Any]) -> ProductPage:
    page_info = connection.get("pageInfo") or {}
    return ProductPage(
        product_ids=[node["id"] for node in _edges(connection)],
        has_next_page=bool(page_info.get("hasNextPage")),
        end_cursor=page_info.get("endCursor"),
    )


class ShopifyCatalogClient:
    """
    Catalog operations for one shop.

    Every call goes through ``execute``: HTTP 429 and 5xx, transport errors
    and THROTTLED responses raise ``TransientPlatformError`` and are retried
    with backoff; other GraphQL errors raise ``PlatformError``.
    """

    def __init__(
        self,
        shop: str,
        access_token: str,
        http_client: httpx.AsyncClient,
        api_version: str = "2024-10",
        upload_timeout: float = 120.0,
    ):
        self.shop = shop
        self._endpoint = f"https://{shop}/admin/api/{api_version}/graphql.json"
        self._token = access_token
        self._http = http_client
        self._upload_timeout = upload_timeout

    @retry_transient(max_attempts=4, initial_delay=1.0, backoff_factor=2.0)
    async def execute(self, query: str, variables: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        try:
            response = await self._http.post(
                self._endpoint,
                json={"query": query, "variables": variables or {}},
                headers={ACCESS_TOKEN_HEADER: self._token},
            )
        except (httpx.TimeoutException, httpx.TransportError) as exc:
            raise TransientPlatformError(f"Platform request failed: {exc}") from exc

        if response.status_code in RETRYABLE_STATUS_CODES:
            raise TransientPlatformError(
                f"Platform returned HTTP {response.status_code}",
                retry_after=_retry_after(response),
            )
        if response.status_code >= 400:
            raise PlatformError(f"Platform returned HTTP {response.status_code}: {response.text[:200]}")

        body = response.json()
        errors = body.get("errors")
        if errors:
            codes = {(e.get("extensions") or {}).get("code") for e in errors if isinstance(e, dict)}
            if "THROTTLED" in codes:
                raise TransientPlatformError("Platform throttled the request")
            raise PlatformError(f"GraphQL errors: {errors}")
        return body.get("data") or {}

    # Listing

    async def list_products(self, cursor: Optional[str] = None) -> ProductPage:
        data = await self.execute(graphql.LIST_PRODUCTS, {"cursor": cursor})
        return _product_page(data.get("products") or {})

    async def list_collection_products(
        self, collection_id: str, cursor: Optional[str] = None
    ) -> ProductPage:
        data = await self.execute(
            graphql.LIST_COLLECTION_PRODUCTS,
            {"collectionId": collection_id, "cursor": cursor},
        )
        collection = data.get("collection")
        if collection is None:
            raise PlatformError(f"Collection {collection_id} not found")
        return _product_page(collection.get("products") or {})

    async def get_product(self, product_id: str) -> Optional[ProductSnapshot]:
        data = await self.execute(graphql.GET_PRODUCT, {"id": product_id})
        product = data.get("product")
        if product is None:
            return None
        return ProductSnapshot(
            id=product["id"],
            title=product.get("title") or "",
            featured_media_id=(product.get("featuredMedia") or {}).get("id"),
            media=[_media_node(node) for node in _edges(product.get("media"))],
            variants=[
                VariantRef(id=v["id"], media_ids=[m["id"] for m in _edges(v.get("media"))])
                for v in _edges(product.get("variants"))
            ],
        )

    # Staged uploads

    async def create_staged_uploads(self, uploads: Sequence[Dict[str, Any]]) -> List[StagedTarget]:
        data = await self.execute(
            graphql.STAGED_UPLOADS_CREATE,
            {
                "input": [
                    {
                        "filename": u["filename"],
                        "mimeType": u["mime_type"],
                        "fileSize": str(u["file_size"]),
                        "resource": "IMAGE",
                        "httpMethod": "POST",
                    }
                    for u in uploads
                ]
            },
        )
        payload = _check_user_errors("stagedUploadsCreate", data.get("stagedUploadsCreate"))
        return [
            StagedTarget(
                url=t["url"],
                resource_url=t["resourceUrl"],
                parameters=[(p["name"], p["value"]) for p in t.get("parameters") or []],
            )
            for t in payload.get("stagedTargets") or []
        ]

    async def upload_to_target(self, target: StagedTarget, encoded: Any) -> None:
        """
        POST the encoded file as multipart form data.

        Target parameters are sent first, in the order issued, and the file
        part last.
        """
        fields = {name: value for name, value in target.parameters}
        response = await self._http.post(
            target.url,
            data=fields,
            files={"file": (encoded.filename, encoded.rewind(), encoded.mime_type)},
            timeout=self._upload_timeout,
        )
        if response.status_code >= 300:
            raise UploadError(
                f"Staged upload returned HTTP {response.status_code}: {response.text[:200]}"
            )

    # Product media

    async def create_product_media(
        self, product_id: str, media: Sequence[Dict[str, Any]]
    ) -> List[MediaNode]:
        data = await self.execute(
            graphql.PRODUCT_CREATE_MEDIA,
            {
                "productId": product_id,
                "media": [
                    {
                        "originalSource": m["original_source"],
                        "alt": m.get("alt", ""),
                        "mediaContentType": "IMAGE",
                    }
                    for m in media
                ],
            },
        )
        payload = _check_user_errors("productCreateMedia", data.get("productCreateMedia"))
        return [_media_node(node) for node in payload.get("media") or []]

    async def delete_product_media(self, product_id: str, media_ids: Sequence[str]) -> List[str]:
        data = await self.execute(
            graphql.PRODUCT_DELETE_MEDIA,
            {"productId": product_id, "mediaIds": list(media_ids)},
        )
        payload = _check_user_errors("productDeleteMedia", data.get("productDeleteMedia"))
        return list(payload.get("deletedMediaIds") or [])

    async def reorder_product_media(self, product_id: str, moves: Sequence[Tuple[str, int]]) -> None:
        data = await self.execute(
            graphql.PRODUCT_REORDER_MEDIA,
            {
                "id": product_id,
                "moves": [{"id": media_id, "newPosition": str(position)} for media_id, position in moves],
            },
        )
        _check_user_errors("productReorderMedia", data.get("productReorderMedia"))

    async def update_variant_media(self, product_id: str, assignments: Sequence[Tuple[str, str]]) -> None:
        data = await self.execute(
            graphql.PRODUCT_VARIANTS_BULK_UPDATE,
            {
                "productId": product_id,
                "variants": [{"id": variant_id, "mediaId": media_id} for variant_id, media_id in assignments],
            },
        )
        _check_user_errors("productVariantsBulkUpdate", data.get("productVariantsBulkUpdate"))

    # Files

    async def create_file(self, original_source: str, alt: str = "") -> str:
        data = await self.execute(
            graphql.FILE_CREATE,
            {"files": [{"originalSource": original_source, "alt": alt, "contentType": "IMAGE"}]},
        )
        payload = _check_user_errors("fileCreate", data.get("fileCreate"))
        files = payload.get("files") or []
        if not files:
            raise PlatformError("fileCreate returned no file")
        return files[0]["id"]

    async def resolve_file_reference(self, media_id: str) -> Optional[str]:
        if "/File/" in media_id:
            return media_id
        data = await self.execute(graphql.GET_FILE_REFERENCE, {"id": media_id})
        node = data.get("node")
        if not node or "fileStatus" not in node:
            logger.debug(f"Media {media_id} is not backed by a library file")
            return None
        return node["id"]

    async def _update_file_references(self, file_id: str, key: str, product_id: str) -> None:
        data = await self.execute(graphql.FILE_UPDATE, {"files": [{"id": file_id, key: [product_id]}]})
        _check_user_errors("fileUpdate", data.get("fileUpdate"))

    async def attach_file(self, file_id: str, product_id: str) -> None:
        await self._update_file_references(file_id, "referencesToAdd", product_id)
        logger.debug(f"Attached file {file_id} to {product_id}")

    async def detach_file(self, file_id: str, product_id: str) -> None:
        await self._update_file_references(file_id, "referencesToRemove", product_id)
        logger.debug(f"Detached file {file_id} from {product_id}")

    # Status

    async def get_media_status(self, media_id: str) -> Optional[str]:
        data = await self.execute(graphql.GET_MEDIA_STATUS, {"id": media_id})
        node = data.get("node")
        return node.get("status") if node else None

    async def get_file_status(self, file_id: str) -> Optional[str]:
        data = await self.execute(graphql.GET_FILE_STATUS, {"id": file_id})
        node = data.get("node")
        return node.get("fileStatus") if node else None
