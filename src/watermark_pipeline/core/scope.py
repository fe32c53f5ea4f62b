"""Expansion of a job scope into concrete product ids."""

from dataclasses import dataclass
from typing import Any, List, Optional

from .exceptions import ScopeResolutionError
from .logging_config import get_logger
from .models import ScopeType
from .protocols import CatalogClientProtocol

DEFAULT_MAX_PRODUCTS = 5000

logger = get_logger("scope")


@dataclass
class ResolvedScope:
    product_ids: List[str]
    truncated: bool = False

    def __len__(self) -> int:
        return len(self.product_ids)


def manual_product_ids(scope_value: Any) -> List[str]:
    """Manual scopes are a list of ids or a comma separated string."""
    if scope_value is None:
        return []
    if isinstance(scope_value, str):
        return [p.strip() for p in scope_value.split(",") if p.strip()]
    if isinstance(scope_value, (list, tuple)):
        return [str(p) for p in scope_value]
    raise ScopeResolutionError(f"Unsupported manual scope value: {scope_value!r}")


class ScopeResolver:
    """
    Resolves all / collection / manual scopes.

    Catalog and collection listings are paginated by cursor and stop at
    ``max_products``. Hitting the cap truncates the list and sets
    ``ResolvedScope.truncated`` so callers can surface it. A failing page
    aborts the whole resolution.
    """

    def __init__(self, catalog: CatalogClientProtocol, max_products: int = DEFAULT_MAX_PRODUCTS):
        self._catalog = catalog
        self._max_products = max_products

    async def resolve(self, scope_type: ScopeType, scope_value: Any = None) -> ResolvedScope:
        scope_type = ScopeType(scope_type)
        if scope_type is ScopeType.MANUAL:
            return ResolvedScope(manual_product_ids(scope_value))

        if scope_type is ScopeType.COLLECTION:
            if not scope_value:
                raise ScopeResolutionError("Collection scope requires a collection id")
            collection_id = str(scope_value)

            async def fetch_page(cursor: Optional[str]):
                return await self._catalog.list_collection_products(collection_id, cursor)
        else:

            async def fetch_page(cursor: Optional[str]):
                return await self._catalog.list_products(cursor)

        return await self._paginate(fetch_page, scope_type)

    async def resolve_product_ids(self, scope_type: ScopeType, scope_value: Any = None) -> List[str]:
        return (await self.resolve(scope_type, scope_value)).product_ids

    async def _paginate(self, fetch_page, scope_type: ScopeType) -> ResolvedScope:
        product_ids: List[str] = []
        cursor: Optional[str] = None
        pages = 0
        while True:
            page = await fetch_page(cursor)
            pages += 1
            product_ids.extend(page.product_ids)
            if len(product_ids) >= self._max_products:
                truncated = len(product_ids) > self._max_products or page.has_next_page
                if truncated:
                    logger.warning(
                        f"Scope {scope_type.value} truncated at {self._max_products} products "
                        f"after {pages} page(s)"
                    )
                return ResolvedScope(product_ids[: self._max_products], truncated=truncated)
            if not page.has_next_page:
                break
            cursor = page.end_cursor

        logger.info(f"Resolved {len(product_ids)} product(s) for scope {scope_type.value} in {pages} page(s)")
        return ResolvedScope(product_ids)
