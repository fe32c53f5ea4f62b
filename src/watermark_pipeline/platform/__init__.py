"""Commerce platform API access."""

from .client import ShopifyCatalogClient

__all__ = ["ShopifyCatalogClient"]
