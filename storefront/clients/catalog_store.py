# storefront/clients/catalog_store.py
"""Catalog Store port, its HTTP implementation and the product list cache."""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from typing import Any, Callable, Mapping, Protocol

import httpx
from pydantic import ValidationError

from storefront.clients.api import request_json
from storefront.core.errors import CatalogStoreError
from storefront.schemas.product import Product

logger = logging.getLogger(__name__)


class CatalogStore(Protocol):
    async def get_product(self, product_id: str) -> Product: ...

    async def list_products(self, filters: Mapping[str, Any] | None = None) -> list[Product]: ...


def _parse_product(raw: Any) -> Product:
    try:
        return Product.model_validate(raw)
    except ValidationError as e:
        raise CatalogStoreError(f"Malformed product record: {e.error_count()} errors") from e


class HttpCatalogStore:
    """Catalog Store backed by the `/products` endpoints."""

    def __init__(self, client: httpx.AsyncClient):
        self._client = client

    async def get_product(self, product_id: str) -> Product:
        payload = await request_json(
            self._client,
            "GET",
            f"/products/{product_id}",
            error_cls=CatalogStoreError,
            default_message="Failed to fetch product",
        )
        if isinstance(payload, dict) and "product" in payload:
            payload = payload["product"]
        return _parse_product(payload)

    async def list_products(self, filters: Mapping[str, Any] | None = None) -> list[Product]:
        # empty values are not sent, matching the storefront query builder
        params = {k: v for k, v in (filters or {}).items() if v not in ("", None)}
        payload = await request_json(
            self._client,
            "GET",
            "/products",
            error_cls=CatalogStoreError,
            default_message="Failed to fetch products",
            params=params,
        )
        if isinstance(payload, dict):
            payload = payload.get("products", [])
        if not isinstance(payload, list):
            raise CatalogStoreError("Malformed product list")
        return [_parse_product(raw) for raw in payload]


@dataclass
class CatalogCache:
    """Time-boxed product list, filled only for unfiltered listings."""

    value: list[Product] | None = None
    timestamp: float | None = None
    ttl: float = 300.0

    def get(self, now: float) -> list[Product] | None:
        if self.value is None or self.timestamp is None:
            return None
        if now - self.timestamp >= self.ttl:
            return None
        return list(self.value)

    def put(self, value: list[Product], now: float) -> None:
        self.value = list(value)
        self.timestamp = now

    def invalidate(self) -> None:
        self.value = None
        self.timestamp = None


class CachedCatalogStore:
    """
    Wraps a CatalogStore with a CatalogCache.

    Call `invalidate()` after anything that changes catalog data.
    """

    def __init__(
        self,
        inner: CatalogStore,
        cache: CatalogCache | None = None,
        *,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.inner = inner
        self.cache = cache or CatalogCache()
        self._clock = clock

    async def get_product(self, product_id: str) -> Product:
        return await self.inner.get_product(product_id)

    async def list_products(self, filters: Mapping[str, Any] | None = None) -> list[Product]:
        if filters:
            return await self.inner.list_products(filters)

        cached = self.cache.get(self._clock())
        if cached is not None:
            logger.debug(f"Product list served from cache ({len(cached)} products)")
            return cached

        products = await self.inner.list_products(None)
        self.cache.put(products, self._clock())
        return products

    def invalidate(self) -> None:
        self.cache.invalidate()
