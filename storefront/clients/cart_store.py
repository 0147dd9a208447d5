# storefront/clients/cart_store.py
"""Cart Store port and its HTTP implementation (`/users/cart`)."""

from __future__ import annotations

from decimal import Decimal
from typing import Any, Protocol

import httpx
from pydantic import ValidationError

from storefront.clients.api import request_json
from storefront.clients.catalog_store import CatalogStore
from storefront.core.errors import CartStoreError
from storefront.schemas.cart import CartItemCreate, CartLineItem, CouponResult


class CartStore(Protocol):
    """
    Server-persisted cart of the authenticated user.

    Mutations return the authoritative cart when the server sends one, or
    None when it only acknowledges.
    """

    async def get_cart(self) -> list[CartLineItem]: ...

    async def add_item(self, payload: CartItemCreate) -> list[CartLineItem] | None: ...

    async def update_item(self, item_id: str, quantity: int) -> list[CartLineItem] | None: ...

    async def remove_item(self, item_id: str) -> None: ...

    async def clear_cart(self) -> None: ...

    async def apply_coupon(self, code: str) -> CouponResult: ...

    async def remove_coupon(self) -> None: ...


class HttpCartStore:
    """
    Cart Store backed by the user cart endpoints.

    Cart rows normally embed a product snapshot. Rows that only carry a
    product id are resolved through `catalog` when one is given.
    """

    BASE_PATH = "/users/cart"

    def __init__(self, client: httpx.AsyncClient, catalog: CatalogStore | None = None):
        self._client = client
        self._catalog = catalog

    async def _request(self, method: str, path: str, default_message: str, json: Any = None) -> Any:
        return await request_json(
            self._client,
            method,
            path,
            error_cls=CartStoreError,
            default_message=default_message,
            json=json,
        )

    async def _parse_cart(self, payload: Any) -> list[CartLineItem] | None:
        if isinstance(payload, dict):
            if "cart" not in payload:
                return None
            payload = payload["cart"]
        if payload is None:
            return None
        if not isinstance(payload, list):
            raise CartStoreError("Malformed cart response")

        items: list[CartLineItem] = []
        for raw in payload:
            if not isinstance(raw, dict):
                raise CartStoreError("Malformed cart item")
            product = raw.get("product")
            if isinstance(product, str):
                if self._catalog is None:
                    raise CartStoreError(f"Cart item references product {product} without a snapshot")
                product = await self._catalog.get_product(product)
            try:
                items.append(CartLineItem.model_validate({**raw, "product": product}))
            except ValidationError as e:
                raise CartStoreError(f"Malformed cart item: {e.error_count()} errors") from e
        return items

    async def get_cart(self) -> list[CartLineItem]:
        payload = await self._request("GET", self.BASE_PATH, "Failed to fetch cart")
        return await self._parse_cart(payload) or []

    async def add_item(self, payload: CartItemCreate) -> list[CartLineItem] | None:
        body = await self._request("POST", self.BASE_PATH, "Failed to add item to cart", json=payload.to_wire())
        return await self._parse_cart(body)

    async def update_item(self, item_id: str, quantity: int) -> list[CartLineItem] | None:
        body = await self._request(
            "PUT",
            f"{self.BASE_PATH}/{item_id}",
            "Failed to update cart item",
            json={"quantity": quantity},
        )
        return await self._parse_cart(body)

    async def remove_item(self, item_id: str) -> None:
        await self._request("DELETE", f"{self.BASE_PATH}/{item_id}", "Failed to remove item from cart")

    async def clear_cart(self) -> None:
        await self._request("DELETE", self.BASE_PATH, "Failed to clear cart")

    async def apply_coupon(self, code: str) -> CouponResult:
        body = await self._request(
            "POST",
            f"{self.BASE_PATH}/coupon",
            "Failed to apply coupon",
            json={"couponCode": code},
        )
        body = body if isinstance(body, dict) else {}
        try:
            return CouponResult(
                coupon_code=body.get("couponCode") or code,
                discount=Decimal(str(body.get("discount") or 0)),
            )
        except (ArithmeticError, ValidationError) as e:
            raise CartStoreError("Malformed coupon response") from e

    async def remove_coupon(self) -> None:
        await self._request("DELETE", f"{self.BASE_PATH}/coupon", "Failed to remove coupon")
