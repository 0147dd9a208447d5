"""Pytest fixtures: product factory, in-memory Cart Store and local storage."""

import asyncio
from decimal import Decimal
from typing import Any

import pytest

from storefront.core.errors import CartStoreError
from storefront.repositories.local_store import InMemoryKeyValueStore
from storefront.schemas.cart import CartItemCreate, CartLineItem, CouponResult
from storefront.schemas.product import Product
from storefront.services.cart_engine import CartEngine


def make_product(product_id: str = "p1", **fields: Any) -> Product:
    raw: dict[str, Any] = {"_id": product_id, "name": f"Product {product_id}", "price": 1000}
    raw.update(fields)
    return Product.model_validate(raw)


async def settle(rounds: int = 10) -> None:
    """Let scheduled tasks run until they block."""
    for _ in range(rounds):
        await asyncio.sleep(0)


class FakeCartStore:
    """
    In-memory Cart Store.

    - `gates[name]`: an asyncio.Event the named call waits on before running
    - `fail_next[name]`: an error raised by the next call of that name
    - `held[name]`: an asyncio.Event the named call waits on after the change
      is applied and the reply is built, so the reply can arrive late
    - `empty_add_response`: answer adds with an empty cart (stale read)
    """

    def __init__(self, products: list[Product] | None = None):
        self.products = {p.id: p for p in products or []}
        self.lines: list[CartLineItem] = []
        self.calls: list[tuple] = []
        self.gates: dict[str, asyncio.Event] = {}
        self.held: dict[str, asyncio.Event] = {}
        self.fail_next: dict[str, CartStoreError] = {}
        self.empty_add_response = False
        self.coupons = {"SAVE300": Decimal("300")}
        self._next_id = 0

    def seed(self, product: Product, quantity: int, size=None, color=None) -> CartLineItem:
        self.products[product.id] = product
        self._next_id += 1
        line = CartLineItem(
            id=f"srv{self._next_id}",
            product=product,
            quantity=quantity,
            size=size,
            color=color,
        )
        self.lines.append(line)
        return line

    async def _enter(self, name: str, *args: Any) -> None:
        self.calls.append((name, *args))
        gate = self.gates.get(name)
        if gate is not None:
            await gate.wait()
        error = self.fail_next.pop(name, None)
        if error is not None:
            raise error

    async def _leave(self, name: str) -> None:
        event = self.held.get(name)
        if event is not None:
            await event.wait()

    def calls_to(self, name: str) -> list[tuple]:
        return [c for c in self.calls if c[0] == name]

    async def get_cart(self) -> list[CartLineItem]:
        await self._enter("get_cart")
        snapshot = list(self.lines)
        await self._leave("get_cart")
        return snapshot

    async def add_item(self, payload: CartItemCreate) -> list[CartLineItem] | None:
        await self._enter("add_item", payload.product_id, payload.quantity)
        key = (payload.product_id, payload.size, payload.color)
        for i, line in enumerate(self.lines):
            if line.key == key:
                self.lines[i] = line.model_copy(update={"quantity": line.quantity + payload.quantity})
                break
        else:
            self.seed(self.products[payload.product_id], payload.quantity, payload.size, payload.color)
        snapshot = [] if self.empty_add_response else list(self.lines)
        await self._leave("add_item")
        return snapshot

    async def update_item(self, item_id: str, quantity: int) -> list[CartLineItem] | None:
        await self._enter("update_item", item_id, quantity)
        for i, line in enumerate(self.lines):
            if line.id == item_id:
                self.lines[i] = line.model_copy(update={"quantity": quantity})
                return None
        raise CartStoreError("Cart item not found", status_code=404)

    async def remove_item(self, item_id: str) -> None:
        await self._enter("remove_item", item_id)
        self.lines = [line for line in self.lines if line.id != item_id]

    async def clear_cart(self) -> None:
        await self._enter("clear_cart")
        self.lines = []

    async def apply_coupon(self, code: str) -> CouponResult:
        await self._enter("apply_coupon", code)
        if code not in self.coupons:
            raise CartStoreError("Invalid coupon code", status_code=400)
        return CouponResult(coupon_code=code, discount=self.coupons[code])

    async def remove_coupon(self) -> None:
        await self._enter("remove_coupon")


@pytest.fixture()
def tee() -> Product:
    """T-shirt with per-size stock and a color choice."""
    return make_product(
        "tee",
        price=1000,
        sizes=[{"size": "M", "stock": 5}, {"size": "L", "stock": 10}],
        colors=[{"name": "Red", "hex": "#f00"}, "Blue"],
    )


@pytest.fixture()
def cap() -> Product:
    """Cap without sizes or colors, sold against total stock."""
    return make_product("cap", price=300, totalStock=4)


@pytest.fixture()
def store(tee: Product, cap: Product) -> FakeCartStore:
    return FakeCartStore([tee, cap])


@pytest.fixture()
def engine(store: FakeCartStore) -> CartEngine:
    return CartEngine(store)


@pytest.fixture()
def storage() -> InMemoryKeyValueStore:
    return InMemoryKeyValueStore()
