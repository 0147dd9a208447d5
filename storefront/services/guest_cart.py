# storefront/services/guest_cart.py
import logging
import uuid
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Iterable

from pydantic import ValidationError

from storefront.core.errors import LineItemNotFound
from storefront.repositories.local_store import KeyValueStore
from storefront.schemas.cart import CartLineItem, CartTotals, VariantKey
from storefront.schemas.product import Product
from storefront.services.pricing import PricingPolicy, compute_totals
from storefront.services.stock import purchasable_stock
from storefront.services.variant_guard import check_quantity, check_variant

logger = logging.getLogger(__name__)

DEFAULT_GUEST_CART_KEY = "capersports_guest_cart"


def merge_carts(
    guest_items: Iterable[CartLineItem],
    server_items: Iterable[CartLineItem],
) -> list[CartLineItem]:
    """
    Merge a guest cart into the server cart at login.

    Policy:
      - union by (product_id, size, color)
      - quantities for the same tuple are summed
      - the server line keeps its id and product snapshot (fresher stock)
      - each line is clamped to live stock; lines with no stock are dropped
      - server lines keep their order, guest-only lines follow by added_at
    """
    merged: dict[VariantKey, CartLineItem] = {}

    def accumulate(item: CartLineItem) -> None:
        existing = merged.get(item.key)
        if existing is None:
            merged[item.key] = item
        else:
            merged[item.key] = existing.model_copy(
                update={"quantity": existing.quantity + item.quantity}
            )

    for item in server_items:
        accumulate(item)
    for item in sorted(guest_items, key=lambda i: i.added_at):
        accumulate(item)

    result: list[CartLineItem] = []
    for item in merged.values():
        live = purchasable_stock(item.product, item.size)
        quantity = min(item.quantity, live)
        if quantity < 1:
            logger.info(f"Dropping {item.key} from merged cart: no stock left")
            continue
        if quantity != item.quantity:
            logger.info(f"Clamping {item.key} from {item.quantity} to {quantity} (live stock)")
            item = item.model_copy(update={"quantity": quantity})
        result.append(item)
    return result


class GuestCart:
    """
    Cart of an unauthenticated session, kept entirely in local storage.

    Same line item model, guard and price calculator as the server-backed
    cart, but every operation is synchronous and there is no
    optimistic/confirmed distinction. The whole cart is rewritten to
    storage on every mutation.
    """

    def __init__(
        self,
        storage: KeyValueStore,
        *,
        key: str = DEFAULT_GUEST_CART_KEY,
        policy: PricingPolicy | None = None,
    ):
        self._storage = storage
        self._key = key
        self._policy = policy
        self._discount = Decimal("0")
        self._items: list[CartLineItem] = self._load()
        self._totals = self._recompute()

    # ---- internal helpers ----

    def _load(self) -> list[CartLineItem]:
        data = self._storage.get(self._key)
        if not isinstance(data, dict):
            return []

        try:
            self._discount = Decimal(str(data.get("discount") or 0))
        except ArithmeticError:
            self._discount = Decimal("0")

        items: list[CartLineItem] = []
        for raw in data.get("items") or []:
            try:
                items.append(CartLineItem.model_validate(raw))
            except ValidationError as e:
                logger.error(f"Skipping unreadable guest cart item: {e.error_count()} errors")
        return items

    def _save(self) -> None:
        document: dict[str, Any] = {
            "items": [item.model_dump(mode="json") for item in self._items],
            "discount": str(self._discount),
        }
        self._storage.set(self._key, document)

    def _recompute(self) -> CartTotals:
        return compute_totals(self._items, self._discount, policy=self._policy)

    def _commit(self, items: list[CartLineItem]) -> None:
        self._items = items
        self._totals = self._recompute()
        self._save()

    def _index_of(self, line_item_id: str) -> int:
        for i, item in enumerate(self._items):
            if item.id == line_item_id:
                return i
        raise LineItemNotFound(line_item_id)

    # ---- reads ----

    @property
    def items(self) -> list[CartLineItem]:
        return list(self._items)

    @property
    def totals(self) -> CartTotals:
        return self._totals

    @property
    def discount(self) -> Decimal:
        return self._discount

    # ---- mutations ----

    def add_item(
        self,
        product: Product,
        quantity: int = 1,
        size: str | None = None,
        color: str | None = None,
    ) -> CartLineItem:
        """
        Add a product variant, merging into the existing line for the same
        (product, size, color).
        """
        selection = check_variant(product, quantity, size, color)
        key = (product.id, selection.size, selection.color)

        items = list(self._items)
        for i, item in enumerate(items):
            if item.key == key:
                check_variant(
                    product,
                    quantity,
                    selection.size,
                    selection.color,
                    in_cart=item.quantity,
                )
                line = item.model_copy(update={"quantity": item.quantity + quantity})
                items[i] = line
                break
        else:
            line = CartLineItem(
                id=uuid.uuid4().hex,
                product=product,
                quantity=quantity,
                size=selection.size,
                color=selection.color,
                added_at=datetime.now(timezone.utc),
            )
            items.append(line)

        self._commit(items)
        return line

    def update_quantity(self, line_item_id: str, quantity: int) -> CartLineItem:
        idx = self._index_of(line_item_id)
        item = self._items[idx]
        check_quantity(quantity, purchasable_stock(item.product, item.size))

        items = list(self._items)
        items[idx] = item.model_copy(update={"quantity": quantity})
        self._commit(items)
        return items[idx]

    def remove_item(self, line_item_id: str) -> None:
        self._commit([item for item in self._items if item.id != line_item_id])

    def discard(self, key: VariantKey) -> None:
        """Drop the line for a (product, size, color) tuple, if any."""
        self._commit([item for item in self._items if item.key != key])

    def set_discount(self, amount: Decimal | int) -> None:
        self._discount = Decimal(amount)
        self._commit(self._items)

    def clear(self) -> None:
        self._items = []
        self._discount = Decimal("0")
        self._totals = self._recompute()
        self._storage.delete(self._key)
