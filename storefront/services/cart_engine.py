# storefront/services/cart_engine.py
"""
Cart reconciliation for authenticated users.

The visible cart is the last cart confirmed by the Cart Store with every
outstanding optimistic mutation replayed on top, in issue order. Dropping a
mutation from the outstanding list and replaying is how a failed request is
rolled back.

Ordering rules:
  - at most one request per (product, size, color) tuple is on the wire;
    later mutations of that tuple wait their turn
  - an add for a tuple whose previous add has not been sent yet is folded
    into it as a quantity delta
  - every mutation carries a per-tuple sequence number; a response older
    than the last applied one for its tuple is ignored
  - a server cart never overwrites a tuple that has an add on the wire,
    otherwise that add would be counted twice
  - a server cart never overwrites a tuple confirmed after that cart was
    requested, nor anything when a clear was confirmed after it
  - `clear()` is itself an outstanding mutation. It is sent once the
    requests already on the wire have landed, and everything issued after
    it waits for it. Once confirmed, it supersedes the earlier mutations
    that were still queued; if it fails, they are sent as usual
"""

from __future__ import annotations

import asyncio
import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import Decimal
from typing import Callable, Iterable

from storefront.clients.cart_store import CartStore
from storefront.clients.catalog_store import CatalogStore
from storefront.core.errors import CartError, LineItemNotFound, StoreError
from storefront.schemas.cart import (
    TEMP_ID_PREFIX,
    CartItemCreate,
    CartLineItem,
    CartTotals,
    VariantKey,
)
from storefront.schemas.product import Product
from storefront.services.guest_cart import merge_carts
from storefront.services.pricing import PricingPolicy, compute_totals
from storefront.services.stock import purchasable_stock
from storefront.services.variant_guard import check_quantity, check_variant

logger = logging.getLogger(__name__)

ADD = "add"
UPDATE = "update"
REMOVE = "remove"
CLEAR = "clear"


@dataclass(eq=False)
class _Mutation:
    kind: str
    key: VariantKey | None
    seq: int
    done: asyncio.Future
    quantity: int = 0
    product: Product | None = None
    temp_id: str | None = None
    added_at: datetime | None = None
    sent: bool = False
    # value of the engine clock when the request went out
    sent_at: int = 0
    superseded: bool = False


def _apply(items: list[CartLineItem], op: _Mutation) -> list[CartLineItem]:
    if op.kind == CLEAR:
        return []
    if op.kind == REMOVE:
        return [item for item in items if item.key != op.key]

    result = list(items)
    for i, item in enumerate(result):
        if item.key != op.key:
            continue
        quantity = item.quantity + op.quantity if op.kind == ADD else op.quantity
        result[i] = item.model_copy(update={"quantity": quantity})
        return result

    if op.kind == ADD:
        product_id, size, color = op.key
        result.append(
            CartLineItem(
                id=op.temp_id,
                product=op.product,
                quantity=op.quantity,
                size=size,
                color=color,
                added_at=op.added_at,
            )
        )
    return result


@dataclass
class _State:
    confirmed: list[CartLineItem] = field(default_factory=list)
    outstanding: list[_Mutation] = field(default_factory=list)


class CartEngine:
    """
    Owner of the authenticated cart.

    Reads (`items`, `totals`) always reflect the optimistic state and never
    wait on the network. Every rejected mutation leaves items and totals
    exactly as they were; the error is stored in `last_error` and raised to
    the caller.
    """

    def __init__(
        self,
        cart_store: CartStore,
        *,
        catalog: CatalogStore | None = None,
        policy: PricingPolicy | None = None,
    ):
        self._store = cart_store
        self._catalog = catalog
        self._policy = policy

        self._state = _State()
        self._items: list[CartLineItem] = []
        self._discount = Decimal("0")
        self._coupon_code: str | None = None
        self._totals = CartTotals()

        self._issued: dict[VariantKey, int] = {}
        self._applied: dict[VariantKey, int] = {}
        # engine clock: bumped whenever a response is applied
        self._clock = 0
        self._applied_at: dict[VariantKey, int] = {}
        self._cleared_at = 0
        self._locks: dict[VariantKey, asyncio.Lock] = {}
        self._aliases: dict[str, VariantKey] = {}

        self.last_error: CartError | None = None

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

    @property
    def coupon_code(self) -> str | None:
        return self._coupon_code

    @property
    def pending(self) -> int:
        return len(self._state.outstanding)

    def find_item(self, line_item_id: str) -> CartLineItem | None:
        """
        Look up a visible line by id.

        Temporary ids handed out for optimistic adds keep resolving after
        the server has assigned the real id.
        """
        for item in self._items:
            if item.id == line_item_id:
                return item
        key = self._aliases.get(line_item_id)
        if key is not None:
            return self._item_for(key)
        return None

    # ---- internal helpers ----

    def _item_for(self, key: VariantKey) -> CartLineItem | None:
        for item in self._items:
            if item.key == key:
                return item
        return None

    def _rebuild(self) -> None:
        items = list(self._state.confirmed)
        for op in self._state.outstanding:
            items = _apply(items, op)
        self._items = items
        self._totals = compute_totals(items, self._discount, policy=self._policy)

    def _new_mutation(self, kind: str, key: VariantKey, **kwargs) -> _Mutation:
        seq = self._issued.get(key, 0) + 1
        self._issued[key] = seq
        op = _Mutation(
            kind=kind,
            key=key,
            seq=seq,
            done=asyncio.get_running_loop().create_future(),
            **kwargs,
        )
        self._state.outstanding.append(op)
        return op

    def _queued_add(self, key: VariantKey) -> _Mutation | None:
        last = None
        for op in self._state.outstanding:
            # never fold into an add that a pending clear may supersede
            if op.key == key or op.kind == CLEAR:
                last = op
        if last is not None and last.kind == ADD and not last.sent:
            return last
        return None

    def _pending_clear(self) -> _Mutation | None:
        for op in self._state.outstanding:
            if op.kind == CLEAR:
                return op
        return None

    def _drop(self, op: _Mutation) -> None:
        if op in self._state.outstanding:
            self._state.outstanding.remove(op)

    def _merge_authoritative(
        self,
        server_items: Iterable[CartLineItem],
        since: int | None = None,
    ) -> list[CartLineItem]:
        """
        Take a server cart as the confirmed lines, except for tuples the
        server cart cannot know about yet.

        `since` is the engine clock when the cart was requested. Tuples
        confirmed after that keep their confirmed line, and a cart requested
        before the last confirmed clear is ignored entirely.
        """
        if since is not None and since < self._cleared_at:
            logger.info("Ignoring server cart requested before the last clear")
            return list(self._state.confirmed)

        protected = {
            op.key for op in self._state.outstanding if op.kind == ADD and op.sent
        }
        if since is not None:
            protected |= {key for key, at in self._applied_at.items() if at > since}
        previous = {item.key: item for item in self._state.confirmed if item.key in protected}

        merged: list[CartLineItem] = []
        for item in server_items:
            if item.key in protected:
                kept = previous.pop(item.key, None)
                if kept is not None:
                    merged.append(kept)
            else:
                merged.append(item)
        merged.extend(previous.values())
        return merged

    async def _server_id(self, key: VariantKey) -> str | None:
        for item in self._state.confirmed:
            if item.key == key and not item.is_optimistic:
                return item.id
        # the add was acknowledged without a cart; ask for the real id
        for item in await self._store.get_cart():
            if item.key == key:
                return item.id
        return None

    async def _send(self, op: _Mutation) -> list[CartLineItem] | None:
        product_id, size, color = op.key
        if op.kind == ADD:
            payload = CartItemCreate(
                product_id=product_id,
                quantity=op.quantity,
                size=size,
                color=color,
            )
            return await self._store.add_item(payload)

        server_id = await self._server_id(op.key)
        if op.kind == UPDATE:
            if server_id is None:
                raise LineItemNotFound(op.temp_id or product_id)
            return await self._store.update_item(server_id, op.quantity)

        if server_id is not None:
            await self._store.remove_item(server_id)
        return None

    async def _dispatch(self, op: _Mutation) -> None:
        lock = self._locks.setdefault(op.key, asyncio.Lock())
        async with lock:
            while (clearing := self._pending_clear()) is not None:
                await asyncio.wait([clearing.done])

            if op.superseded:
                # wiped by a confirmed clear() before it was sent
                op.done.set_result(None)
                return

            op.sent = True
            op.sent_at = self._clock
            try:
                server_items = await self._send(op)
            except Exception as e:
                # roll back on any failure so coalesced callers are released too
                self._fail(op, e)
            else:
                self._confirm(op, server_items)

    def _confirm(self, op: _Mutation, server_items: list[CartLineItem] | None) -> None:
        self._drop(op)

        if op.seq < self._applied.get(op.key, 0):
            logger.info(f"Ignoring stale {op.kind} response for {op.key} (seq {op.seq})")
        else:
            if server_items is None:
                self._state.confirmed = _apply(self._state.confirmed, op)
            elif op.kind == ADD and not server_items:
                logger.info(f"Server returned an empty cart after add of {op.key}, keeping local state")
                self._state.confirmed = _apply(self._state.confirmed, op)
            else:
                self._state.confirmed = self._merge_authoritative(server_items, since=op.sent_at)
            self._applied[op.key] = op.seq
            self._clock += 1
            self._applied_at[op.key] = self._clock

        self._rebuild()
        op.done.set_result(None)

    def _fail(self, op: _Mutation, error: Exception) -> None:
        self._drop(op)
        self._rebuild()
        if isinstance(error, CartError):
            self.last_error = error
        logger.warning(f"Rolled back {op.kind} of {op.key}: {error}")
        op.done.set_exception(error)

    async def _run(self, op: _Mutation) -> list[CartLineItem]:
        await self._dispatch(op)
        await op.done
        return self.items

    async def _resolve_product(self, product_id: str, product: Product | None) -> Product:
        if product is not None:
            if product.id != product_id:
                raise ValueError(f"Snapshot is for product {product.id}, not {product_id}")
            return product
        if self._catalog is None:
            raise ValueError("A product snapshot is required when no catalog is configured")
        try:
            return await self._catalog.get_product(product_id)
        except StoreError as e:
            self.last_error = e
            raise

    def _guard(self, fn: Callable[[], object]) -> None:
        try:
            fn()
        except CartError as e:
            self.last_error = e
            raise

    # ---- mutations ----

    async def add_item(
        self,
        product_id: str,
        quantity: int = 1,
        size: str | None = None,
        color: str | None = None,
        product: Product | None = None,
    ) -> list[CartLineItem]:
        """
        Add a variant to the cart.

        Stock is checked against the quantity already held for the tuple
        before anything changes. The line appears immediately (temporary id)
        and is replaced by the server's line once confirmed.

        Raises:
            OutOfStock family / SelectionRequired / InvalidQuantity: before
                any state change.
            StoreError: after the optimistic add has been rolled back.
        """
        product = await self._resolve_product(product_id, product)
        try:
            selection = check_variant(product, quantity, size, color)
            key = (product.id, selection.size, selection.color)
            existing = self._item_for(key)
            if existing is not None:
                check_variant(
                    product,
                    quantity,
                    selection.size,
                    selection.color,
                    in_cart=existing.quantity,
                )
        except CartError as e:
            self.last_error = e
            raise

        self.last_error = None

        queued = self._queued_add(key)
        if queued is not None:
            queued.quantity += quantity
            self._rebuild()
            logger.debug(f"Coalesced add of {quantity} into pending request for {key}")
            await queued.done
            return self.items

        op = self._new_mutation(
            ADD,
            key,
            quantity=quantity,
            product=product,
            temp_id=f"{TEMP_ID_PREFIX}{uuid.uuid4().hex}",
            added_at=datetime.now(timezone.utc),
        )
        self._aliases[op.temp_id] = key
        self._rebuild()
        return await self._run(op)

    async def update_quantity(self, line_item_id: str, quantity: int) -> list[CartLineItem]:
        """
        Set the quantity of a line.

        Raises:
            LineItemNotFound: unknown id.
            InvalidQuantity: below 1 or above the variant's stock.
            StoreError: after the optimistic update has been rolled back.
        """
        item = self.find_item(line_item_id)
        if item is None:
            self.last_error = LineItemNotFound(line_item_id)
            raise self.last_error
        self._guard(lambda: check_quantity(quantity, purchasable_stock(item.product, item.size)))

        self.last_error = None
        if quantity == item.quantity and self._queued_add(item.key) is None:
            return self.items

        op = self._new_mutation(UPDATE, item.key, quantity=quantity, temp_id=line_item_id)
        self._rebuild()
        return await self._run(op)

    async def remove_item(self, line_item_id: str) -> list[CartLineItem]:
        """Remove a line. Unknown ids are a no-op."""
        item = self.find_item(line_item_id)
        if item is None:
            return self.items

        self.last_error = None
        op = self._new_mutation(REMOVE, item.key, temp_id=line_item_id)
        self._rebuild()
        return await self._run(op)

    async def clear(self) -> list[CartLineItem]:
        """
        Empty the cart.

        The cart shows empty at once. The request goes out after the
        requests already on the wire have landed; mutations issued later
        wait for it. Once the server confirms, mutations issued before the
        clear that were still queued are dropped unsent. If it fails, the
        clear is rolled back and those mutations are sent as usual.
        """
        op = _Mutation(kind=CLEAR, key=None, seq=0, done=asyncio.get_running_loop().create_future())
        self._state.outstanding.append(op)
        self._rebuild()

        try:
            earlier = self._state.outstanding[: self._state.outstanding.index(op)]
            landing = [o.done for o in earlier if o.sent or o.kind == CLEAR]
            if landing:
                await asyncio.wait(landing)
            op.sent = True
            await self._store.clear_cart()
        except Exception as e:
            if isinstance(e, CartError):
                self.last_error = e
            logger.warning(f"Rolled back clear: {e}")
            raise
        else:
            outstanding = self._state.outstanding
            idx = outstanding.index(op)
            for queued in outstanding[:idx]:
                queued.superseded = True
            self._state = _State(outstanding=outstanding[idx + 1 :])
            self._clock += 1
            self._cleared_at = self._clock
            self.last_error = None
        finally:
            self._drop(op)
            self._rebuild()
            op.done.set_result(None)

        return self.items

    # ---- server state ----

    def sync_from_server(self, server_items: list[CartLineItem]) -> list[CartLineItem]:
        """
        Take the server cart as the new confirmed state.

        A non-empty server cart replaces the confirmed lines; outstanding
        mutations are replayed on top until their own responses arrive. An
        empty server cart while an optimistic add is outstanding is treated
        as a stale read and the local state is kept.
        """
        return self._sync(server_items)

    def _sync(self, server_items: list[CartLineItem], since: int | None = None) -> list[CartLineItem]:
        pending_add = any(op.kind == ADD for op in self._state.outstanding)
        if not server_items and pending_add:
            logger.info("Server cart is empty during an optimistic add, keeping local state")
            return self.items

        self._state.confirmed = self._merge_authoritative(server_items, since=since)
        self._rebuild()
        return self.items

    async def refresh(self) -> list[CartLineItem]:
        """Fetch the server cart and sync, keeping lines confirmed meanwhile."""
        since = self._clock
        try:
            server_items = await self._store.get_cart()
        except StoreError as e:
            self.last_error = e
            raise
        return self._sync(server_items, since=since)

    async def adopt_guest_cart(
        self,
        guest_items: Iterable[CartLineItem],
        *,
        on_pushed: Callable[[VariantKey], None] | None = None,
    ) -> list[CartLineItem]:
        """
        Merge a guest cart into the server cart, once, at login.

        The merged cart (see `merge_carts`) is pushed as positive quantity
        deltas against the current server cart. `on_pushed` is called with
        each tuple once the server holds it, so a caller can drop it from
        the guest cart and a retry after a failure does not add it twice.
        """
        guest_items = list(guest_items)
        try:
            server_items = await self._store.get_cart()
            server_quantity = {item.key: item.quantity for item in server_items}

            for line in merge_carts(guest_items, server_items):
                delta = line.quantity - server_quantity.get(line.key, 0)
                if delta > 0:
                    product_id, size, color = line.key
                    await self._store.add_item(
                        CartItemCreate(product_id=product_id, quantity=delta, size=size, color=color)
                    )
                if on_pushed is not None:
                    on_pushed(line.key)

            server_items = await self._store.get_cart()
        except StoreError as e:
            self.last_error = e
            raise

        logger.info(f"Merged {len(guest_items)} guest lines into server cart ({len(server_items)} lines)")
        return self.sync_from_server(server_items)

    # ---- coupons ----

    async def apply_coupon(self, code: str) -> CartTotals:
        code = (code or "").strip()
        if not code:
            self.last_error = CartError("Please enter a coupon code")
            raise self.last_error
        try:
            result = await self._store.apply_coupon(code)
        except StoreError as e:
            self.last_error = e
            raise

        self.last_error = None
        self._coupon_code = result.coupon_code or code
        self._discount = result.discount
        self._rebuild()
        return self._totals

    async def remove_coupon(self) -> CartTotals:
        try:
            await self._store.remove_coupon()
        except StoreError as e:
            self.last_error = e
            raise

        self.last_error = None
        self._coupon_code = None
        self._discount = Decimal("0")
        self._rebuild()
        return self._totals

    def set_discount(self, amount: Decimal | int) -> CartTotals:
        self._discount = Decimal(amount)
        self._rebuild()
        return self._totals
