import asyncio
from decimal import Decimal

import pytest

from storefront.core.errors import (
    CartError,
    CartStoreError,
    InsufficientStock,
    InvalidQuantity,
    LineItemNotFound,
    OutOfStock,
)
from storefront.schemas.cart import CartLineItem
from storefront.services.cart_engine import CartEngine
from storefront.services.guest_cart import GuestCart

from conftest import make_product, settle


def quantities(store, name="add_item"):
    return [call[2] for call in store.calls_to(name)]


# ---- add ----


@pytest.mark.asyncio
async def test_add_item_shows_server_line(engine, store, tee):
    items = await engine.add_item("tee", 2, "M", "Red", product=tee)

    assert len(items) == 1
    assert items[0].id == "srv1"
    assert items[0].quantity == 2
    assert engine.totals.total_price == Decimal("2000")
    assert engine.pending == 0
    assert engine.last_error is None


@pytest.mark.asyncio
async def test_add_item_defaults_to_first_size_and_color(engine, tee):
    items = await engine.add_item("tee", product=tee)
    assert (items[0].size, items[0].color) == ("M", "Red")


@pytest.mark.asyncio
async def test_repeated_adds_keep_one_line_per_variant(engine, tee):
    await engine.add_item("tee", 1, "M", "Red", product=tee)
    await engine.add_item("tee", 1, "M", "Red", product=tee)
    await engine.add_item("tee", 1, "L", "Red", product=tee)

    keys = [item.key for item in engine.items]
    assert len(keys) == len(set(keys)) == 2
    assert engine.find_item("srv1").quantity == 2


@pytest.mark.asyncio
async def test_optimistic_line_visible_before_server_answers(engine, store, tee):
    store.gates["add_item"] = asyncio.Event()

    task = asyncio.create_task(engine.add_item("tee", 1, "M", "Red", product=tee))
    await settle()

    assert len(engine.items) == 1
    assert engine.items[0].is_optimistic
    assert engine.totals.total_items == 1

    store.gates["add_item"].set()
    await task
    assert not engine.items[0].is_optimistic


@pytest.mark.asyncio
async def test_insufficient_stock_leaves_cart_unchanged(engine, store, tee):
    await engine.add_item("tee", 4, "M", "Red", product=tee)
    before_items, before_totals = engine.items, engine.totals

    with pytest.raises(InsufficientStock) as exc:
        await engine.add_item("tee", 2, "M", "Red", product=tee)

    assert exc.value.available == 1
    assert exc.value.message == "Only 1 items available for size M"
    assert engine.items == before_items
    assert engine.totals == before_totals
    assert engine.last_error is exc.value
    assert len(store.calls_to("add_item")) == 1


@pytest.mark.asyncio
async def test_sold_out_product_is_rejected(engine, store):
    empty = make_product("empty", totalStock=0)
    with pytest.raises(OutOfStock, match="Product is out of stock"):
        await engine.add_item("empty", product=empty)
    assert engine.items == []
    assert store.calls == []


@pytest.mark.asyncio
async def test_blank_color_falls_back_to_first_color(engine, tee):
    items = await engine.add_item("tee", 1, "M", "", product=tee)
    assert items[0].color == "Red"


@pytest.mark.asyncio
async def test_snapshot_for_another_product_is_rejected(engine, tee):
    with pytest.raises(ValueError):
        await engine.add_item("cap", product=tee)


@pytest.mark.asyncio
async def test_add_without_snapshot_uses_catalog(store, cap):
    class Catalog:
        async def get_product(self, product_id):
            assert product_id == "cap"
            return cap

        async def list_products(self, filters=None):
            return [cap]

    engine = CartEngine(store, catalog=Catalog())
    items = await engine.add_item("cap", 2)
    assert items[0].product == cap
    assert items[0].size is None and items[0].color is None


@pytest.mark.asyncio
async def test_failed_add_rolls_back_exactly(engine, store, tee, cap):
    await engine.add_item("cap", 1, product=cap)
    before_items, before_totals = engine.items, engine.totals

    store.fail_next["add_item"] = CartStoreError("Server error", status_code=500)
    with pytest.raises(CartStoreError):
        await engine.add_item("tee", 1, "M", "Red", product=tee)

    assert engine.items == before_items
    assert engine.totals == before_totals
    assert engine.last_error.message == "Server error"
    assert engine.pending == 0


@pytest.mark.asyncio
async def test_adds_for_same_variant_are_coalesced(engine, store, tee):
    store.gates["add_item"] = asyncio.Event()

    first = asyncio.create_task(engine.add_item("tee", 1, "M", "Red", product=tee))
    await settle()
    second = asyncio.create_task(engine.add_item("tee", 1, "M", "Red", product=tee))
    await settle()
    third = asyncio.create_task(engine.add_item("tee", 2, "M", "Red", product=tee))
    await settle()

    # only the first request is on the wire; the rest wait behind it as one
    assert quantities(store) == [1]
    assert engine.items[0].quantity == 4

    store.gates["add_item"].set()
    await asyncio.gather(first, second, third)

    assert quantities(store) == [1, 3]
    assert [(i.id, i.quantity) for i in engine.items] == [("srv1", 4)]
    assert store.lines[0].quantity == 4


@pytest.mark.asyncio
async def test_in_flight_add_is_not_double_counted_by_sync(engine, store, tee, cap):
    store.gates["add_item"] = asyncio.Event()
    task = asyncio.create_task(engine.add_item("tee", 1, "M", "Red", product=tee))
    await settle()

    # a cart fetched meanwhile may already hold the added line
    snapshot = [
        CartLineItem(id="srv9", product=tee, quantity=1, size="M", color="Red"),
        CartLineItem(id="srv8", product=cap, quantity=2),
    ]
    engine.sync_from_server(snapshot)

    tee_lines = [i for i in engine.items if i.product_id == "tee"]
    assert [i.quantity for i in tee_lines] == [1]
    assert engine.totals.total_items == 3

    store.gates["add_item"].set()
    await task


# ---- stale reads ----


@pytest.mark.asyncio
async def test_empty_add_response_keeps_local_state(engine, store, tee):
    store.empty_add_response = True

    items = await engine.add_item("tee", 1, "M", "Red", product=tee)
    assert len(items) == 1
    assert items[0].quantity == 1

    # the temporary id still reaches the server line
    await engine.update_quantity(items[0].id, 3)
    assert store.calls_to("update_item") == [("update_item", "srv1", 3)]
    assert engine.items[0].quantity == 3


@pytest.mark.asyncio
async def test_empty_server_cart_during_add_is_ignored(engine, store, tee):
    store.gates["add_item"] = asyncio.Event()
    task = asyncio.create_task(engine.add_item("tee", 1, "M", "Red", product=tee))
    await settle()

    engine.sync_from_server([])
    assert len(engine.items) == 1

    store.gates["add_item"].set()
    await task
    assert engine.items[0].id == "srv1"


@pytest.mark.asyncio
async def test_empty_server_cart_without_pending_add_empties(engine, store, tee):
    await engine.add_item("tee", 1, "M", "Red", product=tee)
    assert engine.sync_from_server([]) == []
    assert engine.totals.grand_total == Decimal("0")


@pytest.mark.asyncio
async def test_update_then_remove_ends_removed(engine, store, tee):
    store.seed(tee, 1, "M", "Red")
    await engine.refresh()
    store.gates["update_item"] = asyncio.Event()

    update = asyncio.create_task(engine.update_quantity("srv1", 3))
    await settle()
    assert engine.items[0].quantity == 3

    remove = asyncio.create_task(engine.remove_item("srv1"))
    await settle()
    assert engine.items == []

    store.gates["update_item"].set()
    await asyncio.gather(update, remove)

    assert engine.items == []
    assert store.lines == []
    assert [c[0] for c in store.calls[1:]] == ["update_item", "remove_item"]


@pytest.mark.asyncio
async def test_late_cart_does_not_restore_line_removed_meanwhile(engine, store, tee, cap):
    store.seed(cap, 1)
    await engine.refresh()
    store.held["add_item"] = asyncio.Event()

    adding = asyncio.create_task(engine.add_item("tee", 1, "M", "Red", product=tee))
    await settle()
    # the add reply already holds the cap line
    assert [line.product_id for line in store.lines] == ["cap", "tee"]

    await engine.remove_item("srv1")
    assert [i.product_id for i in engine.items] == ["tee"]

    store.held["add_item"].set()
    await adding

    assert [i.product_id for i in engine.items] == ["tee"]
    assert [line.product_id for line in store.lines] == ["tee"]
    assert engine.totals.total_items == 1


@pytest.mark.asyncio
async def test_refresh_keeps_lines_confirmed_while_fetching(engine, store, cap):
    store.seed(cap, 1)
    await engine.refresh()
    store.held["get_cart"] = asyncio.Event()

    refreshing = asyncio.create_task(engine.refresh())
    await settle()
    await engine.remove_item("srv1")

    store.held["get_cart"].set()
    assert await refreshing == []


@pytest.mark.asyncio
async def test_refresh_requested_before_clear_is_ignored(engine, store, cap):
    await engine.add_item("cap", 1, product=cap)
    store.held["get_cart"] = asyncio.Event()

    refreshing = asyncio.create_task(engine.refresh())
    await settle()
    await engine.clear()

    store.held["get_cart"].set()
    assert await refreshing == []


# ---- update / remove ----


@pytest.mark.asyncio
async def test_update_quantity_rejects_invalid_values(engine, store, tee):
    store.seed(tee, 1, "M", "Red")
    await engine.refresh()

    for bad in (0, -1, 2.5, True):
        with pytest.raises(InvalidQuantity):
            await engine.update_quantity("srv1", bad)

    with pytest.raises(InvalidQuantity) as exc:
        await engine.update_quantity("srv1", 6)
    assert exc.value.maximum == 5

    assert engine.items[0].quantity == 1
    assert store.calls_to("update_item") == []


@pytest.mark.asyncio
async def test_update_unknown_line(engine):
    with pytest.raises(LineItemNotFound):
        await engine.update_quantity("nope", 1)


@pytest.mark.asyncio
async def test_failed_update_rolls_back(engine, store, tee):
    store.seed(tee, 2, "M", "Red")
    await engine.refresh()
    before = engine.items

    store.fail_next["update_item"] = CartStoreError("Failed to update cart item")
    with pytest.raises(CartStoreError):
        await engine.update_quantity("srv1", 4)

    assert engine.items == before
    assert store.lines[0].quantity == 2


@pytest.mark.asyncio
async def test_remove_item(engine, store, tee, cap):
    store.seed(tee, 1, "M", "Red")
    store.seed(cap, 1)
    await engine.refresh()

    items = await engine.remove_item("srv1")
    assert [i.id for i in items] == ["srv2"]
    assert [line.id for line in store.lines] == ["srv2"]


@pytest.mark.asyncio
async def test_remove_unknown_line_is_noop(engine, store, cap):
    store.seed(cap, 1)
    await engine.refresh()

    items = await engine.remove_item("nope")
    assert [i.id for i in items] == ["srv1"]
    assert store.calls_to("remove_item") == []


@pytest.mark.asyncio
async def test_failed_remove_restores_line(engine, store, cap):
    store.seed(cap, 3)
    await engine.refresh()

    store.fail_next["remove_item"] = CartStoreError("Failed to remove item from cart")
    with pytest.raises(CartStoreError):
        await engine.remove_item("srv1")
    assert [(i.id, i.quantity) for i in engine.items] == [("srv1", 3)]


@pytest.mark.asyncio
async def test_temp_id_resolves_after_confirmation(engine, store, tee):
    store.gates["add_item"] = asyncio.Event()
    task = asyncio.create_task(engine.add_item("tee", 1, "M", "Red", product=tee))
    await settle()
    temp_id = engine.items[0].id

    store.gates["add_item"].set()
    await task

    assert engine.find_item(temp_id).id == "srv1"
    await engine.update_quantity(temp_id, 2)
    assert store.lines[0].quantity == 2


# ---- clear ----


@pytest.mark.asyncio
async def test_clear(engine, store, tee, cap):
    await engine.add_item("tee", 1, "M", "Red", product=tee)
    await engine.add_item("cap", 1, product=cap)

    assert await engine.clear() == []
    assert store.lines == []
    assert engine.totals.total_items == 0


@pytest.mark.asyncio
async def test_failed_clear_restores_cart(engine, store, cap):
    await engine.add_item("cap", 2, product=cap)
    before = engine.items

    store.fail_next["clear_cart"] = CartStoreError("Failed to clear cart")
    with pytest.raises(CartStoreError):
        await engine.clear()
    assert engine.items == before


@pytest.mark.asyncio
async def test_clear_supersedes_earlier_mutations(engine, store, tee):
    store.gates["add_item"] = asyncio.Event()
    first = asyncio.create_task(engine.add_item("tee", 1, "M", "Red", product=tee))
    await settle()
    second = asyncio.create_task(engine.add_item("tee", 1, "M", "Red", product=tee))
    await settle()

    clearing = asyncio.create_task(engine.clear())
    await settle()
    assert engine.items == []
    assert store.calls_to("clear_cart") == []

    store.gates["add_item"].set()
    await asyncio.gather(first, second, clearing)

    assert engine.items == []
    # the queued add never reached the server; the clear landed after the first
    assert quantities(store) == [1]
    assert store.lines == []


@pytest.mark.asyncio
async def test_failed_clear_lets_queued_mutations_through(engine, store, tee):
    store.gates["add_item"] = asyncio.Event()
    adding = asyncio.create_task(engine.add_item("tee", 1, "M", "Red", product=tee))
    await settle()
    temp_id = engine.items[0].id
    updating = asyncio.create_task(engine.update_quantity(temp_id, 3))
    await settle()

    store.fail_next["clear_cart"] = CartStoreError("Failed to clear cart")
    clearing = asyncio.create_task(engine.clear())
    await settle()
    assert engine.items == []

    store.gates["add_item"].set()
    with pytest.raises(CartStoreError):
        await clearing
    await asyncio.gather(adding, updating)

    assert store.calls_to("update_item") == [("update_item", "srv1", 3)]
    assert [(i.id, i.quantity) for i in engine.items] == [("srv1", 3)]
    assert [(line.id, line.quantity) for line in store.lines] == [("srv1", 3)]
    assert engine.totals.total_items == 3


@pytest.mark.asyncio
async def test_mutation_issued_during_clear_is_kept(engine, store, tee, cap):
    await engine.add_item("tee", 1, "M", "Red", product=tee)
    store.gates["clear_cart"] = asyncio.Event()

    clearing = asyncio.create_task(engine.clear())
    await settle()
    adding = asyncio.create_task(engine.add_item("cap", 1, product=cap))
    await settle()

    # waits for the clear so the server cannot wipe it
    assert store.calls_to("add_item") == [("add_item", "tee", 1)]
    assert [i.product_id for i in engine.items] == ["cap"]

    store.gates["clear_cart"].set()
    await asyncio.gather(clearing, adding)

    assert [i.product_id for i in engine.items] == ["cap"]
    assert [line.product_id for line in store.lines] == ["cap"]


# ---- coupons ----


@pytest.mark.asyncio
async def test_apply_coupon_discounts_grand_total(engine, tee):
    await engine.add_item("tee", 2, "M", "Red", product=tee)
    assert engine.totals.grand_total == Decimal("2360")

    totals = await engine.apply_coupon(" SAVE300 ")
    assert engine.coupon_code == "SAVE300"
    assert totals.discount == Decimal("300")
    assert totals.grand_total == Decimal("2060")

    totals = await engine.remove_coupon()
    assert engine.coupon_code is None
    assert totals.grand_total == Decimal("2360")


@pytest.mark.asyncio
async def test_invalid_coupon_keeps_totals(engine, tee):
    await engine.add_item("tee", 1, "M", "Red", product=tee)
    before = engine.totals

    with pytest.raises(CartStoreError, match="Invalid coupon code"):
        await engine.apply_coupon("BOGUS")
    assert engine.totals == before

    with pytest.raises(CartError, match="Please enter a coupon code"):
        await engine.apply_coupon("   ")


@pytest.mark.asyncio
async def test_coupon_survives_clear(engine, cap):
    await engine.add_item("cap", 1, product=cap)
    await engine.apply_coupon("SAVE300")
    await engine.clear()
    assert engine.discount == Decimal("300")
    assert engine.totals.grand_total == Decimal("0")


# ---- guest cart adoption ----


@pytest.mark.asyncio
async def test_adopt_guest_cart_merges_and_clamps(engine, store, storage, tee, cap):
    store.seed(tee, 4, "M", "Red")
    guest = GuestCart(storage)
    guest.add_item(tee, 2, "M", "Red")
    guest.add_item(cap, 1)

    pushed = []
    items = await engine.adopt_guest_cart(guest.items, on_pushed=pushed.append)

    # 4 + 2 clamped to the 5 left in size M
    assert [(i.product_id, i.quantity) for i in items] == [("tee", 5), ("cap", 1)]
    assert store.calls_to("add_item") == [("add_item", "tee", 1), ("add_item", "cap", 1)]
    assert pushed == [("tee", "M", "Red"), ("cap", None, None)]


@pytest.mark.asyncio
async def test_adopt_guest_cart_retry_does_not_add_twice(engine, store, storage, tee, cap):
    guest = GuestCart(storage)
    guest.add_item(tee, 1, "M", "Red")
    guest.add_item(cap, 2)

    add_item = store.add_item
    failed = []

    async def flaky_add(payload):
        if payload.product_id == "cap" and not failed:
            failed.append(payload)
            raise CartStoreError("Failed to add item to cart")
        return await add_item(payload)

    store.add_item = flaky_add
    with pytest.raises(CartStoreError):
        await engine.adopt_guest_cart(guest.items, on_pushed=guest.discard)
    assert [i.product_id for i in guest.items] == ["cap"]

    items = await engine.adopt_guest_cart(guest.items, on_pushed=guest.discard)
    assert sorted((i.product_id, i.quantity) for i in items) == [("cap", 2), ("tee", 1)]
    assert guest.items == []


@pytest.mark.asyncio
async def test_set_discount_recomputes_locally(engine, store, cap):
    await engine.add_item("cap", 2, product=cap)
    totals = engine.set_discount(100)

    assert totals.discount == Decimal("100")
    assert totals.grand_total == Decimal("708")
    assert store.calls_to("apply_coupon") == []
