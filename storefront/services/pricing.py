# storefront/services/pricing.py
"""
Cart price calculator.

The sale price rule lives only here: every caller that needs a unit price
(cart totals, line display, checkout summary) goes through `unit_price`.
"""

from dataclasses import dataclass
from decimal import Decimal
from typing import Iterable

from storefront.core.config import Settings
from storefront.schemas.cart import CartLineItem, CartTotals
from storefront.schemas.product import Product

FREE_SHIPPING_THRESHOLD = Decimal("1000")
SHIPPING_FEE = Decimal("100")
TAX_RATE = Decimal("0.18")

ZERO = Decimal("0")


@dataclass(frozen=True)
class PricingPolicy:
    free_shipping_threshold: Decimal = FREE_SHIPPING_THRESHOLD
    shipping_fee: Decimal = SHIPPING_FEE
    tax_rate: Decimal = TAX_RATE

    @classmethod
    def from_settings(cls, settings: Settings) -> "PricingPolicy":
        return cls(
            free_shipping_threshold=settings.FREE_SHIPPING_THRESHOLD,
            shipping_fee=settings.SHIPPING_FEE,
            tax_rate=settings.TAX_RATE,
        )


DEFAULT_POLICY = PricingPolicy()


def unit_price(product: Product) -> Decimal:
    if product.sale_price is not None and product.sale_price < product.price:
        return product.sale_price
    return product.price


def line_total(item: CartLineItem) -> Decimal:
    return unit_price(item.product) * item.quantity


def shipping_fee(total_price: Decimal, policy: PricingPolicy = DEFAULT_POLICY) -> Decimal:
    if total_price >= policy.free_shipping_threshold:
        return ZERO
    return policy.shipping_fee


def compute_totals(
    items: Iterable[CartLineItem],
    discount: Decimal | int = ZERO,
    *,
    policy: PricingPolicy | None = None,
) -> CartTotals:
    """
    Derive cart totals from line items and the applied discount.

    - tax is charged on the pre-discount subtotal
    - grand_total is clamped at zero
    """
    policy = policy or DEFAULT_POLICY
    discount = Decimal(discount)

    total_items = 0
    total_price = ZERO
    for item in items:
        total_items += item.quantity
        total_price += line_total(item)

    # nothing to ship for an empty cart
    shipping = shipping_fee(total_price, policy) if total_items else ZERO
    tax = total_price * policy.tax_rate
    grand_total = max(ZERO, total_price + shipping + tax - discount)

    return CartTotals(
        total_items=total_items,
        total_price=total_price,
        shipping=shipping,
        tax=tax,
        discount=discount,
        grand_total=grand_total,
    )
