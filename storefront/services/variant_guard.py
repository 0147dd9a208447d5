# storefront/services/variant_guard.py
from dataclasses import dataclass

from storefront.core.errors import (
    ColorRequired,
    InsufficientStock,
    InvalidQuantity,
    OutOfStock,
    SizeRequired,
    VariantOutOfStock,
)
from storefront.schemas.product import Product
from storefront.services.stock import purchasable_stock, total_stock


@dataclass(frozen=True)
class VariantSelection:
    """A validated (size, color, quantity) choice and the stock behind it."""

    size: str | None
    color: str | None
    quantity: int
    available: int


def default_size(product: Product) -> str | None:
    return product.size_names[0] if product.has_sizes else None


def default_color(product: Product) -> str | None:
    return product.color_names[0] if product.has_colors else None


def check_quantity(quantity: object, maximum: int | None = None) -> int:
    # bool is an int subclass; a checkbox value is not a quantity
    if isinstance(quantity, bool) or not isinstance(quantity, int) or quantity < 1:
        raise InvalidQuantity(quantity, maximum)
    if maximum is not None and quantity > maximum:
        raise InvalidQuantity(quantity, maximum)
    return quantity


def check_variant(
    product: Product,
    quantity: int,
    size: str | None = None,
    color: str | None = None,
    *,
    in_cart: int = 0,
    auto_select: bool = True,
) -> VariantSelection:
    """
    Validate an add-to-cart request before any cart state changes.

    Rules:
      - quantity must be a positive integer
      - a color is required when the product declares colors
      - a size is required when the product declares sizes
      - with auto_select, missing choices default to the first declared
        option (catalog order)
      - the selected variant must have stock, and enough of it to cover
        `quantity` on top of the `in_cart` units already held

    Raises:
        InvalidQuantity, ColorRequired, SizeRequired, OutOfStock,
        VariantOutOfStock, InsufficientStock
    """
    check_quantity(quantity)

    if not product.is_active:
        raise OutOfStock("Product is no longer available")

    if product.has_colors:
        if not color and auto_select:
            color = default_color(product)
        if not color:
            raise ColorRequired()
    else:
        color = None

    if product.has_sizes:
        if not size and auto_select:
            size = default_size(product)
        if not size:
            raise SizeRequired()
    else:
        size = None

    if total_stock(product) <= 0:
        raise OutOfStock("Product is out of stock")

    available = purchasable_stock(product, size)
    if available <= 0:
        raise VariantOutOfStock(size)

    remaining = available - in_cart
    if quantity > remaining:
        raise InsufficientStock(max(remaining, 0), size)

    return VariantSelection(size=size, color=color, quantity=quantity, available=available)
