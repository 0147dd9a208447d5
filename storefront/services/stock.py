# storefront/services/stock.py
"""
Stock resolution over a product snapshot.

Sources are preferred in a fixed order:
  1. sum of per-size stock, when sizes carry stock
  2. product.total_stock
  3. product.stock
  4. zero

Legacy products list sizes as bare names. Those cannot express per-size
stock, so every legacy size resolves to the product's generic `stock`.
"""

from storefront.schemas.product import (
    NamedVariant,
    Product,
    StockedVariant,
    StockStatus,
)


def total_stock(product: Product) -> int:
    stocked = [s for s in product.sizes if isinstance(s, StockedVariant)]
    if stocked:
        return sum(s.stock for s in stocked)

    if product.total_stock is not None:
        return product.total_stock

    return product.stock or 0


def variant_stock(product: Product, size_name: str | None) -> int:
    variant = product.find_size(size_name)
    if variant is None:
        return 0
    if isinstance(variant, StockedVariant):
        return variant.stock
    if isinstance(variant, NamedVariant):
        return product.stock or 0
    return 0


def purchasable_stock(product: Product, size: str | None) -> int:
    """
    Quantity that can be bought for a selection.

    Products without sizes are bought against their total stock.
    """
    if product.has_sizes:
        return variant_stock(product, size)
    return total_stock(product)


def classify(stock: int, threshold: int) -> StockStatus:
    if stock <= 0:
        return StockStatus.OUT_OF_STOCK
    if stock <= threshold:
        return StockStatus.LOW_STOCK
    return StockStatus.IN_STOCK


def stock_status(product: Product) -> StockStatus:
    return classify(total_stock(product), product.low_stock_threshold)


def variant_stock_status(product: Product, size: str | None) -> StockStatus:
    return classify(purchasable_stock(product, size), product.low_stock_threshold)

