# storefront/core/errors.py
"""
Error taxonomy for the cart core.

Every error carries a user-facing `message`. Selection and stock errors are
raised before any cart state changes; store errors are raised after the
optimistic mutation that caused them has been rolled back.
"""


class CartError(Exception):
    """Base class for every recoverable cart/stock/pricing failure."""

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


# ---- stock ----


class OutOfStock(CartError):
    """The product (or the requested quantity of it) is unavailable."""


class VariantOutOfStock(OutOfStock):
    """The selected size has no stock left."""

    def __init__(self, size: str | None):
        super().__init__(f"Size {size} is out of stock" if size else "Product is out of stock")
        self.size = size


class InsufficientStock(OutOfStock):
    """
    Partial availability.

    `available` is the largest quantity that can still be added, so the
    caller can clamp and retry.
    """

    def __init__(self, available: int, size: str | None = None):
        suffix = f" for size {size}" if size else ""
        super().__init__(f"Only {available} items available{suffix}")
        self.available = available
        self.size = size


# ---- selection ----


class SelectionRequired(CartError):
    """A required variant dimension was not selected."""


class SizeRequired(SelectionRequired):
    def __init__(self):
        super().__init__("Please select a size")


class ColorRequired(SelectionRequired):
    def __init__(self):
        super().__init__("Please select a color")


# ---- quantity / identity ----


class InvalidQuantity(CartError):
    def __init__(self, quantity: object, maximum: int | None = None):
        if maximum is not None and isinstance(quantity, int) and quantity > maximum:
            message = f"Quantity {quantity} exceeds available stock ({maximum})"
        else:
            message = f"Invalid quantity: {quantity!r}"
        super().__init__(message)
        self.quantity = quantity
        self.maximum = maximum


class LineItemNotFound(CartError):
    def __init__(self, line_item_id: str):
        super().__init__("Cart item not found")
        self.line_item_id = line_item_id


# ---- remote stores ----


class StoreError(CartError):
    """Transport or remote failure talking to a store."""

    def __init__(self, message: str, status_code: int | None = None):
        super().__init__(message)
        self.status_code = status_code


class CartStoreError(StoreError):
    pass


class CatalogStoreError(StoreError):
    pass
