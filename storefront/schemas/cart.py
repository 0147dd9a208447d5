# storefront/schemas/cart.py
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, field_validator
from sqlmodel import SQLModel
from sqlmodel import Field as SQLField

from storefront.schemas.product import Product

TEMP_ID_PREFIX = "temp_"

# (product_id, size, color): identity of a line item for merge purposes
VariantKey = tuple[str, str | None, str | None]


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class CartItemCreate(SQLModel):
    """
    Payload sent to the Cart Store when adding to cart.
    """

    product_id: str
    quantity: int = SQLField(gt=0)
    size: str | None = None
    color: str | None = None

    def to_wire(self) -> dict[str, Any]:
        return {
            "productId": self.product_id,
            "quantity": self.quantity,
            "size": self.size,
            "color": self.color,
        }


class CartLineItem(BaseModel):
    """
    One cart entry: a product variant and a quantity.

    `id` is the Cart Store id once confirmed, or a `temp_...` id while the
    item only exists optimistically.
    """

    model_config = ConfigDict(populate_by_name=True, extra="ignore", frozen=True)

    id: str = Field(validation_alias=AliasChoices("id", "_id"))
    product: Product
    quantity: int = Field(ge=1)
    size: str | None = None
    color: str | None = None
    added_at: datetime = Field(
        default_factory=_utcnow,
        validation_alias=AliasChoices("added_at", "addedAt"),
    )

    @field_validator("size", "color", mode="before")
    @classmethod
    def blank_to_none(cls, v: Any) -> Any:
        if isinstance(v, str) and not v.strip():
            return None
        return v

    @property
    def product_id(self) -> str:
        return self.product.id

    @property
    def key(self) -> VariantKey:
        return (self.product.id, self.size, self.color)

    @property
    def is_optimistic(self) -> bool:
        return self.id.startswith(TEMP_ID_PREFIX)


class CartTotals(BaseModel):
    """
    Fully derived cart totals. Never mutated on their own.
    """

    model_config = ConfigDict(frozen=True)

    total_items: int = 0
    total_price: Decimal = Decimal("0")
    shipping: Decimal = Decimal("0")
    tax: Decimal = Decimal("0")
    discount: Decimal = Decimal("0")
    grand_total: Decimal = Decimal("0")


class CouponResult(SQLModel):
    """
    Response of applying a coupon code.
    """

    coupon_code: str | None = None
    discount: Decimal = SQLField(default=Decimal("0"), ge=0)
