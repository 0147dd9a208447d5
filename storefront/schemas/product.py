# storefront/schemas/product.py
from decimal import Decimal
from enum import Enum
from typing import Annotated, Any, Literal, Union

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, field_validator

DEFAULT_LOW_STOCK_THRESHOLD = 10


class NamedVariant(BaseModel):
    """
    Legacy size entry: just a name, no embedded stock.
    Stock for these comes from the product's generic `stock` scalar.
    """

    model_config = ConfigDict(frozen=True)

    kind: Literal["named"] = "named"
    name: str


class StockedVariant(BaseModel):
    """
    Size entry carrying its own stock count.
    """

    model_config = ConfigDict(frozen=True)

    kind: Literal["stocked"] = "stocked"
    name: str
    stock: int = Field(default=0, ge=0)


Variant = Annotated[Union[NamedVariant, StockedVariant], Field(discriminator="kind")]


class ColorOption(BaseModel):
    model_config = ConfigDict(frozen=True)

    name: str
    hex: str | None = None


class StockStatus(str, Enum):
    OUT_OF_STOCK = "Out of Stock"
    LOW_STOCK = "Low Stock"
    IN_STOCK = "In Stock"


def _coerce_variant(raw: Any) -> Any:
    if isinstance(raw, (NamedVariant, StockedVariant)):
        return raw
    if isinstance(raw, str):
        return {"kind": "named", "name": raw}
    if isinstance(raw, dict):
        if "kind" in raw:
            return raw
        name = raw.get("name") or raw.get("size")
        if "stock" in raw:
            return {"kind": "stocked", "name": name, "stock": raw["stock"] or 0}
        return {"kind": "named", "name": name}
    return raw


class Product(BaseModel):
    """
    Read-only product snapshot as served by the Catalog Store.

    The raw catalog documents mix shapes (sizes as strings or as
    `{size, stock}` objects, colors as strings or `{name, hex}`), so they are
    normalised here once; downstream code only ever sees `Variant` and
    `ColorOption` values.
    """

    model_config = ConfigDict(populate_by_name=True, extra="ignore", frozen=True)

    id: str = Field(validation_alias=AliasChoices("id", "_id"))
    name: str | None = None

    price: Decimal = Field(gt=0, description="Base unit price")
    sale_price: Decimal | None = Field(
        default=None,
        ge=0,
        validation_alias=AliasChoices("sale_price", "salePrice"),
        description="Effective unit price when lower than `price`",
    )

    sizes: list[Variant] = Field(default_factory=list)
    colors: list[ColorOption] = Field(default_factory=list)

    total_stock: int | None = Field(
        default=None,
        ge=0,
        validation_alias=AliasChoices("total_stock", "totalStock"),
    )
    stock: int | None = Field(default=None, ge=0)
    low_stock_threshold: int = Field(
        default=DEFAULT_LOW_STOCK_THRESHOLD,
        ge=0,
        validation_alias=AliasChoices("low_stock_threshold", "lowStockThreshold"),
    )

    is_active: bool = Field(
        default=True,
        validation_alias=AliasChoices("is_active", "isActive"),
    )

    @field_validator("id", mode="before")
    @classmethod
    def stringify_id(cls, v: Any) -> Any:
        if isinstance(v, (int, float)) and not isinstance(v, bool):
            return str(v)
        return v

    @field_validator("sizes", mode="before")
    @classmethod
    def normalize_sizes(cls, v: Any) -> Any:
        if v is None:
            return []
        if isinstance(v, list):
            return [_coerce_variant(s) for s in v]
        return v

    @field_validator("colors", mode="before")
    @classmethod
    def normalize_colors(cls, v: Any) -> Any:
        if v is None:
            return []
        if not isinstance(v, list):
            return v
        colors = []
        for c in v:
            if isinstance(c, str):
                colors.append({"name": c})
            elif isinstance(c, dict) and not c.get("name"):
                # unnamed swatches cannot be selected
                continue
            else:
                colors.append(c)
        return colors

    @field_validator("low_stock_threshold", mode="before")
    @classmethod
    def default_threshold(cls, v: Any) -> Any:
        return DEFAULT_LOW_STOCK_THRESHOLD if v is None else v

    # ---- convenience ----

    @property
    def has_sizes(self) -> bool:
        return len(self.sizes) > 0

    @property
    def has_colors(self) -> bool:
        return len(self.colors) > 0

    @property
    def size_names(self) -> list[str]:
        return [s.name for s in self.sizes]

    @property
    def color_names(self) -> list[str]:
        return [c.name for c in self.colors]

    def find_size(self, name: str | None) -> NamedVariant | StockedVariant | None:
        if name is None:
            return None
        for variant in self.sizes:
            if variant.name == name:
                return variant
        return None
