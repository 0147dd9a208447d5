# storefront/services/wishlist.py
import logging

from pydantic import ValidationError

from storefront.repositories.local_store import KeyValueStore
from storefront.schemas.product import Product

logger = logging.getLogger(__name__)

DEFAULT_WISHLIST_KEY = "capersports_wishlist"


class Wishlist:
    """
    Set of product snapshots keyed by product id, persisted to local storage
    on every change. Adding an existing product is a no-op.
    """

    def __init__(self, storage: KeyValueStore, *, key: str = DEFAULT_WISHLIST_KEY):
        self._storage = storage
        self._key = key
        self._items: dict[str, Product] = self._load()

    def _load(self) -> dict[str, Product]:
        data = self._storage.get(self._key)
        if not isinstance(data, list):
            return {}

        items: dict[str, Product] = {}
        for raw in data:
            try:
                product = Product.model_validate(raw)
            except ValidationError as e:
                logger.error(f"Skipping unreadable wishlist entry: {e.error_count()} errors")
                continue
            items.setdefault(product.id, product)
        return items

    def _save(self) -> None:
        self._storage.set(
            self._key,
            [product.model_dump(mode="json") for product in self._items.values()],
        )

    @property
    def items(self) -> list[Product]:
        return list(self._items.values())

    def __len__(self) -> int:
        return len(self._items)

    def contains(self, product_id: str) -> bool:
        return product_id in self._items

    def add(self, product: Product) -> None:
        if product.id in self._items:
            return
        self._items[product.id] = product
        self._save()

    def remove(self, product_id: str) -> None:
        if self._items.pop(product_id, None) is not None:
            self._save()

    def toggle(self, product: Product) -> bool:
        """Flip membership. Returns True when the product is now listed."""
        if product.id in self._items:
            del self._items[product.id]
            self._save()
            return False
        self._items[product.id] = product
        self._save()
        return True

    def clear(self) -> None:
        self._items = {}
        self._storage.delete(self._key)
