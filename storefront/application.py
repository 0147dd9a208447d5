# storefront/application.py
"""
Composition root.

Wires settings, logging, local storage and the remote stores into the cart
components, and owns the guest -> authenticated transition.
"""

import logging
from contextlib import asynccontextmanager
from dataclasses import dataclass, field

import httpx

from storefront.clients.api import create_api_client
from storefront.clients.cart_store import HttpCartStore
from storefront.clients.catalog_store import CachedCatalogStore, CatalogCache, HttpCatalogStore
from storefront.core.config import Settings, get_settings
from storefront.database import create_db_and_tables, make_engine
from storefront.repositories.local_store import KeyValueStore, SqlKeyValueStore
from storefront.schemas.cart import CartLineItem, CartTotals
from storefront.services.cart_engine import CartEngine
from storefront.services.guest_cart import GuestCart
from storefront.services.pricing import PricingPolicy
from storefront.services.wishlist import Wishlist

logger = logging.getLogger(__name__)


@dataclass
class Storefront:
    """
    Everything a storefront client needs, wired together.

    `cart` is None until `login()`; until then the guest cart is active.
    """

    settings: Settings
    catalog: CachedCatalogStore
    cart_store: HttpCartStore
    guest_cart: GuestCart
    wishlist: Wishlist
    policy: PricingPolicy
    cart: CartEngine | None = field(default=None)

    @property
    def authenticated(self) -> bool:
        return self.cart is not None

    @property
    def items(self) -> list[CartLineItem]:
        return self.cart.items if self.cart else self.guest_cart.items

    @property
    def totals(self) -> CartTotals:
        return self.cart.totals if self.cart else self.guest_cart.totals

    async def login(self) -> CartEngine:
        """
        Switch to the server cart, merging the guest cart into it once.

        Guest lines are dropped from local storage as the server accepts
        them; the guest cart is cleared when the merge completes.
        """
        engine = CartEngine(self.cart_store, catalog=self.catalog, policy=self.policy)
        await engine.adopt_guest_cart(self.guest_cart.items, on_pushed=self.guest_cart.discard)
        self.guest_cart.clear()
        self.cart = engine
        logger.info("✅ Logged in: server cart active")
        return engine

    def logout(self) -> None:
        self.cart = None


def build_storefront(
    settings: Settings,
    client: httpx.AsyncClient,
    storage: KeyValueStore,
) -> Storefront:
    policy = PricingPolicy.from_settings(settings)
    catalog = CachedCatalogStore(
        HttpCatalogStore(client),
        CatalogCache(ttl=settings.CATALOG_CACHE_TTL_SECONDS),
    )
    return Storefront(
        settings=settings,
        catalog=catalog,
        cart_store=HttpCartStore(client, catalog=catalog),
        guest_cart=GuestCart(storage, key=settings.GUEST_CART_KEY, policy=policy),
        wishlist=Wishlist(storage, key=settings.WISHLIST_KEY),
        policy=policy,
    )


@asynccontextmanager
async def open_storefront(
    settings: Settings | None = None,
    *,
    transport: httpx.AsyncBaseTransport | None = None,
):
    """
    Open local storage and the API client for the lifetime of the block.

    Startup:
      - configure logging
      - create the local storage table if needed
    Shutdown:
      - close the HTTP client and dispose of the engine
    """
    settings = settings or get_settings()
    logging.basicConfig(level=settings.LOG_LEVEL)

    engine = make_engine(settings.LOCAL_STORE_URL)
    try:
        create_db_and_tables(engine)
    except Exception as e:
        logger.error(f"❌ Startup: local storage FAILED: {e}")
        engine.dispose()
        raise
    logger.info("✅ Startup: local storage ready")

    client = create_api_client(settings, transport=transport)
    try:
        yield build_storefront(settings, client, SqlKeyValueStore(engine))
    finally:
        await client.aclose()
        engine.dispose()
