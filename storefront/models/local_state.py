# storefront/models/local_state.py
from datetime import datetime, timezone

from sqlmodel import SQLModel, Field


class LocalState(SQLModel, table=True):
    """
    Durable client-local key/value entry.

    One row per storage key (guest cart, wishlist). The value is the full
    JSON document for that key, product snapshots included.
    """

    __tablename__ = "local_state"

    key: str = Field(
        primary_key=True,
        max_length=100,
        description="Storage key, e.g. 'capersports_wishlist'",
    )

    value: str = Field(
        description="JSON-encoded document",
    )

    updated_at: datetime = Field(
        default_factory=lambda: datetime.now(timezone.utc),
        description="Last write timestamp (UTC)",
    )
