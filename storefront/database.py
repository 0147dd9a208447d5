# storefront/database.py
from sqlalchemy.engine import Engine
from sqlalchemy.pool import StaticPool
from sqlmodel import SQLModel, create_engine

from storefront.core.config import get_settings

# Make sure the table is registered on SQLModel.metadata before create_all()
from storefront.models import local_state as _local_state_models  # noqa: F401


def make_engine(url: str | None = None) -> Engine:
    """
    Build the engine backing durable local storage.

    SQLite connections are shared across the event loop's callbacks, so the
    same-thread check is disabled for sqlite URLs.
    """
    url = url or get_settings().LOCAL_STORE_URL
    if not url.startswith("sqlite"):
        return create_engine(url, echo=False, pool_pre_ping=True)

    kwargs: dict = {"connect_args": {"check_same_thread": False}}
    if url in ("sqlite://", "sqlite:///:memory:"):
        # one shared connection, otherwise every session sees an empty db
        kwargs["poolclass"] = StaticPool
    return create_engine(
        url,
        echo=False,  # set to True if you want to debug SQL queries
        **kwargs,
    )


def create_db_and_tables(engine: Engine) -> None:
    """
    Create all tables defined in SQLModel metadata if they do not exist.

    Called once when the storefront is opened.
    """
    SQLModel.metadata.create_all(engine)

