# storefront/repositories/local_store.py
"""
Durable client-local storage port.

The guest cart and the wishlist are whole JSON documents stored under a
single key each, read once at startup and rewritten on every mutation.
"""

import json
import logging
from typing import Any, Protocol

from sqlalchemy.engine import Engine
from sqlmodel import Session

from storefront.repositories.local_state_repo import LocalStateRepository

logger = logging.getLogger(__name__)


class KeyValueStore(Protocol):
    def get(self, key: str) -> Any | None: ...

    def set(self, key: str, value: Any) -> None: ...

    def delete(self, key: str) -> None: ...


def _decode(key: str, raw: str) -> Any | None:
    try:
        return json.loads(raw)
    except ValueError as e:
        logger.error(f"Error loading '{key}' from local storage: {e}")
        return None


class SqlKeyValueStore:
    """KeyValueStore backed by the `local_state` table."""

    def __init__(self, engine: Engine, repo: LocalStateRepository | None = None):
        self.engine = engine
        self.repo = repo or LocalStateRepository()

    def get(self, key: str) -> Any | None:
        with Session(self.engine) as session:
            row = self.repo.get(session, key)
            if row is None:
                return None
            return _decode(key, row.value)

    def set(self, key: str, value: Any) -> None:
        with Session(self.engine) as session:
            self.repo.upsert(session, key, json.dumps(value))

    def delete(self, key: str) -> None:
        with Session(self.engine) as session:
            self.repo.delete(session, key)


class InMemoryKeyValueStore:
    """
    Process-local KeyValueStore.

    Values are kept JSON-encoded so callers get the same copy semantics as
    with the SQL store.
    """

    def __init__(self, initial: dict[str, str] | None = None):
        self._data: dict[str, str] = dict(initial or {})

    def get(self, key: str) -> Any | None:
        raw = self._data.get(key)
        if raw is None:
            return None
        return _decode(key, raw)

    def set(self, key: str, value: Any) -> None:
        self._data[key] = json.dumps(value)

    def delete(self, key: str) -> None:
        self._data.pop(key, None)

    def raw(self, key: str) -> str | None:
        return self._data.get(key)
