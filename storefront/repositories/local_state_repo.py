# storefront/repositories/local_state_repo.py
from datetime import datetime, timezone

from sqlmodel import Session

from storefront.models.local_state import LocalState


class LocalStateRepository:
    """
    Data access layer for LocalState rows.

    - Pure DB operations.
    - No JSON handling, no business logic.
    """

    def get(self, session: Session, key: str) -> LocalState | None:
        return session.get(LocalState, key)

    def upsert(self, session: Session, key: str, value: str) -> LocalState:
        row = session.get(LocalState, key)
        if row is None:
            row = LocalState(key=key, value=value)
        else:
            row.value = value
            row.updated_at = datetime.now(timezone.utc)
        session.add(row)
        session.commit()
        session.refresh(row)
        return row

    def delete(self, session: Session, key: str) -> None:
        row = session.get(LocalState, key)
        if row is not None:
            session.delete(row)
            session.commit()
