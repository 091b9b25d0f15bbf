"""
Keyed read/write access to the shared data store.

The scanning flow only needs single-row lookups, equality-filtered queries and
partial updates, so this is all the interface offers. Records come back as
plain dicts; every backend failure is raised as ``StoreError``. Unknown
collections and fields are caller errors and raise ``ValueError``.
"""

from __future__ import annotations

from typing import Any, Dict, List, Mapping, Optional, Protocol

from sqlalchemy import select, update
from sqlalchemy.exc import SQLAlchemyError

from .database import session_scope
from .errors import StoreError
from .models import Booking, Profile, Venue, VenueCredit, VenueTable


COLLECTIONS = {
    "venues": Venue,
    "venue_tables": VenueTable,
    "profiles": Profile,
    "bookings": Booking,
    "venue_credits": VenueCredit,
}


class DataStore(Protocol):
    def get(self, collection: str, id: str) -> Optional[Dict[str, Any]]: ...

    def query(self, collection: str, filters: Mapping[str, Any]) -> List[Dict[str, Any]]: ...

    def update(
        self,
        collection: str,
        id: str,
        patch: Mapping[str, Any],
        expected: Optional[Mapping[str, Any]] = None,
    ) -> bool: ...


def _model_for(collection: str):
    try:
        return COLLECTIONS[collection]
    except KeyError:
        raise ValueError(f"Unknown collection: {collection}") from None


def _column(model, field: str):
    if field not in model.__table__.columns:
        raise ValueError(f"Unknown field for {model.__tablename__}: {field}")
    return getattr(model, field)


def _as_dict(obj) -> Dict[str, Any]:
    return {col.key: getattr(obj, col.key) for col in obj.__table__.columns}


class SqlAlchemyStore:
    """DataStore over the service database, one short session per call."""

    def get(self, collection: str, id: str) -> Optional[Dict[str, Any]]:
        model = _model_for(collection)
        try:
            with session_scope() as db:
                obj = db.get(model, id)
                return _as_dict(obj) if obj is not None else None
        except SQLAlchemyError as exc:
            raise StoreError(f"get {collection}/{id} failed", exc) from exc

    def query(self, collection: str, filters: Mapping[str, Any]) -> List[Dict[str, Any]]:
        model = _model_for(collection)
        stmt = select(model)
        for field, value in filters.items():
            stmt = stmt.where(_column(model, field) == value)
        try:
            with session_scope() as db:
                return [_as_dict(obj) for obj in db.execute(stmt).scalars().all()]
        except SQLAlchemyError as exc:
            raise StoreError(f"query {collection} failed", exc) from exc

    def update(
        self,
        collection: str,
        id: str,
        patch: Mapping[str, Any],
        expected: Optional[Mapping[str, Any]] = None,
    ) -> bool:
        """Apply ``patch``; when ``expected`` is given the write only lands if
        those fields still hold the expected values. Returns whether a row changed."""
        model = _model_for(collection)
        stmt = update(model).where(model.id == id)
        for field, value in (expected or {}).items():
            stmt = stmt.where(_column(model, field) == value)
        for field in patch:
            _column(model, field)
        stmt = stmt.values(**dict(patch)).execution_options(synchronize_session=False)
        try:
            with session_scope() as db:
                result = db.execute(stmt)
                return (result.rowcount or 0) > 0
        except SQLAlchemyError as exc:
            raise StoreError(f"update {collection}/{id} failed", exc) from exc
