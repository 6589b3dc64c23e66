from __future__ import annotations

from typing import Any, Dict, Iterable

from sqlalchemy import func
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.exc import SQLAlchemyError

from autoflow.errors import DatabaseNotConfigured, PersistenceError
from autoflow.extensions import db

_INSERTS = {
    "postgresql": postgresql.insert,
    "sqlite": sqlite.insert,
}


def upsert(model, values: Dict[str, Any], conflict_columns: Iterable[str], where=None) -> None:
    """
    INSERT ... ON CONFLICT (<natural key>) DO UPDATE, replacing every column
    in ``values``. ``where`` restricts which existing rows may be overwritten.
    The statement commits on its own; any failure rolls back and surfaces as
    PersistenceError.
    """
    conflict_columns = list(conflict_columns)
    try:
        dialect = db.engine.dialect.name
    except Exception as exc:
        raise DatabaseNotConfigured(f"database unavailable: {exc}") from exc

    insert = _INSERTS.get(dialect)
    if insert is None:
        raise DatabaseNotConfigured(f"upsert not supported on dialect {dialect!r}")

    stmt = insert(model.__table__).values(**values)
    update_cols = {k: stmt.excluded[k] for k in values if k not in conflict_columns}
    if "updated_at" in model.__table__.c:
        update_cols["updated_at"] = func.now()
    stmt = stmt.on_conflict_do_update(index_elements=conflict_columns, set_=update_cols, where=where)

    try:
        db.session.execute(stmt)
        db.session.commit()
    except SQLAlchemyError as exc:
        db.session.rollback()
        raise PersistenceError(f"upsert into {model.__tablename__} failed: {exc}") from exc
