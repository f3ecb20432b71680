"""
Conflict-tolerant inserts.

Both the webhook inbox and the entitlement version ledger create rows whose
natural key may be inserted by a concurrent writer at the same moment. The
loser of that race must not fail; it re-reads the winner's row instead.

PostgreSQL and SQLite support INSERT ... ON CONFLICT DO NOTHING, which never
raises and leaves the surrounding transaction usable. Other dialects fall
back to a savepoint so the IntegrityError only rolls back the insert.
"""

import logging
from typing import Any, Dict, Sequence

from sqlalchemy import insert
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

logger = logging.getLogger(__name__)

_DIALECT_INSERTS = {
    "postgresql": postgresql.insert,
    "sqlite": sqlite.insert,
}


def insert_ignoring_conflict(
    db: Session,
    model,
    values: Dict[str, Any],
    index_elements: Sequence[str],
) -> bool:
    """
    Insert one row unless a row with the same unique key already exists.

    Returns:
        True if this call inserted the row, False if another writer got there first.
    """
    dialect_insert = _DIALECT_INSERTS.get(db.get_bind().dialect.name)

    if dialect_insert is not None:
        stmt = (
            dialect_insert(model)
            .values(**values)
            .on_conflict_do_nothing(index_elements=list(index_elements))
        )
        result = db.connection().execute(stmt)
        return result.rowcount == 1

    try:
        with db.begin_nested():
            db.connection().execute(insert(model).values(**values))
        return True
    except IntegrityError:
        logger.debug(
            "Insert lost unique-key race",
            extra={"table": model.__tablename__, "key": list(index_elements)},
        )
        return False
