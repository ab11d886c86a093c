"""
Dialect-specific INSERT IGNORE / INSERT ... ON DUPLICATE KEY UPDATE.
MySQL is the production target; SQLite and PostgreSQL share the
ON CONFLICT form.
"""
from typing import Dict, Iterable, List

from sqlalchemy import Table
from sqlalchemy.dialects.mysql import insert as mysql_insert
from sqlalchemy.dialects.postgresql import insert as postgresql_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert

ON_CONFLICT_INSERTS = {
    "sqlite": sqlite_insert,
    "postgresql": postgresql_insert,
}


def insert_ignore(table: Table, dialect_name: str):
    """INSERT that silently skips rows violating a unique key."""
    if dialect_name in ("mysql", "mariadb"):
        return mysql_insert(table).prefix_with("IGNORE")
    if dialect_name in ON_CONFLICT_INSERTS:
        return ON_CONFLICT_INSERTS[dialect_name](table).on_conflict_do_nothing()
    raise NotImplementedError(f"insert-ignore not supported for dialect {dialect_name!r}")


def upsert(
    table: Table,
    values: Dict,
    keys: List[str],
    dialect_name: str,
    increments: Iterable[str] = (),
    decays: Iterable[str] = (),
    replaces: Iterable[str] = (),
):
    """
    Insert ``values``; on a key collision add ``increments`` to the stored
    columns, halve-average ``decays`` as (old + new) / 2 and overwrite
    ``replaces``.
    """
    if dialect_name in ("mysql", "mariadb"):
        stmt = mysql_insert(table).values(**values)
        new = stmt.inserted
    elif dialect_name in ON_CONFLICT_INSERTS:
        stmt = ON_CONFLICT_INSERTS[dialect_name](table).values(**values)
        new = stmt.excluded
    else:
        raise NotImplementedError(f"upsert not supported for dialect {dialect_name!r}")

    update = {}
    for column in increments:
        update[column] = table.c[column] + new[column]
    for column in decays:
        update[column] = (table.c[column] + new[column]) / 2.0
    for column in replaces:
        update[column] = new[column]

    if dialect_name in ("mysql", "mariadb"):
        return stmt.on_duplicate_key_update(**update)
    return stmt.on_conflict_do_update(index_elements=keys, set_=update)
