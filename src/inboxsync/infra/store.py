"""Generic row store used by the ingestion pipeline.

The pipeline treats the database as untyped rows behind two calls:
select_by_equality() and insert(). Schema enforcement (including the unique
keys the resolver relies on) is the database's job.
"""

from __future__ import annotations

from typing import Any, Protocol

import psycopg2
import psycopg2.pool
from psycopg2 import sql
from psycopg2.extras import Json

from inboxsync.infra.db import classify_error, create_pool, pooled_conn, txn
from inboxsync.infra.settings import StoreSettings

Row = dict[str, Any]


class RowStore(Protocol):
    """Minimal store interface.

    Implementations raise ConstraintViolation on duplicate keys,
    TransientBackendError on timeouts / lost connections and BackendError
    for anything else.
    """

    def select_by_equality(self, table: str, column: str, value: Any) -> Row | None:
        ...

    def insert(self, table: str, row: Row) -> Row:
        ...


def _adapt(value: Any) -> Any:
    if isinstance(value, (dict, list)):
        return Json(value)
    return value


class PgRowStore:
    """RowStore backed by a psycopg2 connection pool.

    Each call runs in its own short transaction on a pooled connection.
    """

    def __init__(self, pool: psycopg2.pool.AbstractConnectionPool) -> None:
        self._pool = pool

    @classmethod
    def from_settings(cls, settings: StoreSettings) -> "PgRowStore":
        return cls(create_pool(settings))

    def select_by_equality(self, table: str, column: str, value: Any) -> Row | None:
        query = sql.SQL("SELECT * FROM {} WHERE {} = %s LIMIT 1").format(
            sql.Identifier(table), sql.Identifier(column)
        )
        try:
            with pooled_conn(self._pool) as conn, txn(conn) as cur:
                cur.execute(query, (value,))
                row = cur.fetchone()
        except (psycopg2.Error, psycopg2.pool.PoolError) as e:
            raise classify_error(e, table) from e
        return dict(row) if row is not None else None

    def insert(self, table: str, row: Row) -> Row:
        columns = list(row.keys())
        query = sql.SQL("INSERT INTO {} ({}) VALUES ({}) RETURNING *").format(
            sql.Identifier(table),
            sql.SQL(", ").join(sql.Identifier(c) for c in columns),
            sql.SQL(", ").join(sql.Placeholder() for _ in columns),
        )
        params = [_adapt(row[c]) for c in columns]
        try:
            with pooled_conn(self._pool) as conn, txn(conn) as cur:
                cur.execute(query, params)
                inserted = cur.fetchone()
        except (psycopg2.Error, psycopg2.pool.PoolError) as e:
            raise classify_error(e, table) from e
        return dict(inserted)

    def close(self) -> None:
        self._pool.closeall()
