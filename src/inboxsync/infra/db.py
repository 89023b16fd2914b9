"""Database access layer using psycopg2.

Provides:
- create_pool(): Threaded connection pool built once per worker process
- BlockingConnectionPool: pool that waits for a free connection
- pooled_conn(): Check a connection out of the pool and return it
- txn(): Context manager for short, safe transactions
- classify_error(): Map psycopg2 errors onto the ingestion error taxonomy
"""

from __future__ import annotations

import threading
from contextlib import contextmanager
from typing import Iterator

import psycopg2
import psycopg2.errors
import psycopg2.pool
from psycopg2.extensions import connection as PgConnection, cursor as PgCursor
from psycopg2.extras import RealDictCursor

from inboxsync.infra.settings import StoreSettings
from inboxsync.ingest.errors import (
    BackendError,
    ConstraintViolation,
    IngestError,
    TransientBackendError,
)


class BlockingConnectionPool(psycopg2.pool.ThreadedConnectionPool):
    """ThreadedConnectionPool whose getconn() waits for a free connection.

    The stock pool raises PoolError as soon as maxconn connections are out.
    Here callers queue on a semaphore sized to maxconn and only get
    PoolError after waiting wait_seconds.
    """

    def __init__(self, minconn: int, maxconn: int, *args, wait_seconds: float | None = None, **kwargs):
        self._slots = threading.BoundedSemaphore(maxconn)
        self._wait_seconds = wait_seconds
        super().__init__(minconn, maxconn, *args, **kwargs)

    def getconn(self, key=None):
        if not self._slots.acquire(timeout=self._wait_seconds):
            raise psycopg2.pool.PoolError(
                f"no free connection after {self._wait_seconds}s"
            )
        try:
            return super().getconn(key)
        except BaseException:
            self._slots.release()
            raise

    def putconn(self, conn=None, key=None, close=False):
        try:
            super().putconn(conn, key, close)
        finally:
            self._slots.release()


def create_pool(settings: StoreSettings) -> BlockingConnectionPool:
    """Create the connection pool for the ingestion store.

    Every connection authenticates with the service key and carries a
    statement_timeout, so each store call is bounded. At most pool_max
    store calls run at once; the rest wait up to pool_wait_seconds.

    Raises:
        psycopg2.Error: On connection failure.
    """
    return BlockingConnectionPool(
        1,
        settings.pool_max,
        settings.url,
        wait_seconds=settings.pool_wait_seconds,
        password=settings.service_key,
        connect_timeout=settings.connect_timeout,
        options=f"-c statement_timeout={settings.statement_timeout_ms}",
    )


@contextmanager
def pooled_conn(pool: psycopg2.pool.AbstractConnectionPool) -> Iterator[PgConnection]:
    """Borrow a connection; broken connections are discarded, not reused."""
    conn = pool.getconn()
    broken = False
    try:
        yield conn
    except (psycopg2.OperationalError, psycopg2.InterfaceError):
        broken = True
        raise
    finally:
        pool.putconn(conn, close=broken or bool(conn.closed))


@contextmanager
def txn(conn: PgConnection) -> Iterator[PgCursor]:
    """Context manager for a short, safe transaction.

    Commits on successful exit, rolls back on exception. Rows are returned
    as dicts.

    Example:
        with txn(conn) as cur:
            cur.execute("SELECT id FROM users WHERE phone = %s", (phone,))
    """
    try:
        with conn.cursor(cursor_factory=RealDictCursor) as cur:
            yield cur
        conn.commit()
    except Exception:
        if not conn.closed:
            conn.rollback()
        raise


def classify_error(exc: Exception, table: str) -> IngestError:
    """Translate a driver error into the pipeline's error taxonomy."""
    if isinstance(exc, psycopg2.errors.UniqueViolation):
        diag = getattr(exc, "diag", None)
        return ConstraintViolation(table, getattr(diag, "constraint_name", None))
    if isinstance(exc, (psycopg2.OperationalError, psycopg2.InterfaceError, psycopg2.pool.PoolError)):
        return TransientBackendError(f"{table}: {exc}".strip())
    return BackendError(f"{table}: {exc}".strip())
