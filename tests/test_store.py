"""Tests for the psycopg2-backed row store."""

import os
import threading
import time
import uuid
from unittest.mock import MagicMock, patch

import psycopg2
import psycopg2.errors
import psycopg2.pool
import pytest
from psycopg2.extras import Json

from inboxsync.infra.db import BlockingConnectionPool, classify_error, create_pool
from inboxsync.infra.settings import StoreSettings
from inboxsync.infra.store import PgRowStore
from inboxsync.ingest.errors import (
    BackendError,
    ConstraintViolation,
    TransientBackendError,
)


def _mock_pool(fetchone=None, execute_error=None):
    pool = MagicMock()
    conn = pool.getconn.return_value
    conn.closed = 0
    cur = conn.cursor.return_value.__enter__.return_value
    cur.fetchone.return_value = fetchone
    if execute_error is not None:
        cur.execute.side_effect = execute_error
    return pool, conn, cur


class TestSelectByEquality:
    def test_returns_row_as_dict(self):
        pool, conn, cur = _mock_pool(fetchone={"id": "u1", "phone": "5511"})

        row = PgRowStore(pool).select_by_equality("users", "phone", "5511")

        assert row == {"id": "u1", "phone": "5511"}
        assert cur.execute.call_args[0][1] == ("5511",)
        conn.commit.assert_called_once()
        pool.putconn.assert_called_once_with(conn, close=False)

    def test_miss_returns_none(self):
        pool, _conn, _cur = _mock_pool(fetchone=None)

        assert PgRowStore(pool).select_by_equality("users", "phone", "5511") is None

    def test_timeout_is_transient_and_connection_discarded(self):
        pool, conn, _cur = _mock_pool(
            execute_error=psycopg2.OperationalError("canceling statement due to statement timeout")
        )

        with pytest.raises(TransientBackendError):
            PgRowStore(pool).select_by_equality("users", "phone", "5511")

        conn.rollback.assert_called_once()
        pool.putconn.assert_called_once_with(conn, close=True)

    def test_pool_exhausted_is_transient(self):
        pool = MagicMock()
        pool.getconn.side_effect = psycopg2.pool.PoolError("connection pool exhausted")

        with pytest.raises(TransientBackendError):
            PgRowStore(pool).select_by_equality("users", "phone", "5511")


class TestInsert:
    def test_returns_inserted_row_and_wraps_json(self):
        pool, _conn, cur = _mock_pool(fetchone={"id": "m1"})

        row = PgRowStore(pool).insert(
            "messages", {"content": "oi", "metadata": {"raw_event": {}}}
        )

        assert row == {"id": "m1"}
        params = cur.execute.call_args[0][1]
        assert params[0] == "oi"
        assert isinstance(params[1], Json)

    def test_unique_violation_becomes_constraint_violation(self):
        pool, conn, _cur = _mock_pool(
            execute_error=psycopg2.errors.UniqueViolation("duplicate key value")
        )

        with pytest.raises(ConstraintViolation) as exc:
            PgRowStore(pool).insert("users", {"phone": "5511"})

        assert exc.value.table == "users"
        conn.rollback.assert_called_once()
        pool.putconn.assert_called_once_with(conn, close=False)

    def test_other_errors_are_backend_errors(self):
        pool, _conn, _cur = _mock_pool(
            execute_error=psycopg2.errors.CheckViolation("violates check constraint")
        )

        with pytest.raises(BackendError):
            PgRowStore(pool).insert("messages", {"msg_type": "sticker"})


class TestClassifyError:
    def test_interface_error_is_transient(self):
        err = classify_error(psycopg2.InterfaceError("connection already closed"), "users")
        assert isinstance(err, TransientBackendError)

    def test_programming_error_is_backend_error(self):
        err = classify_error(psycopg2.ProgrammingError("relation does not exist"), "users")
        assert isinstance(err, BackendError)


class TestBlockingConnectionPool:
    """More concurrent store calls than pooled connections."""

    def _connections(self, in_flight, peak, lock):
        def execute(*_args):
            with lock:
                in_flight.append(1)
                peak.append(len(in_flight))
            time.sleep(0.02)
            with lock:
                in_flight.pop()

        def connect(*_args, **_kwargs):
            conn = MagicMock()
            conn.closed = 0
            cur = conn.cursor.return_value.__enter__.return_value
            cur.execute.side_effect = execute
            cur.fetchone.return_value = {"id": "u1"}
            return conn

        return connect

    def test_callers_wait_instead_of_failing(self):
        in_flight, peak, lock = [], [], threading.Lock()
        results, errors = [], []

        with patch("psycopg2.connect", side_effect=self._connections(in_flight, peak, lock)):
            pool = BlockingConnectionPool(0, 2, "dbname=app", wait_seconds=5)
            store = PgRowStore(pool)

            def run():
                try:
                    results.append(store.select_by_equality("users", "phone", "5511"))
                except Exception as e:
                    errors.append(e)

            threads = [threading.Thread(target=run) for _ in range(8)]
            for t in threads:
                t.start()
            for t in threads:
                t.join()

        assert errors == []
        assert results == [{"id": "u1"}] * 8
        assert max(peak) <= 2

    def test_wait_timeout_is_transient(self):
        with patch("psycopg2.connect", side_effect=lambda *a, **k: MagicMock(closed=0)):
            pool = BlockingConnectionPool(0, 1, "dbname=app", wait_seconds=0.01)
            held = pool.getconn()

            with pytest.raises(TransientBackendError):
                PgRowStore(pool).select_by_equality("users", "phone", "5511")

            pool.putconn(held)
            assert pool.getconn() is not None

    def test_create_pool_uses_settings(self):
        settings = StoreSettings(url="dbname=app", service_key="k", pool_max=3, pool_wait_seconds=7)

        with patch("psycopg2.connect") as connect:
            pool = create_pool(settings)

        assert isinstance(pool, BlockingConnectionPool)
        assert pool.maxconn == 3
        assert pool._wait_seconds == 7
        assert connect.call_args.kwargs["password"] == "k"


# Integration tests need a migrated database
_skip_no_db = pytest.mark.skipif(
    not (os.environ.get("DATABASE_URL") and os.environ.get("DATABASE_SERVICE_KEY")),
    reason="DATABASE_URL/DATABASE_SERVICE_KEY not set - skipping DB integration tests",
)


@_skip_no_db
class TestPostgresFindOrCreate:
    """Racing resolvers against real UNIQUE constraints."""

    def test_concurrent_sender_resolution(self):
        from inboxsync.infra.settings import load_store_settings
        from inboxsync.ingest.resolver import EntityResolver

        store = PgRowStore.from_settings(load_store_settings())
        address = f"test-{uuid.uuid4().hex[:12]}"
        barrier = threading.Barrier(4)
        results = []

        def run():
            resolver = EntityResolver(store)
            barrier.wait()
            results.append(resolver.resolve_sender(address, "Race", False))

        threads = [threading.Thread(target=run) for _ in range(4)]
        try:
            for t in threads:
                t.start()
            for t in threads:
                t.join()

            assert len(set(results)) == 1
            row = store.select_by_equality("users", "phone", address)
            assert row is not None and str(row["id"]) == results[0]
        finally:
            store.close()
