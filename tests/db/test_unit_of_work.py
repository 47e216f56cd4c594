"""Unit tests for keyvend.db.unit_of_work -- UnitOfWork."""

from __future__ import annotations

from unittest.mock import MagicMock

import pytest
from psycopg.rows import dict_row

from keyvend.db.unit_of_work import UnitOfWork

# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _mock_database():
    """A Database whose ``transaction()`` yields a mock connection."""
    db = MagicMock()
    conn = MagicMock()
    tx = MagicMock()
    tx.__enter__ = MagicMock(return_value=conn)
    tx.__exit__ = MagicMock(return_value=False)
    db.transaction.return_value = tx
    return db, conn, tx


def _mock_cursor(return_value=None, fetchall_value=None, rowcount=1):
    """Cursor usable as ``with conn.cursor(...) as cur``."""
    cursor = MagicMock()
    cursor.fetchone.return_value = return_value
    cursor.fetchall.return_value = fetchall_value or []
    cursor.rowcount = rowcount
    cursor.__enter__ = MagicMock(return_value=cursor)
    cursor.__exit__ = MagicMock(return_value=False)
    return cursor


# ---------------------------------------------------------------------------
# Context manager behaviour
# ---------------------------------------------------------------------------


class TestContextManager:
    def test_enters_transaction_and_sets_connection(self):
        db, conn, tx = _mock_database()
        uow = UnitOfWork(db)

        with uow as ctx:
            assert ctx is uow
            assert uow._conn is conn

        db.transaction.assert_called_once()
        tx.__enter__.assert_called_once()

    def test_exception_reaches_transaction_exit(self):
        db, _conn, tx = _mock_database()

        with pytest.raises(RuntimeError, match="boom"), UnitOfWork(db):
            raise RuntimeError("boom")

        exc_type = tx.__exit__.call_args[0][0]
        assert exc_type is RuntimeError

    def test_helpers_require_context(self):
        db, _conn, _tx = _mock_database()
        with pytest.raises(AssertionError, match="context manager"):
            UnitOfWork(db).execute("SELECT 1")


# ---------------------------------------------------------------------------
# SQL helpers
# ---------------------------------------------------------------------------


class TestInsertMany:
    def test_insert_many(self):
        db, conn, _tx = _mock_database()
        cursor = _mock_cursor()
        conn.cursor.return_value = cursor

        rows = [
            {"id": "k1", "order_id": 1},
            {"id": "k2", "order_id": 1},
        ]
        with UnitOfWork(db) as uow:
            written = uow.insert_many("access_keys", rows)

        assert written == 2
        sql, params = cursor.executemany.call_args[0]
        assert sql == "INSERT INTO access_keys (id, order_id) VALUES (%s, %s)"
        assert params == [["k1", 1], ["k2", 1]]

    def test_insert_many_empty_is_noop(self):
        db, conn, _tx = _mock_database()
        with UnitOfWork(db) as uow:
            assert uow.insert_many("access_keys", []) == 0
        conn.cursor.assert_not_called()


class TestQueries:
    def test_execute_returns_rowcount(self):
        db, conn, _tx = _mock_database()
        conn.cursor.return_value = _mock_cursor(rowcount=3)
        with UnitOfWork(db) as uow:
            assert uow.execute("DELETE FROM access_keys") == 3

    def test_fetch_all(self):
        db, conn, _tx = _mock_database()
        conn.cursor.return_value = _mock_cursor(fetchall_value=[{"id": 1}, {"id": 2}])
        with UnitOfWork(db) as uow:
            assert uow.fetch_all("SELECT id FROM orders") == [{"id": 1}, {"id": 2}]

    def test_fetch_one(self):
        db, conn, _tx = _mock_database()
        conn.cursor.return_value = _mock_cursor(return_value={"n": 1})
        with UnitOfWork(db) as uow:
            assert uow.fetch_one("SELECT 1 AS n") == {"n": 1}

    def test_fetch_uses_dict_rows(self):
        db, conn, _tx = _mock_database()
        conn.cursor.return_value = _mock_cursor(return_value=None)
        with UnitOfWork(db) as uow:
            assert uow.fetch_one("UPDATE orders SET status = %s WHERE id = %s RETURNING id") is None
        conn.cursor.assert_called_once_with(row_factory=dict_row)

    def test_connection_released_after_exit(self):
        db, _conn, _tx = _mock_database()
        uow = UnitOfWork(db)
        with uow:
            pass
        with pytest.raises(AssertionError):
            uow.fetch_all("SELECT 1")
