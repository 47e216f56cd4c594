"""One transaction for a group of order and key writes.

``BaseRepository`` methods each borrow their own pooled connection, so a
status change on ``orders`` and the matching ``access_keys`` rows would
otherwise commit independently.  Inside a :class:`UnitOfWork` every
statement runs on the same connection and commits (or rolls back) once::

    with UnitOfWork(db) as uow:
        if uow.fetch_one("UPDATE orders SET ... WHERE id = %s AND status = %s RETURNING id", p):
            uow.insert_many("access_keys", rows)
"""

from __future__ import annotations

from contextlib import contextmanager
from typing import TYPE_CHECKING, Any, Self

from psycopg.rows import dict_row
from pypgkit import Database

if TYPE_CHECKING:
    from collections.abc import Iterator

    from psycopg import Cursor

Params = tuple | list | None


class UnitOfWork:
    def __init__(self, database: Database | None = None) -> None:
        self._db = database or Database.get_instance()
        self._conn = None

    def __enter__(self) -> Self:
        self._tx = self._db.transaction()
        self._conn = self._tx.__enter__()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        try:
            self._tx.__exit__(exc_type, exc_val, exc_tb)
        finally:
            self._conn = None

    @contextmanager
    def _cursor(self, *, rows: bool = False) -> Iterator[Cursor]:
        assert self._conn is not None, "UnitOfWork must be used as a context manager"
        factory = {"row_factory": dict_row} if rows else {}
        with self._conn.cursor(**factory) as cur:
            yield cur

    def insert_many(self, table: str, rows: list[dict[str, Any]]) -> int:
        """Insert *rows* (all with the first row's columns); return the count."""
        if not rows:
            return 0
        columns = list(rows[0])
        sql = "INSERT INTO {} ({}) VALUES ({})".format(
            table,
            ", ".join(columns),
            ", ".join("%s" for _ in columns),
        )
        with self._cursor() as cur:
            cur.executemany(sql, [[row[c] for c in columns] for row in rows])
        return len(rows)

    def execute(self, sql: str, params: Params = None) -> int:
        with self._cursor() as cur:
            cur.execute(sql, params)
            return cur.rowcount

    def fetch_one(self, sql: str, params: Params = None) -> dict[str, Any] | None:
        """Run *sql*; the first row, or ``None`` (a lost compare-and-swap)."""
        with self._cursor(rows=True) as cur:
            cur.execute(sql, params)
            return cur.fetchone()

    def fetch_all(self, sql: str, params: Params = None) -> list[dict[str, Any]]:
        with self._cursor(rows=True) as cur:
            cur.execute(sql, params)
            return cur.fetchall()
