"""PostgreSQL compatibility layer — wraps psycopg2 to match sqlite3 API.

When DATABASE_URL starts with postgresql://, this module provides a
connection wrapper that translates:
  - ? placeholders → %s
  - INSERT OR IGNORE → INSERT ... ON CONFLICT DO NOTHING
  - executescript() → split and execute
  - Row factory → dict-like Row objects

``INSERT ... ON CONFLICT (...) DO UPDATE`` upserts are written in the
syntax both engines share and pass through untouched.
"""

from __future__ import annotations

import logging
import re
from typing import Any

logger = logging.getLogger(__name__)


class PgRow:
    """Dict-like row that mimics sqlite3.Row."""

    def __init__(self, columns: list[str], values: tuple):
        self._data = dict(zip(columns, values))

    def __getitem__(self, key: str | int) -> Any:
        if isinstance(key, int):
            return list(self._data.values())[key]
        return self._data[key]

    def __contains__(self, key: str) -> bool:
        return key in self._data

    def keys(self) -> list[str]:
        return list(self._data.keys())

    def get(self, key: str, default: Any = None) -> Any:
        return self._data.get(key, default)

    def __repr__(self) -> str:
        return f"PgRow({self._data})"


def _translate_sql(sql: str) -> str:
    """Translate SQLite SQL to PostgreSQL SQL."""
    translated = sql.replace("?", "%s")

    if re.search(r"INSERT\s+OR\s+IGNORE\s+INTO", sql, flags=re.IGNORECASE):
        translated = re.sub(
            r"INSERT\s+OR\s+IGNORE\s+INTO",
            "INSERT INTO",
            translated,
            flags=re.IGNORECASE,
        )
        if "ON CONFLICT" not in translated.upper():
            translated = translated.rstrip().rstrip(";") + " ON CONFLICT DO NOTHING"

    return translated


def _translate_schema(sql: str) -> str:
    """Translate SQLite schema DDL to PostgreSQL DDL."""
    translated = re.sub(
        r"(\w+)\s+INTEGER\s+PRIMARY\s+KEY\s+AUTOINCREMENT",
        r"\1 SERIAL PRIMARY KEY",
        sql,
        flags=re.IGNORECASE,
    )
    translated = re.sub(r"PRAGMA\s+\w+\s*=\s*\w+\s*;?", "", translated, flags=re.IGNORECASE)
    return translated


class PgCursorWrapper:
    """Wraps a psycopg2 cursor to match sqlite3.Cursor interface."""

    def __init__(self, cursor):
        self._cursor = cursor
        self._last_id = None

    @property
    def lastrowid(self) -> Any:
        return self._last_id

    @property
    def rowcount(self) -> int:
        return self._cursor.rowcount

    @property
    def description(self):
        return self._cursor.description

    def execute(self, sql: str, params: tuple | list = ()) -> "PgCursorWrapper":
        translated = _translate_sql(sql)
        self._last_id = None

        upper = translated.strip().upper()
        if upper.startswith("INSERT") and "RETURNING" not in upper:
            # Tables without an id column make RETURNING fail; the savepoint
            # keeps that failure from aborting the caller's transaction.
            self._cursor.execute("SAVEPOINT pgc_returning")
            try:
                self._cursor.execute(translated + " RETURNING id", params)
            except Exception:
                self._cursor.execute("ROLLBACK TO SAVEPOINT pgc_returning")
            else:
                row = self._cursor.fetchone()
                if row:
                    self._last_id = row[0]
                self._cursor.execute("RELEASE SAVEPOINT pgc_returning")
                return self
            self._cursor.execute("RELEASE SAVEPOINT pgc_returning")

        self._cursor.execute(translated, params)
        return self

    def fetchone(self) -> PgRow | None:
        row = self._cursor.fetchone()
        if row is None:
            return None
        columns = [desc[0] for desc in self._cursor.description or ()]
        return PgRow(columns, row)

    def fetchall(self) -> list[PgRow]:
        if not self._cursor.description:
            return []
        rows = self._cursor.fetchall()
        columns = [desc[0] for desc in self._cursor.description]
        return [PgRow(columns, row) for row in rows]

    def close(self):
        self._cursor.close()


class PgConnectionWrapper:
    """Wraps a psycopg2 connection to match sqlite3.Connection interface."""

    def __init__(self, conn):
        self._conn = conn
        self._conn.autocommit = False

    @property
    def in_transaction(self) -> bool:
        import psycopg2.extensions
        return self._conn.get_transaction_status() != psycopg2.extensions.TRANSACTION_STATUS_IDLE

    def execute(self, sql: str, params: tuple | list = ()) -> PgCursorWrapper:
        cursor = PgCursorWrapper(self._conn.cursor())
        cursor.execute(sql, params)
        return cursor

    def executescript(self, sql: str) -> None:
        """Execute multiple SQL statements (PostgreSQL equivalent)."""
        translated = _translate_schema(sql)
        statements = [s.strip() for s in translated.split(";") if s.strip()]
        cursor = self._conn.cursor()
        for stmt in statements:
            try:
                cursor.execute(stmt)
                self._conn.commit()
            except Exception as e:
                err_msg = str(e).lower()
                if any(phrase in err_msg for phrase in ["already exists", "duplicate column"]):
                    self._conn.rollback()
                    logger.debug("Skipping schema statement: %s", e)
                else:
                    raise
        cursor.close()

    def commit(self):
        self._conn.commit()

    def rollback(self):
        self._conn.rollback()

    def close(self):
        self._conn.close()


def connect_pg(database_url: str) -> PgConnectionWrapper:
    """Create a PostgreSQL connection with sqlite3-compatible interface."""
    import psycopg2

    conn = psycopg2.connect(database_url)
    return PgConnectionWrapper(conn)


def is_postgres_url(url: str) -> bool:
    """Check if a database URL is a PostgreSQL URL."""
    return url.startswith("postgresql://") or url.startswith("postgres://")
