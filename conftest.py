"""Pytest configuration and fixtures."""

import os
import sqlite3
import tempfile
from collections import namedtuple

import pytest
from sqlalchemy import create_engine, event
from sqlalchemy.pool import StaticPool

# Keep the app's log file out of the working tree
os.environ.setdefault("ACCESS_SYNC_LOG", os.path.join(tempfile.gettempdir(), "access_sync_test.log"))
os.environ.setdefault("ACCESS_SYNC_CONFIG", os.path.join(tempfile.gettempdir(), "access_sync_missing.yaml"))

from snapshot_store import SnapshotStore  # noqa: E402

TableRow = namedtuple("TableRow", ["table_cat", "table_schem", "table_name", "table_type", "remarks"])


class FakeAccessCursor:
    """sqlite3 cursor plus the pyodbc ``tables()`` catalog call"""

    def __init__(self, conn, fail_on=None):
        self._conn = conn
        self._cursor = conn.cursor()
        self._fail_on = fail_on or set()

    def tables(self, tableType=None):
        rows = self._conn.execute(
            "SELECT name FROM sqlite_master WHERE type = 'table' ORDER BY name"
        ).fetchall()
        return [TableRow(None, None, name, "TABLE", None) for (name,) in rows]

    def execute(self, sql, *params):
        for table in self._fail_on:
            if f"[{table}]" in sql:
                raise sqlite3.OperationalError(f"simulated read failure on {table}")
        self._cursor.execute(sql, *params)
        return self

    @property
    def description(self):
        return self._cursor.description

    def fetchall(self):
        return self._cursor.fetchall()

    def fetchone(self):
        return self._cursor.fetchone()

    def close(self):
        self._cursor.close()


class FakeAccessConnection:
    def __init__(self):
        self.conn = sqlite3.connect(":memory:", check_same_thread=False)
        self.fail_on = set()
        self.closed = False

    def cursor(self):
        return FakeAccessCursor(self.conn, self.fail_on)

    def run(self, sql, params=()):
        self.conn.execute(sql, params)
        self.conn.commit()

    def create_table(self, name, columns, rows=()):
        cols = ", ".join(f'"{c}"' for c in columns)
        self.run(f'CREATE TABLE "{name}" ({cols})')
        for row in rows:
            placeholders = ", ".join("?" for _ in row)
            self.run(f'INSERT INTO "{name}" VALUES ({placeholders})', tuple(row))

    def close(self):
        self.closed = True
        self.conn.close()


@pytest.fixture
def access_conn():
    conn = FakeAccessConnection()
    yield conn
    if not conn.closed:
        conn.close()


@pytest.fixture
def pg_engine():
    """In-memory destination shared across connections"""
    engine = create_engine(
        "sqlite://",
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
    )
    yield engine
    engine.dispose()


@pytest.fixture
def write_log(pg_engine):
    """Records every INSERT/UPDATE/DELETE sent to the destination"""
    statements = []

    @event.listens_for(pg_engine, "before_cursor_execute")
    def _record(conn, cursor, statement, parameters, context, executemany):
        if statement.lstrip().upper().startswith(("INSERT", "UPDATE", "DELETE")):
            statements.append(statement)

    return statements


@pytest.fixture
def store():
    return SnapshotStore()
