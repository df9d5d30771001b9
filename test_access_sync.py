"""Tests for delta computation, table migration and the sync pass."""

from unittest.mock import Mock

import pytest
from sqlalchemy import text

import access_sync
from access_sync import (
    SyncConnectionError,
    compute_delta,
    fetch_table_rows,
    list_tables,
    migrate_table,
    process_access_database,
    run_sync,
    should_skip_table,
)
from notifications import broadcaster


def _count(engine, table):
    with engine.connect() as conn:
        return conn.execute(text(f'SELECT COUNT(*) FROM "{table}"')).scalar()


def _values(engine, table):
    with engine.connect() as conn:
        return dict(conn.execute(text(f'SELECT * FROM "{table}"')).fetchall())


class TestComputeDelta:
    SNAPSHOT = [
        {"id": 1, "name": "A", "qty": 3},
        {"id": 2, "name": "B", "qty": None},
        {"id": 3, "name": "C", "qty": 0},
    ]

    def test_same_snapshot_is_empty(self):
        delta = compute_delta(self.SNAPSHOT, [dict(r) for r in self.SNAPSHOT])
        assert delta.is_empty()

    def test_first_sync_inserts_everything(self):
        for previous in (None, []):
            delta = compute_delta(previous, self.SNAPSHOT)
            assert delta.inserts == self.SNAPSHOT
            assert delta.updates == []
            assert delta.deletes == []

    def test_empty_current_deletes_everything(self):
        delta = compute_delta(self.SNAPSHOT, [])
        assert delta.to_insert_or_update == []
        assert delta.deletes == self.SNAPSHOT

    def test_changed_value_is_one_update(self):
        delta = compute_delta([{"id": 1, "name": "A"}], [{"id": 1, "name": "B"}])
        assert delta.inserts == []
        assert delta.updates == [{"id": 1, "name": "B"}]
        assert delta.deletes == []

    def test_removed_row_is_one_delete(self):
        delta = compute_delta([{"id": 1}, {"id": 2}], [{"id": 2}])
        assert delta.to_insert_or_update == []
        assert delta.deletes == [{"id": 1}]

    def test_identity_ignores_row_position(self):
        reordered = list(reversed(self.SNAPSHOT))
        assert compute_delta(self.SNAPSHOT, reordered).is_empty()

    def test_no_type_coercion(self):
        delta = compute_delta([{"id": 1, "qty": "3"}], [{"id": 1, "qty": 3}])
        assert delta.updates == [{"id": 1, "qty": 3}]

    def test_output_follows_current_order(self):
        previous = [{"id": 2, "v": "old"}]
        current = [{"id": 3, "v": "x"}, {"id": 2, "v": "new"}, {"id": 1, "v": "y"}]
        delta = compute_delta(previous, current)
        assert [kind for kind, _ in delta.upserts] == ["insert", "update", "insert"]
        assert [row["id"] for row in delta.to_insert_or_update] == [3, 2, 1]


class TestSourceHelpers:
    def test_list_and_fetch(self, access_conn):
        access_conn.create_table("Cookie Orders", ["Order ID", "Flavor"], [(1, "Mint"), (2, None)])

        assert list_tables(access_conn) == ["Cookie Orders"]
        rows = fetch_table_rows(access_conn, "Cookie Orders")
        assert rows == [{"Order ID": 1, "Flavor": "Mint"}, {"Order ID": 2, "Flavor": None}]
        assert list(rows[0]) == ["Order ID", "Flavor"]

    def test_should_skip_table(self):
        assert should_skip_table("~TMPCLP12345")
        assert not should_skip_table("Orders")
        assert not should_skip_table("~tmp", skip_prefix="")


class TestMigrateTable:
    def test_unchanged_table_writes_nothing_on_second_pass(self, access_conn, pg_engine, store, write_log):
        access_conn.create_table("orders", ["id", "name"], [(1, "A"), (2, "B"), (3, "C")])

        first = migrate_table(access_conn, pg_engine, "orders", store)
        writes_after_first = len(write_log)
        second = migrate_table(access_conn, pg_engine, "orders", store)

        assert first.inserted == 3
        assert writes_after_first == 3
        assert second.unchanged is True
        assert len(write_log) == writes_after_first
        assert _count(pg_engine, "orders") == 3

    def test_applies_only_the_changes(self, access_conn, pg_engine, store, write_log):
        access_conn.create_table("orders", ["id", "name"], [(1, "A"), (2, "B"), (3, "C")])
        migrate_table(access_conn, pg_engine, "orders", store)
        write_log.clear()

        access_conn.run("UPDATE orders SET name = 'Z' WHERE id = 1")
        access_conn.run("DELETE FROM orders WHERE id = 2")
        access_conn.run("INSERT INTO orders VALUES (4, 'D')")
        summary = migrate_table(access_conn, pg_engine, "orders", store)

        assert (summary.inserted, summary.updated, summary.deleted) == (1, 1, 1)
        assert len(write_log) == 3
        assert _values(pg_engine, "orders") == {"1": "Z", "3": "C", "4": "D"}

    def test_snapshot_replaced_after_each_pass(self, access_conn, pg_engine, store):
        access_conn.create_table("orders", ["id", "name"], [(1, "A")])
        migrate_table(access_conn, pg_engine, "orders", store)
        access_conn.run("UPDATE orders SET name = 'B'")
        migrate_table(access_conn, pg_engine, "orders", store)

        assert store.get("orders") == [{"id": 1, "name": "B"}]

    def test_emptied_table_deletes_destination_rows(self, access_conn, pg_engine, store):
        access_conn.create_table("orders", ["id", "name"], [(1, "A"), (2, "B")])
        migrate_table(access_conn, pg_engine, "orders", store)
        access_conn.run("DELETE FROM orders")

        summary = migrate_table(access_conn, pg_engine, "orders", store)

        assert summary.deleted == 2
        assert _count(pg_engine, "orders") == 0
        assert store.get("orders") == []

    def test_reserved_table_is_never_fetched(self, pg_engine, store):
        conn = Mock()
        assert migrate_table(conn, pg_engine, "~TMPCLP1", store) is None
        conn.cursor.assert_not_called()
        assert store.get("~TMPCLP1") is None

    def test_fetch_failure_keeps_destination_and_baseline(self, access_conn, pg_engine, store, write_log):
        access_conn.create_table("orders", ["id", "name"], [(1, "A")])
        migrate_table(access_conn, pg_engine, "orders", store)
        write_log.clear()
        access_conn.fail_on.add("orders")

        summary = migrate_table(access_conn, pg_engine, "orders", store)

        assert summary.unchanged is True
        assert write_log == []
        assert _count(pg_engine, "orders") == 1
        assert store.get("orders") == [{"id": 1, "name": "A"}]

    def test_new_source_columns_do_not_alter_destination(self, access_conn, pg_engine, store):
        access_conn.create_table("orders", ["id", "name"], [(1, "A")])
        migrate_table(access_conn, pg_engine, "orders", store)
        access_conn.run("ALTER TABLE orders ADD COLUMN note")
        access_conn.run("UPDATE orders SET note = 'x'")

        summary = migrate_table(access_conn, pg_engine, "orders", store)

        assert summary.failed == 1
        assert _values(pg_engine, "orders") == {"1": "A"}


class TestRunSync:
    def test_one_failing_table_does_not_stop_the_pass(self, access_conn, pg_engine, store, monkeypatch):
        access_conn.create_table("a", ["id"], [(1,)])
        access_conn.create_table("b", ["id"], [(1,)])
        access_conn.create_table("~tmp", ["id"], [(1,)])
        real_migrate = access_sync.migrate_table

        def flaky(conn, engine, table, store_, skip_prefix):
            if table == "a":
                raise RuntimeError("destination went away")
            return real_migrate(conn, engine, table, store_, skip_prefix)

        monkeypatch.setattr(access_sync, "migrate_table", flaky)
        events = broadcaster.subscribe()
        try:
            summary = run_sync(access_conn, pg_engine, store)
        finally:
            broadcaster.unsubscribe(events)

        assert summary.failed == {"a": "destination went away"}
        assert [t.table_name for t in summary.tables] == ["b"]
        assert summary.skipped == ["~tmp"]
        assert summary.finished_at is not None
        messages = []
        while not events.empty():
            messages.append(events.get_nowait()["message"])
        assert any("Data Migration Completed!" in m for m in messages)

    def test_second_pass_reports_no_changes(self, access_conn, pg_engine, store):
        access_conn.create_table("orders", ["id", "name"], [(1, "A"), (2, "B"), (3, "C")])
        run_sync(access_conn, pg_engine, store)

        summary = run_sync(access_conn, pg_engine, store)

        assert summary.changed_tables == []
        assert summary.to_dict()["tables"][0]["writes"] == 0


class TestProcessAccessDatabase:
    ACCESS = {"path": "C:\\db.accdb"}
    PG = {"host": "h", "port": 5432, "database": "d", "username": "u", "password": "p"}

    def test_postgres_unreachable(self, store, monkeypatch):
        def refuse(conf):
            raise OSError("connection refused")

        monkeypatch.setattr(access_sync, "get_pg_engine", refuse)
        with pytest.raises(SyncConnectionError) as exc:
            process_access_database(self.ACCESS, self.PG, store)
        assert exc.value.target == "PostgreSQL"

    def test_access_unreachable_releases_postgres(self, pg_engine, store, monkeypatch):
        engine = Mock(wraps=pg_engine)
        monkeypatch.setattr(access_sync, "get_pg_engine", lambda conf: engine)

        def refuse(conf):
            raise OSError("driver not found")

        monkeypatch.setattr(access_sync, "get_access_connection", refuse)
        with pytest.raises(SyncConnectionError) as exc:
            process_access_database(self.ACCESS, self.PG, store)
        assert exc.value.target == "Access Database"
        engine.dispose.assert_called_once()

    def test_runs_pass_and_closes_connections(self, access_conn, pg_engine, store, monkeypatch):
        access_conn.create_table("orders", ["id"], [(1,), (2,)])
        engine = Mock(wraps=pg_engine)
        monkeypatch.setattr(access_sync, "get_pg_engine", lambda conf: engine)
        monkeypatch.setattr(access_sync, "get_access_connection", lambda conf: access_conn)

        summary = process_access_database(self.ACCESS, self.PG, store)

        assert summary.tables[0].inserted == 2
        assert access_conn.closed is True
        engine.dispose.assert_called_once()
