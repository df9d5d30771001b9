import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional, Tuple

from db_utils import get_access_connection, get_pg_engine, check_pg_connection
from load_postgres import ChangeSummary, ensure_pg_table, apply_delta
from notifications import publish
from snapshot_store import SnapshotStore

logger = logging.getLogger(__name__)

Row = Dict[str, Any]

DEFAULT_SKIP_PREFIX = '~'


class SyncConnectionError(Exception):
    """One of the two databases could not be reached; the pass is aborted."""

    def __init__(self, target, error):
        self.target = target
        self.error = error
        super().__init__(f"Failed to connect to {target}: {error}")


# ------------------------- Source helpers (Access) -------------------------

def list_tables(conn):
    """User tables only; the ODBC 'TABLE' type already excludes MSys* system tables"""
    cursor = conn.cursor()
    try:
        return [row.table_name for row in cursor.tables(tableType='TABLE')]
    finally:
        cursor.close()


def fetch_table_rows(conn, table_name) -> List[Row]:
    cursor = conn.cursor()
    try:
        cursor.execute(f"SELECT * FROM [{table_name}]")
        columns = [col[0] for col in cursor.description]
        return [dict(zip(columns, row)) for row in cursor.fetchall()]
    finally:
        cursor.close()


def should_skip_table(table_name, skip_prefix=DEFAULT_SKIP_PREFIX):
    return bool(skip_prefix) and table_name.startswith(skip_prefix)


# ------------------------- Delta -------------------------

@dataclass
class Delta:
    upserts: List[Tuple[str, Row]] = field(default_factory=list)
    deletes: List[Row] = field(default_factory=list)

    @property
    def to_insert_or_update(self):
        return [row for _, row in self.upserts]

    @property
    def inserts(self):
        return [row for kind, row in self.upserts if kind == 'insert']

    @property
    def updates(self):
        return [row for kind, row in self.upserts if kind == 'update']

    def is_empty(self):
        return not self.upserts and not self.deletes


def row_identity(row):
    """Value of the row's first column"""
    return next(iter(row.values()), None)


def compute_delta(previous: Optional[List[Row]], current: List[Row]) -> Delta:
    """Classify current rows as inserts or updates against the previous snapshot.

    Rows are matched on the value of their first column only, never on position.
    Previous rows whose key is gone from the current snapshot become deletes.
    """
    previous = previous or []
    previous_by_key = {row_identity(row): row for row in previous}
    current_keys = {row_identity(row) for row in current}

    delta = Delta()
    delta.deletes = [row for row in previous if row_identity(row) not in current_keys]

    for row in current:
        key = row_identity(row)
        if key not in previous_by_key:
            delta.upserts.append(('insert', row))
        elif row != previous_by_key[key]:
            delta.upserts.append(('update', row))
    return delta


# ------------------------- Table migration -------------------------

def migrate_table(access_conn, pg_engine, table_name, store: SnapshotStore,
                  skip_prefix=DEFAULT_SKIP_PREFIX) -> Optional[ChangeSummary]:
    """Mirror one Access table into PostgreSQL. Returns None for skipped tables.

    A failed read applies nothing and keeps the previous snapshot, so the next
    successful read is diffed against the last good state.
    """
    if should_skip_table(table_name, skip_prefix):
        logger.info(f"Skipping reserved table {table_name}")
        return None

    publish(f"📥 Fetching data from {table_name}...")
    previous = store.get(table_name)
    try:
        current = fetch_table_rows(access_conn, table_name)
    except Exception as e:
        # previous snapshot stays in place; nothing is deleted on a failed read
        publish(f"❌ Error fetching data from {table_name}: {e}", logging.ERROR)
        return ChangeSummary(table_name, unchanged=True)
    publish(f"📊 Found {len(current)} records in {table_name}")

    baseline = previous if previous is not None else []
    if len(baseline) == len(current) and baseline == current:
        store.put(table_name, current)
        summary = ChangeSummary(table_name, unchanged=True)
        publish(f"✔️ {summary.describe()}")
        return summary

    if current:
        if ensure_pg_table(pg_engine, table_name, current[0]):
            publish(f"✅ Table \"{table_name}\" ensured in PostgreSQL")
        else:
            publish(f"❌ Error creating table {table_name}", logging.ERROR)

    delta = compute_delta(previous, current)
    summary = apply_delta(pg_engine, table_name, delta)
    store.put(table_name, current)

    if summary.failed:
        publish(f"⚠️ {summary.describe()}", logging.WARNING)
    else:
        publish(f"✅ {summary.describe()}")
    return summary


# ------------------------- Sync pass -------------------------

@dataclass
class PassSummary:
    started_at: datetime
    finished_at: Optional[datetime] = None
    tables: List[ChangeSummary] = field(default_factory=list)
    skipped: List[str] = field(default_factory=list)
    failed: Dict[str, str] = field(default_factory=dict)

    @property
    def changed_tables(self):
        return [t for t in self.tables if not t.unchanged and t.writes]

    def to_dict(self):
        return {
            'started_at': self.started_at.isoformat(),
            'finished_at': self.finished_at.isoformat() if self.finished_at else None,
            'tables': [t.to_dict() for t in self.tables],
            'skipped': list(self.skipped),
            'failed': dict(self.failed),
        }

    def describe(self):
        return (
            f"{len(self.tables)} tables synced, {len(self.changed_tables)} changed, "
            f"{len(self.failed)} failed, {len(self.skipped)} skipped"
        )


def run_sync(access_conn, pg_engine, store: SnapshotStore, skip_prefix=DEFAULT_SKIP_PREFIX) -> PassSummary:
    """One pass over every source table, strictly one table at a time."""
    summary = PassSummary(started_at=datetime.now())
    tables = list_tables(access_conn)
    publish(f"📂 Tables Found: {', '.join(tables) if tables else 'none'}")

    for table in tables:
        try:
            result = migrate_table(access_conn, pg_engine, table, store, skip_prefix)
        except Exception as e:
            summary.failed[table] = str(e)
            publish(f"❌ Failed to migrate {table}: {e}", logging.ERROR)
            continue
        if result is None:
            summary.skipped.append(table)
        else:
            summary.tables.append(result)

    summary.finished_at = datetime.now()
    publish(f"✅ Data Migration Completed! ({summary.describe()})")
    return summary


def process_access_database(access_conf, pg_conf, store: SnapshotStore, skip_prefix=DEFAULT_SKIP_PREFIX) -> PassSummary:
    """Connect to both databases, run one pass, and always release the connections."""
    publish("🔗 Connecting to PostgreSQL...")
    try:
        pg_engine = get_pg_engine(pg_conf)
        check_pg_connection(pg_engine)
    except Exception as e:
        publish(f"❌ PostgreSQL Connection Error: {e}", logging.ERROR)
        raise SyncConnectionError('PostgreSQL', e) from e
    publish("✅ Connected to PostgreSQL")

    publish("🔗 Connecting to Access Database...")
    try:
        access_conn = get_access_connection(access_conf)
    except Exception as e:
        pg_engine.dispose()
        publish(f"❌ Access Connection Error: {e}", logging.ERROR)
        raise SyncConnectionError('Access Database', e) from e
    publish("✅ Connected to Access Database")

    try:
        return run_sync(access_conn, pg_engine, store, skip_prefix)
    finally:
        access_conn.close()
        pg_engine.dispose()
