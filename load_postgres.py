import re
import logging
from dataclasses import dataclass, asdict
from sqlalchemy import text

logger = logging.getLogger(__name__)

_WHITESPACE = re.compile(r'\s+')
_UNSAFE = re.compile(r'[^A-Za-z0-9_]')


def normalize_column_name(name):
    """Map a source column name to a safe destination identifier.

    Whitespace runs become a single underscore, then anything outside
    [A-Za-z0-9_] is dropped. Distinct names may collide.
    """
    cleaned = _UNSAFE.sub('', _WHITESPACE.sub('_', str(name)))
    return cleaned or 'column'


def quote_identifier(name):
    return '"' + str(name).replace('"', '""') + '"'


def serialize_value(value):
    """Bind every value as text; None stays NULL"""
    if value is None:
        return None
    if isinstance(value, (bytes, bytearray, memoryview)):
        return bytes(value).hex()
    return str(value)


@dataclass
class ChangeSummary:
    table_name: str
    inserted: int = 0
    updated: int = 0
    deleted: int = 0
    failed: int = 0
    unchanged: bool = False

    @property
    def writes(self):
        return self.inserted + self.updated + self.deleted

    def to_dict(self):
        data = asdict(self)
        data['writes'] = self.writes
        return data

    def describe(self):
        if self.unchanged:
            return f"No changes in {self.table_name}"
        message = f"{self.table_name}: {self.inserted} inserted, {self.updated} updated, {self.deleted} deleted"
        if self.failed:
            message += f", {self.failed} failed"
        return message


# ------------------------- Schema -------------------------

def build_create_table_sql(table_name, sample_row):
    columns = [normalize_column_name(col) for col in sample_row.keys()]
    if not columns:
        raise ValueError(f"Cannot create {table_name} from a row without columns")
    columns_def = ', '.join(f'{quote_identifier(col)} TEXT' for col in columns)
    primary_key = quote_identifier(columns[0])
    return f'CREATE TABLE IF NOT EXISTS {quote_identifier(table_name)} ({columns_def}, PRIMARY KEY ({primary_key}))'


def ensure_pg_table(engine, table_name, sample_row):
    """Create the destination table from a sample row if it does not exist yet.

    Existing tables are left as they are, even when the sample row has
    columns they lack. Returns False on failure instead of raising.
    """
    try:
        create_table_sql = build_create_table_sql(table_name, sample_row)
        with engine.connect() as conn:
            conn.execute(text(create_table_sql))
            conn.commit()
        logger.info(f"Table '{table_name}' ensured in PostgreSQL")
        return True
    except Exception as e:
        logger.error(f"Error creating table {table_name}: {e}")
        return False


# ------------------------- Rows -------------------------

def build_upsert_sql(table_name, row):
    columns = [quote_identifier(normalize_column_name(col)) for col in row.keys()]
    placeholders = ', '.join(f':v{i}' for i in range(len(columns)))
    updates = ', '.join(f'{col} = EXCLUDED.{col}' for col in columns)
    sql = (
        f'INSERT INTO {quote_identifier(table_name)} ({", ".join(columns)}) VALUES ({placeholders}) '
        f'ON CONFLICT ({columns[0]}) DO UPDATE SET {updates}'
    )
    params = {f'v{i}': serialize_value(value) for i, value in enumerate(row.values())}
    return sql, params


def build_delete_sql(table_name, row):
    pk_column, pk_value = next(iter(row.items()))
    sql = f'DELETE FROM {quote_identifier(table_name)} WHERE {quote_identifier(normalize_column_name(pk_column))} = :pk'
    return sql, {'pk': serialize_value(pk_value)}


def _row_identity(row):
    return next(iter(row.values()), None)


def apply_delta(engine, table_name, delta):
    """Write a computed delta to PostgreSQL, one transaction per row.

    A failing row is rolled back and logged; the remaining rows still run.
    """
    summary = ChangeSummary(table_name)
    with engine.connect() as conn:
        for kind, row in delta.upserts:
            try:
                sql, params = build_upsert_sql(table_name, row)
                conn.execute(text(sql), params)
                conn.commit()
            except Exception as e:
                conn.rollback()
                summary.failed += 1
                logger.error(f"Failed to upsert row {_row_identity(row)!r} into {table_name}: {e}")
                continue
            if kind == 'insert':
                summary.inserted += 1
            else:
                summary.updated += 1

        for row in delta.deletes:
            try:
                sql, params = build_delete_sql(table_name, row)
                conn.execute(text(sql), params)
                conn.commit()
                summary.deleted += 1
            except Exception as e:
                conn.rollback()
                summary.failed += 1
                logger.error(f"Failed to delete row {_row_identity(row)!r} from {table_name}: {e}")
    return summary
