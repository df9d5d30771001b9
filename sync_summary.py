import logging
from sqlalchemy import inspect, text

from access_sync import list_tables, should_skip_table
from db_utils import get_access_connection, get_pg_engine
from load_postgres import quote_identifier

logger = logging.getLogger(__name__)


def get_access_row_counts(access_conn, skip_prefix='~'):
    """Row count per Access table (reserved tables excluded)"""
    counts = {}
    cursor = access_conn.cursor()
    try:
        for table_name in list_tables(access_conn):
            if should_skip_table(table_name, skip_prefix):
                continue
            try:
                cursor.execute(f"SELECT COUNT(*) FROM [{table_name}]")
                counts[table_name] = cursor.fetchone()[0]
            except Exception as e:
                logger.warning(f"Error counting rows in Access table {table_name}: {e}")
                counts[table_name] = None
    finally:
        cursor.close()
    return counts


def get_postgres_row_counts(pg_engine, table_names):
    counts = {}
    existing = set(inspect(pg_engine).get_table_names())
    with pg_engine.connect() as conn:
        for table_name in table_names:
            if table_name not in existing:
                counts[table_name] = None
                continue
            result = conn.execute(text(f"SELECT COUNT(*) FROM {quote_identifier(table_name)}"))
            counts[table_name] = result.scalar()
    return counts


def get_sync_comparison(access_conn, pg_engine, skip_prefix='~'):
    """Compare per-table row counts between Access and PostgreSQL"""
    access_counts = get_access_row_counts(access_conn, skip_prefix)
    pg_counts = get_postgres_row_counts(pg_engine, list(access_counts))

    tables = []
    for table_name, source_rows in access_counts.items():
        destination_rows = pg_counts.get(table_name)
        if destination_rows is None:
            status = 'Missing'
            difference = None
        else:
            difference = destination_rows - (source_rows or 0)
            status = 'Synced' if difference == 0 else 'Incomplete'
        tables.append({
            'table_name': table_name,
            'access_rows': source_rows,
            'postgres_rows': destination_rows,
            'difference': difference,
            'status': status,
        })

    access_total = sum(t['access_rows'] or 0 for t in tables)
    pg_total = sum(t['postgres_rows'] or 0 for t in tables)
    return {
        'tables': tables,
        'comparison': {
            'access_total_rows': access_total,
            'postgres_total_rows': pg_total,
            'difference': pg_total - access_total,
            'sync_percentage': round(pg_total / access_total * 100, 2) if access_total > 0 else 0,
            'synced_tables': sum(1 for t in tables if t['status'] == 'Synced'),
            'total_tables': len(tables),
        },
    }


def get_configured_comparison(access_conf, pg_conf, skip_prefix='~'):
    access_conn = get_access_connection(access_conf)
    pg_engine = get_pg_engine(pg_conf)
    try:
        return get_sync_comparison(access_conn, pg_engine, skip_prefix)
    finally:
        access_conn.close()
        pg_engine.dispose()
