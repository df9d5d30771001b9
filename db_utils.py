from urllib.parse import quote_plus

from sqlalchemy import create_engine, text


def build_access_connection_string(access_conf):
    """Build the ODBC connection string for an .mdb/.accdb file"""
    driver = access_conf.get('driver') or 'Microsoft Access Driver (*.mdb, *.accdb)'
    conn_str = f"DRIVER={{{driver}}};DBQ={access_conf['path']};"
    if access_conf.get('password'):
        conn_str += f"PWD={access_conf['password']};"
    return conn_str


def get_access_connection(access_conf):
    """Return a live pyodbc connection to the Access database"""
    import pyodbc
    return pyodbc.connect(build_access_connection_string(access_conf), autocommit=True)


def get_pg_engine(pg_conf):
    """Get a SQLAlchemy engine for the target PostgreSQL database"""
    password = quote_plus(str(pg_conf['password']))
    conn_str = (
        f"postgresql+psycopg2://{pg_conf['username']}:{password}@"
        f"{pg_conf['host']}:{pg_conf.get('port', 5432)}/{pg_conf['database']}"
    )
    return create_engine(conn_str, pool_pre_ping=True)


def check_pg_connection(engine):
    """Fail fast if PostgreSQL is unreachable"""
    with engine.connect() as conn:
        conn.execute(text("SELECT 1"))
