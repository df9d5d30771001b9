import yaml
import argparse
import os

CONFIG_PATH = os.environ.get(
    'ACCESS_SYNC_CONFIG',
    os.path.abspath(os.path.join(os.path.dirname(__file__), 'config/db_connections.yaml'))
)

DEFAULT_DRIVER = 'Microsoft Access Driver (*.mdb, *.accdb)'
DEFAULT_INTERVAL_MINUTES = 1
DEFAULT_SKIP_PREFIX = '~'


class ConfigError(ValueError):
    """A config value is present but unusable."""


def default_config():
    return {
        'access': {'path': None, 'driver': DEFAULT_DRIVER},
        'postgresql': {
            'host': 'localhost',
            'port': 5432,
            'database': None,
            'username': None,
            'password': None,
        },
        'sync': {
            'interval_minutes': DEFAULT_INTERVAL_MINUTES,
            'skip_prefix': DEFAULT_SKIP_PREFIX,
        },
    }


def load_config(path=None):
    """Load the YAML config, filling any missing section or key with defaults."""
    path = path or CONFIG_PATH
    config = default_config()
    if os.path.exists(path):
        with open(path, 'r') as f:
            loaded = yaml.safe_load(f) or {}
        for section, values in loaded.items():
            if isinstance(values, dict) and section in config:
                config[section].update(values)
            else:
                config[section] = values
    interval = os.environ.get('ACCESS_SYNC_INTERVAL_MINUTES')
    if interval:
        try:
            config['sync']['interval_minutes'] = int(interval)
        except ValueError:
            raise ConfigError(f"ACCESS_SYNC_INTERVAL_MINUTES must be a whole number of minutes, got {interval!r}") from None
    return config


def save_config(config, path=None):
    path = path or CONFIG_PATH
    os.makedirs(os.path.dirname(path), exist_ok=True)
    with open(path, 'w') as f:
        yaml.safe_dump(config, f, default_flow_style=False)


def get_sync_interval(config=None):
    config = config or load_config()
    minutes = config['sync'].get('interval_minutes')
    if minutes is None:
        return DEFAULT_INTERVAL_MINUTES
    try:
        minutes = int(minutes)
    except (TypeError, ValueError):
        raise ConfigError(f"Sync interval must be a whole number of minutes, got {minutes!r}") from None
    if minutes < 1:
        raise ConfigError(f"Sync interval must be at least 1 minute, got {minutes}")
    return minutes


def get_skip_prefix(config=None):
    config = config or load_config()
    return config['sync'].get('skip_prefix') or DEFAULT_SKIP_PREFIX


def merge_request_config(config, payload):
    """
    Overlay the connection fields of a migration request on the configured values.

    Request keys follow the HTTP API: accessDbPath, user, host, database, password, port.
    Returns (access_conf, pg_conf).
    """
    payload = payload or {}
    access_conf = dict(config.get('access') or {})
    pg_conf = dict(config.get('postgresql') or {})

    if payload.get('accessDbPath'):
        access_conf['path'] = payload['accessDbPath']
    field_map = {'user': 'username', 'host': 'host', 'database': 'database', 'password': 'password'}
    for request_key, conf_key in field_map.items():
        if payload.get(request_key):
            pg_conf[conf_key] = payload[request_key]
    if payload.get('port'):
        pg_conf['port'] = int(payload['port'])
    pg_conf.setdefault('port', 5432)
    return access_conf, pg_conf


def missing_connection_fields(access_conf, pg_conf):
    missing = []
    if not access_conf.get('path'):
        missing.append('accessDbPath')
    for key in ('host', 'database', 'username', 'password'):
        if not pg_conf.get(key):
            missing.append('user' if key == 'username' else key)
    return missing


def show_config():
    config = load_config()
    access = config['access']
    pg = config['postgresql']
    print(f"Access   -> {access.get('path') or '-'} (driver: {access.get('driver')})")
    print(f"Postgres -> {pg.get('host')}:{pg.get('port')}/{pg.get('database') or '-'} (user: {pg.get('username') or '-'})")
    print(f"Sync     -> every {config['sync']['interval_minutes']}m, skipping tables starting with '{config['sync']['skip_prefix']}'")


def set_access_path(path):
    config = load_config()
    config['access']['path'] = path
    save_config(config)
    print(f"✅ Access database set to {path}")


def set_postgres(host, database, username, password, port=5432):
    config = load_config()
    config['postgresql'].update({
        'host': host,
        'database': database,
        'username': username,
        'password': password,
        'port': int(port),
    })
    save_config(config)
    print(f"✅ PostgreSQL target set to {host}:{port}/{database}")


def set_interval(minutes):
    config = load_config()
    config['sync']['interval_minutes'] = int(minutes)
    get_sync_interval(config)
    save_config(config)
    print(f"✅ Sync interval set to {minutes} minute(s)")


if __name__ == '__main__':
    parser = argparse.ArgumentParser()
    parser.add_argument('--show', action='store_true', help='Show current configuration')
    parser.add_argument('--access', metavar='PATH', help='Set Access database path')
    parser.add_argument('--postgres', nargs=4, metavar=('HOST', 'DATABASE', 'USER', 'PASSWORD'), help='Set PostgreSQL target')
    parser.add_argument('--port', type=int, default=5432, help='PostgreSQL port used with --postgres')
    parser.add_argument('--interval', type=int, metavar='MINUTES', help='Set sync interval')
    args = parser.parse_args()

    if args.access:
        set_access_path(args.access)
    if args.postgres:
        set_postgres(*args.postgres, port=args.port)
    if args.interval:
        set_interval(args.interval)
    if args.show or not (args.access or args.postgres or args.interval):
        show_config()
