import os

_ENV_CACHE = None


def _env_file_path():
    return os.environ.get('INFRAFLOW_ENV_FILE') or os.path.join(os.getcwd(), '.env')


def _read_env_file(path=None):
    """Parse simple KEY=VALUE lines from a .env file. Missing file -> {}."""
    path = path or _env_file_path()
    data = {}
    try:
        with open(path, 'r') as f:
            for line in f:
                if not line.strip() or line.strip().startswith('#'):
                    continue
                if '=' in line:
                    k, v = line.split('=', 1)
                    v = v.strip().strip("'\"")
                    data[k.strip()] = v
    except FileNotFoundError:
        pass
    return data


def reload():
    global _ENV_CACHE
    _ENV_CACHE = _read_env_file()
    return _ENV_CACHE


def get(key, default=None):
    # process environment wins over the .env file
    if key in os.environ:
        return os.environ[key]
    global _ENV_CACHE
    if _ENV_CACHE is None:
        reload()
    return _ENV_CACHE.get(key, default)


def get_int(key, default):
    raw = get(key)
    try:
        return int(raw) if raw not in (None, '') else default
    except ValueError:
        return default


def get_float(key, default):
    raw = get(key)
    try:
        return float(raw) if raw not in (None, '') else default
    except ValueError:
        return default


# --- nginx layout ---
def nginx_conf_dir():
    return get('NGINX_CONF_DIR', '/etc/nginx/sites-available')

def nginx_enabled_dir():
    return get('NGINX_ENABLED_DIR', '/etc/nginx/sites-enabled')

def nginx_meta_dir():
    return get('NGINX_META_DIR', '/etc/nginx/infraflow-meta')

def nginx_snippet_dir():
    return get('NGINX_SNIPPET_DIR', '/etc/nginx/snippets')

def error_pages_dir():
    return get('ERROR_PAGES_DIR', '/var/lib/infraflow/error-pages')

def streams_conf_dir():
    return get('STREAMS_CONF_DIR', '/etc/nginx/streams-available')

def streams_enabled_dir():
    return get('STREAMS_ENABLED_DIR', '/etc/nginx/streams-enabled')

def letsencrypt_live_dir():
    return get('LETSENCRYPT_LIVE_DIR', '/etc/letsencrypt/live')


# --- external tools ---
def nginx_bin():
    return get('NGINX_BIN', 'nginx')

def systemctl_bin():
    return get('SYSTEMCTL_BIN', 'systemctl')

def certbot_bin():
    return get('CERTBOT_BIN', 'certbot')


# --- server ---
def port():
    return get_int('PORT', 4000)

def auth_user():
    return get('INFRAFLOW_USER')

def auth_pass():
    return get('INFRAFLOW_PASS')

def frontend_dist():
    default = os.path.normpath(os.path.join(os.path.dirname(__file__), '..', 'frontend', 'dist'))
    return get('FRONTEND_DIST', default)

def log_tail():
    return get_int('LOG_TAIL', 100)

def log_keepalive_seconds():
    return get_float('LOG_KEEPALIVE_SECONDS', 15.0)
