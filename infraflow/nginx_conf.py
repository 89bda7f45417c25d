"""nginx site and stream files.

Sites live in ``sites-available`` with a symlink in ``sites-enabled`` and a JSON
sidecar holding the form that produced them, so the panel can reopen a site
for editing. Stream forwards only have the ``.conf`` file; their form is parsed
back out of it.
"""
import json
import logging
import os
import re

from . import config

log = logging.getLogger(__name__)

SNIPPET_NAME = 'custom_error_pages.conf'

SSL_LISTEN_OFF = '# listen 443 ssl http2; # Will be enabled after SSL certificate generation'
SSL_CERT_OFF = '# SSL Config (Certbot will manage these after certificate generation)'
SSL_REDIRECT_OFF = '# HTTP to HTTPS redirect will be enabled after SSL setup'

SSL_CIPHERS = ('ECDHE-ECDSA-AES128-GCM-SHA256:ECDHE-RSA-AES128-GCM-SHA256:'
               'ECDHE-ECDSA-AES256-GCM-SHA384:ECDHE-RSA-AES256-GCM-SHA384')
CORS_HEADERS = 'DNT,User-Agent,X-Requested-With,If-Modified-Since,Cache-Control,Content-Type,Range'

_PROXY_PASS_RE = re.compile(r'proxy_pass http://(.+):(\d+);')
_STREAM_LISTEN_RE = re.compile(r'listen (\d+)( udp)?;')
_STREAM_PROXY_RE = re.compile(r'proxy_pass (.+):(\d+);')


def _site_paths(domain):
    fname = f'{domain}.conf'
    return (os.path.join(config.nginx_conf_dir(), fname),
            os.path.join(config.nginx_enabled_dir(), fname),
            os.path.join(config.nginx_meta_dir(), f'{domain}.json'))


def cert_paths(domain):
    live = os.path.join(config.letsencrypt_live_dir(), domain)
    return os.path.join(live, 'fullchain.pem'), os.path.join(live, 'privkey.pem')


def certificates_exist(domain):
    return all(os.path.exists(p) for p in cert_paths(domain))


def ensure_error_snippet():
    """Write the shared error-page snippet every site includes. Returns its path."""
    snippet_dir = config.nginx_snippet_dir()
    pages = config.error_pages_dir()
    content = '\n'.join([
        'error_page 404 /404.html;',
        'error_page 502 503 504 /502.html;',
        '',
        'location = /404.html {',
        f'    root {pages};',
        '    internal;',
        '}',
        '',
        'location = /502.html {',
        f'    root {pages};',
        '    internal;',
        '}',
    ])
    os.makedirs(snippet_dir, exist_ok=True)
    path = os.path.join(snippet_dir, SNIPPET_NAME)
    with open(path, 'w') as f:
        f.write(content)
    return path


def _zone_id(zone, domain):
    # zones are declared at http level, so keep them unique per site file
    return f"{zone}_{re.sub(r'[^A-Za-z0-9_]', '_', domain)}"


def _render_location(loc, domain):
    timeout = loc.get('proxyTimeout') or '60'
    buf_size = loc.get('bufferSize') or '4k'
    buf_count = loc.get('bufferCount') or '8'
    lines = [
        f"    location {loc.get('path') or '/'} {{",
        f"        proxy_pass http://{loc.get('targetIp')}:{loc.get('targetPort')};",
        '        proxy_set_header Host $host;',
        '        proxy_set_header X-Real-IP $remote_addr;',
        '        proxy_set_header X-Forwarded-For $proxy_add_x_forwarded_for;',
        '        proxy_set_header X-Forwarded-Proto $scheme;',
    ]
    if loc.get('websocket'):
        lines += [
            '        proxy_set_header Upgrade $http_upgrade;',
            '        proxy_set_header Connection "upgrade";',
        ]
    lines += [
        '',
        '        # Proxy timeouts',
        f'        proxy_connect_timeout {timeout}s;',
        f'        proxy_send_timeout {timeout}s;',
        f'        proxy_read_timeout {timeout}s;',
        '',
        '        # Buffer settings',
        f"        proxy_buffering {'off' if loc.get('enableBuffering') is False else 'on'};",
        f'        proxy_buffer_size {buf_size};',
        f'        proxy_buffers {buf_count} {buf_size};',
    ]
    for h in loc.get('customHeaders') or []:
        if isinstance(h, dict) and h.get('name') and h.get('value'):
            lines.append(f"        add_header {h['name']} \"{h['value']}\";")
    if loc.get('enableCors'):
        lines += [
            f"        add_header 'Access-Control-Allow-Origin' '{loc.get('corsOrigin') or '*'}';",
            f"        add_header 'Access-Control-Allow-Methods' '{loc.get('corsMethods') or 'GET, POST, OPTIONS'}';",
            f"        add_header 'Access-Control-Allow-Headers' '{loc.get('corsHeaders') or CORS_HEADERS}';",
            "        if ($request_method = 'OPTIONS') {",
            "            add_header 'Access-Control-Max-Age' 1728000;",
            "            add_header 'Content-Type' 'text/plain; charset=utf-8';",
            "            add_header 'Content-Length' 0;",
            '            return 204;',
            '        }',
        ]
    if loc.get('enableRateLimit'):
        zone = _zone_id(loc.get('rateLimitZone') or 'general', domain)
        lines.append(f"        limit_req zone={zone} burst={loc.get('rateLimitBurst') or '10'} nodelay;")
    if loc.get('enableCache'):
        lines += [
            f"        proxy_cache_valid 200 {loc.get('cacheTime') or '10m'};",
            '        proxy_cache_bypass $http_pragma $http_authorization;',
            '        add_header X-Cache-Status $upstream_cache_status;',
        ]
    allowed = [ip for ip in (loc.get('allowedIps') or []) if ip]
    if allowed:
        lines += [f'        allow {ip};' for ip in allowed]
        lines.append('        deny all;')
    if loc.get('customDirectives'):
        lines += ['        ' + d.strip() for d in str(loc['customDirectives']).splitlines() if d.strip()]
    lines.append('    }')
    return '\n'.join(lines)


def render_site(form, ssl_ready=None):
    """Build a server block from the site form.

    ``ssl_ready`` defaults to whether certbot already left certificates for the
    domain; without them the SSL lines are emitted as commented markers that
    ``enable_ssl`` swaps in later.
    """
    if form.get('advancedMode') and form.get('rawContent'):
        return form['rawContent']
    domain = form['domain']
    locations = [l for l in (form.get('locations') or []) if isinstance(l, dict)]
    if ssl_ready is None:
        ssl_ready = certificates_exist(domain)
    cert, key = cert_paths(domain)
    rate = '100' if 'api' in domain else '10'

    zones = []
    for loc in locations:
        if loc.get('enableRateLimit'):
            z = _zone_id(loc.get('rateLimitZone') or 'general', domain)
            if z not in zones:
                zones.append(z)

    out = []
    if zones:
        out.append('# Rate limiting zones')
        out += [f'limit_req_zone $binary_remote_addr zone={z}:10m rate={rate}r/s;' for z in zones]
        out.append('')
    out += [
        'server {',
        '    listen 80;',
        '    listen 443 ssl http2;' if ssl_ready else f'    {SSL_LISTEN_OFF}',
        f'    server_name {domain};',
        f'    include {os.path.join(config.nginx_snippet_dir(), SNIPPET_NAME)};',
        f"    client_max_body_size {form.get('clientMaxBodySize') or '10M'};",
        '',
    ]
    out += _ssl_block(cert, key) if ssl_ready else [f'    {SSL_CERT_OFF}']
    out += [
        '    ssl_protocols TLSv1.2 TLSv1.3;',
        '    ssl_prefer_server_ciphers on;',
        f"    ssl_ciphers '{SSL_CIPHERS}';",
        '',
    ]
    out += _redirect_block() if ssl_ready else [f'    {SSL_REDIRECT_OFF}']
    for loc in locations:
        out.append('')
        out.append(_render_location(loc, domain))
    out.append('}')
    return '\n'.join(out) + '\n'


def _ssl_block(cert, key):
    return ['    # SSL Configuration',
            f'    ssl_certificate {cert};',
            f'    ssl_certificate_key {key};']


def _redirect_block():
    return ['    if ($scheme = http) {',
            '        return 301 https://$host$request_uri;',
            '    }']


def enable_ssl(content, domain):
    """Replace the commented SSL markers of a rendered site with live directives."""
    cert, key = cert_paths(domain)
    content = content.replace(SSL_LISTEN_OFF, 'listen 443 ssl http2;')
    content = content.replace(SSL_CERT_OFF, '\n'.join(_ssl_block(cert, key)).lstrip())
    content = content.replace(SSL_REDIRECT_OFF, '\n'.join(_redirect_block()).lstrip())
    return content


def default_site(domain):
    return '\n'.join([
        'server {',
        '    listen 80;',
        f'    server_name {domain};',
        '',
        '    location / {',
        '        proxy_pass http://localhost:3000;',
        '        proxy_set_header Host $host;',
        '        proxy_set_header X-Real-IP $remote_addr;',
        '    }',
        '}',
    ]) + '\n'


def _symlink(target, link):
    if os.path.lexists(link):
        return
    os.makedirs(os.path.dirname(link), exist_ok=True)
    try:
        os.symlink(target, link)
    except FileExistsError:
        pass


def _unlink(path):
    try:
        os.unlink(path)
        return True
    except FileNotFoundError:
        return False


# --- sites ---
def list_sites():
    d = config.nginx_conf_dir()
    if not os.path.isdir(d):
        return []
    return sorted(f for f in os.listdir(d) if f.endswith('.conf'))


def read_site(domain):
    """Return the form for ``domain``; a missing site gets a default config written first."""
    conf_path, _, meta_path = _site_paths(domain)
    if not os.path.isfile(conf_path):
        os.makedirs(os.path.dirname(conf_path), exist_ok=True)
        with open(conf_path, 'w') as f:
            f.write(default_site(domain))
        log.info('created default config for %s', domain)

    if os.path.isfile(meta_path):
        with open(meta_path, 'r') as f:
            data = json.load(f)
        # sidecars written before multi-location support carry one target
        if not data.get('locations') and data.get('targetIp'):
            data['locations'] = [{
                'path': '/',
                'targetIp': data['targetIp'],
                'targetPort': data.get('targetPort') or '80',
                'websocket': 'proxy_set_header Upgrade' in (data.get('rawContent') or ''),
            }]
        return data

    with open(conf_path, 'r') as f:
        content = f.read()
    m = _PROXY_PASS_RE.search(content)
    locations = []
    if m:
        locations.append({
            'path': '/',
            'targetIp': m.group(1),
            'targetPort': m.group(2),
            'websocket': 'proxy_set_header Upgrade' in content,
        })
    return {
        'domain': domain,
        'advancedMode': False,
        'locations': locations,
        'useSsl': 'listen 443' in content or 'ssl_certificate' in content,
        'rawContent': content,
    }


def write_site(form, content):
    """Write the site file and sidecar and make sure the site is enabled. Returns the conf path."""
    conf_path, enabled_path, meta_path = _site_paths(form['domain'])
    for d in (os.path.dirname(conf_path), os.path.dirname(meta_path)):
        os.makedirs(d, exist_ok=True)
    with open(conf_path, 'w') as f:
        f.write(content)
    with open(meta_path, 'w') as f:
        json.dump(form, f, indent=2)
    _symlink(conf_path, enabled_path)
    return conf_path


def rewrite_site(domain, content):
    conf_path, _, _ = _site_paths(domain)
    with open(conf_path, 'w') as f:
        f.write(content)


def remove_site(domain):
    conf_path, enabled_path, meta_path = _site_paths(domain)
    removed = False
    for p in (enabled_path, conf_path, meta_path):
        removed = _unlink(p) or removed
    return removed


# --- streams ---
def _stream_paths(name):
    fname = f'{name}.conf'
    return (os.path.join(config.streams_conf_dir(), fname),
            os.path.join(config.streams_enabled_dir(), fname))


def render_stream(listen_port, target_ip, target_port, protocol='tcp'):
    udp = ' udp' if protocol == 'udp' else ''
    return '\n'.join([
        'server {',
        f'    listen {listen_port}{udp};',
        f'    proxy_pass {target_ip}:{target_port};',
        '}',
    ]) + '\n'


def parse_stream(name, content):
    listen = _STREAM_LISTEN_RE.search(content)
    proxy = _STREAM_PROXY_RE.search(content)
    return {
        'name': name,
        'listenPort': listen.group(1) if listen else '',
        'protocol': 'udp' if listen and listen.group(2) else 'tcp',
        'targetIp': proxy.group(1) if proxy else '',
        'targetPort': proxy.group(2) if proxy else '',
    }


def list_streams():
    d = config.streams_conf_dir()
    if not os.path.isdir(d):
        return []
    return sorted(os.listdir(d))


def read_stream(name):
    """Parsed stream form, or None when no such stream exists."""
    conf_path, _ = _stream_paths(name)
    if not os.path.isfile(conf_path):
        return None
    with open(conf_path, 'r') as f:
        return parse_stream(name, f.read())


def write_stream(name, content):
    conf_path, enabled_path = _stream_paths(name)
    os.makedirs(os.path.dirname(conf_path), exist_ok=True)
    with open(conf_path, 'w') as f:
        f.write(content)
    _symlink(conf_path, enabled_path)
    return conf_path


def remove_stream(name):
    conf_path, enabled_path = _stream_paths(name)
    removed = _unlink(enabled_path)
    return _unlink(conf_path) or removed
