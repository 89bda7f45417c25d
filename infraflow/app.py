import os, re, base64, hmac, socket, ssl, time
import logging
from functools import wraps
from urllib import request as urlrequest, error as urlerror

import docker
import psutil
from flask import Flask, jsonify, request, send_from_directory, Response

from . import certs, commands, config, docker_ops, logstream, nginx_conf

app = Flask(__name__)

_NAME_RE = re.compile(r'^[A-Za-z0-9_-][A-Za-z0-9._-]*$')
_PORT_RE = re.compile(r'^\d{1,5}$')


# --- Auth helpers (must be defined before route decorators) ---
def need_auth():
    return bool(config.auth_user() and config.auth_pass())

def check_auth(header: str) -> bool:
    if not header or not header.lower().startswith('basic '):
        return False
    try:
        raw = base64.b64decode(header.split(None, 1)[1]).decode('utf-8')
        user, pw = raw.split(':', 1)
    except (ValueError, IndexError):
        return False
    return (hmac.compare_digest(user.encode('utf-8'), config.auth_user().encode('utf-8'))
            and hmac.compare_digest(pw.encode('utf-8'), config.auth_pass().encode('utf-8')))

def auth_required(fn):
    @wraps(fn)
    def wrapper(*args, **kwargs):
        if need_auth() and not check_auth(request.headers.get('Authorization')):
            return Response('Authentication required', 401, {'WWW-Authenticate': 'Basic realm="Authorization Required"'})
        return fn(*args, **kwargs)
    return wrapper


# --- CORS + Private Network Access ---
@app.before_request
def _cors_preflight():
    if request.method == 'OPTIONS' and request.headers.get('Origin'):
        resp = Response(status=204)
        if request.headers.get('Access-Control-Request-Private-Network'):
            resp.headers['Access-Control-Allow-Private-Network'] = 'true'
        return resp
    return None

@app.after_request
def _cors_headers(resp):
    origin = request.headers.get('Origin')
    if origin:
        # reflect the origin so proxied and same-origin callers both work
        resp.headers['Access-Control-Allow-Origin'] = origin
        resp.headers['Access-Control-Allow-Credentials'] = 'true'
        resp.headers.add('Vary', 'Origin')
        resp.headers['Access-Control-Allow-Methods'] = 'GET,POST,PUT,PATCH,DELETE,OPTIONS'
        resp.headers['Access-Control-Allow-Headers'] = ('Content-Type, Authorization, X-Requested-With, '
                                                        'Access-Control-Request-Private-Network')
    return resp


# --- Error helpers ---
def _error(msg, status=500, **extra):
    body = {'ok': False, 'error': msg}
    body.update(extra)
    return jsonify(body), status

def _explain(e):
    return getattr(e, 'explanation', None) or str(e)

@app.errorhandler(docker.errors.NotFound)
def _docker_not_found(e):
    return _error(_explain(e), 404)

@app.errorhandler(docker.errors.APIError)
@app.errorhandler(docker.errors.DockerException)
def _docker_failed(e):
    app.logger.warning('docker call failed: %s', e)
    return _error(_explain(e), 500)

@app.errorhandler(OSError)
def _os_failed(e):
    app.logger.exception('filesystem or socket error')
    return _error(str(e), 500)

def _valid_name(name) -> bool:
    return isinstance(name, str) and bool(_NAME_RE.match(name))

def _json_body():
    data = request.get_json(force=True, silent=True)
    return data if isinstance(data, dict) else {}


@app.get('/api/health')
def api_health():
    return jsonify({'status': 'up'})


def _get_system_stats():
    per = psutil.cpu_percent(interval=0.08, percpu=True)
    vm = psutil.virtual_memory()
    disk = psutil.disk_usage('/')
    return {
        'cpu': {
            'cores': psutil.cpu_count(logical=True),
            'usage': round(sum(per) / len(per), 2) if per else 0.0,
            'load': list(os.getloadavg()),
        },
        'memory': {'total': vm.total, 'available': vm.available, 'used': vm.used, 'percent': vm.percent},
        'disk': {'total': disk.total, 'used': disk.used, 'free': disk.free, 'percent': disk.percent},
        'uptime': int(time.time() - psutil.boot_time()),
    }

@app.get('/api/system/stats')
@auth_required
def api_system_stats():
    return jsonify({'ok': True, 'stats': _get_system_stats()})


# --- Docker ---
@app.get('/api/docker/containers')
@auth_required
def api_list_containers():
    return jsonify(docker_ops.list_containers())

@app.post('/api/docker/containers')
@auth_required
def api_create_container():
    data = _json_body()
    image = str(data.get('image') or '').strip()
    if not image:
        return _error('No image provided', 400)
    cid = docker_ops.create_container(
        name=str(data.get('name') or '').strip(),
        image=image,
        network=data.get('network') or None,
        ip_address=data.get('ipAddress') or None,
        env=data.get('env') or [],
        ports=data.get('ports') or {},
    )
    return jsonify({'ok': True, 'message': 'Container created and started', 'id': cid})

@app.delete('/api/docker/containers/<cid>')
@auth_required
def api_delete_container(cid):
    docker_ops.remove_container(cid)
    return jsonify({'ok': True, 'message': 'Container deleted'})

@app.get('/api/docker/containers/<cid>/logs')
@auth_required
def api_container_logs(cid):
    """Follow a container's logs as server-sent events.

    Every event carries ``{"text": ...}`` or a final ``{"error": ...}``; comment
    lines are keep-alives. The browser reconnects on its own after a drop and
    gets the tail replayed, there is no resume.
    """
    headers = {'Cache-Control': 'no-cache', 'X-Accel-Buffering': 'no'}
    try:
        source = docker_ops.open_log_stream(cid, tail=config.log_tail())
    except docker.errors.NotFound:
        return _error('Container not found', 404)
    except (docker.errors.DockerException, OSError) as e:
        # past the lookup, failures reach the browser as the stream's error event
        app.logger.warning('opening logs of %s failed: %s', cid, e)
        return Response(logstream.sse_data({'error': _explain(e)}), mimetype='text/event-stream', headers=headers)
    body = logstream.stream_events(source, keepalive_interval=config.log_keepalive_seconds())
    return Response(body, mimetype='text/event-stream', headers=headers)

@app.get('/api/docker/networks')
@auth_required
def api_list_networks():
    return jsonify(docker_ops.list_networks())

@app.post('/api/docker/networks')
@auth_required
def api_create_network():
    data = _json_body()
    name = str(data.get('name') or '').strip()
    if not name:
        return _error('No name provided', 400)
    nid = docker_ops.create_network(name, driver=data.get('driver'), subnet=data.get('subnet'),
                                    gateway=data.get('gateway'))
    return jsonify({'ok': True, 'message': 'Network created', 'id': nid})

@app.delete('/api/docker/networks/<nid>')
@auth_required
def api_delete_network(nid):
    docker_ops.remove_network(nid)
    return jsonify({'ok': True, 'message': 'Network deleted'})

@app.get('/api/docker/volumes')
@auth_required
def api_list_volumes():
    return jsonify(docker_ops.list_volumes())

@app.post('/api/docker/volumes')
@auth_required
def api_create_volume():
    data = _json_body()
    name = str(data.get('name') or '').strip()
    if not name:
        return _error('No name provided', 400)
    vname = docker_ops.create_volume(name, driver=data.get('driver'), labels=data.get('labels'))
    return jsonify({'ok': True, 'message': 'Volume created', 'name': vname})

@app.delete('/api/docker/volumes/<name>')
@auth_required
def api_delete_volume(name):
    docker_ops.remove_volume(name)
    return jsonify({'ok': True, 'message': 'Volume deleted'})


# --- nginx sites ---
def _probe_backend(host, port, use_https=False, timeout=5.0):
    scheme = 'https' if use_https else 'http'
    ctx = None
    if use_https:
        ctx = ssl.create_default_context()
        ctx.check_hostname = False
        ctx.verify_mode = ssl.CERT_NONE
    req = urlrequest.Request(f'{scheme}://{host}:{port}/', method='GET')
    try:
        with urlrequest.urlopen(req, timeout=timeout, context=ctx) as resp:
            status, headers = resp.status, dict(resp.headers)
    except urlerror.HTTPError as e:
        # any HTTP answer means something is listening
        status, headers = e.code, dict(e.headers or {})
    except urlerror.URLError as e:
        reason = e.reason
        if isinstance(reason, socket.timeout):
            return {'success': False, 'message': f'Connection timeout after {int(timeout)} seconds'}
        return {
            'success': False,
            'message': f'Connection failed: {reason}',
            'suggestion': ('Nothing is listening on this port. Try checking if the container is running.'
                           if isinstance(reason, ConnectionRefusedError) else None),
        }
    except socket.timeout:
        return {'success': False, 'message': f'Connection timeout after {int(timeout)} seconds'}
    except OSError as e:
        return {'success': False, 'message': f'Connection failed: {e}', 'suggestion': None}
    return {
        'success': True,
        'status': status,
        'message': f'Connection successful! Backend responded with HTTP {status}',
        'headers': headers,
    }

@app.post('/api/nginx/test-connection')
@auth_required
def api_test_connection():
    data = _json_body()
    host = str(data.get('targetIp') or '').strip()
    port = str(data.get('targetPort') or '').strip()
    if not host or not _PORT_RE.match(port):
        return _error('targetIp and a numeric targetPort are required', 400)
    # failures are still answered with 200 so the form can show the message
    return jsonify(_probe_backend(host, port, bool(data.get('useHttps'))))

@app.get('/api/nginx/configs')
@auth_required
def api_list_configs():
    return jsonify(nginx_conf.list_sites())

@app.get('/api/nginx/configs/<domain>')
@auth_required
def api_get_config(domain):
    if not _valid_name(domain):
        return _error('Invalid domain', 400)
    return jsonify(nginx_conf.read_site(domain))

@app.post('/api/nginx/configs')
@auth_required
def api_save_config():
    form = _json_body()
    domain = str(form.get('domain') or '').strip()
    if not _valid_name(domain):
        return _error('Invalid domain', 400)
    form['domain'] = domain
    try:
        nginx_conf.ensure_error_snippet()
    except OSError as e:
        app.logger.error('failed to write nginx error snippet: %s', e)

    original = form.get('originalDomain')
    if original and original != domain and _valid_name(original):
        if nginx_conf.remove_site(original):
            app.logger.info('renamed site %s -> %s', original, domain)

    content = nginx_conf.render_site(form)
    nginx_conf.write_site(form, content)

    ok, _, err, _ = commands.nginx_test()
    if not ok:
        return _error('Nginx config test failed', 500, details=err)
    commands.nginx_reload()

    if form.get('useSsl') and form.get('email'):
        ok, _, err, _ = certs.obtain(domain, form['email'], redirect=True)
        if not ok:
            return _error('SSL request failed', 500, details=err)
        if not nginx_conf.certificates_exist(domain):
            return jsonify({'ok': True, 'message': 'SSL enabled via Certbot'})
        # certbot edits the file in place; put our own template back with SSL on
        app.logger.info('certificate obtained for %s, regenerating config', domain)
        nginx_conf.rewrite_site(domain, nginx_conf.enable_ssl(content, domain))
        commands.nginx_reload()
        return jsonify({'ok': True, 'message': 'Nginx configuration updated and SSL enabled'})
    return jsonify({'ok': True, 'message': 'Nginx configuration updated'})

@app.delete('/api/nginx/configs/<domain>')
@auth_required
def api_delete_config(domain):
    if not _valid_name(domain):
        return _error('Invalid domain', 400)
    nginx_conf.remove_site(domain)
    commands.nginx_reload()
    return jsonify({'ok': True, 'message': 'Nginx configuration deleted'})


# --- nginx streams ---
@app.get('/api/streams')
@auth_required
def api_list_streams():
    return jsonify(nginx_conf.list_streams())

@app.get('/api/streams/<name>')
@auth_required
def api_get_stream(name):
    if not _valid_name(name):
        return _error('Invalid name', 400)
    data = nginx_conf.read_stream(name)
    if data is None:
        return _error('Config not found', 404)
    return jsonify(data)

@app.post('/api/streams')
@auth_required
def api_save_stream():
    data = _json_body()
    name = str(data.get('name') or '').strip()
    if not _valid_name(name):
        return _error('Invalid name', 400)
    listen_port = str(data.get('listenPort') or '').strip()
    target_ip = str(data.get('targetIp') or '').strip()
    target_port = str(data.get('targetPort') or '').strip()
    protocol = data.get('protocol') or 'tcp'
    if not (_PORT_RE.match(listen_port) and _PORT_RE.match(target_port) and target_ip):
        return _error('listenPort, targetIp and targetPort are required', 400)
    if protocol not in ('tcp', 'udp'):
        return _error('protocol must be tcp or udp', 400)
    nginx_conf.write_stream(name, nginx_conf.render_stream(listen_port, target_ip, target_port, protocol))
    ok, _, err, _ = commands.nginx_test_and_reload()
    if not ok:
        return _error('Nginx config test failed', 500, details=err)
    return jsonify({'ok': True, 'message': 'Stream configuration updated and reloaded'})

@app.delete('/api/streams/<name>')
@auth_required
def api_delete_stream(name):
    if not _valid_name(name):
        return _error('Invalid name', 400)
    nginx_conf.remove_stream(name)
    commands.nginx_reload()
    return jsonify({'ok': True, 'message': 'Stream configuration deleted'})


# --- certificates ---
@app.post('/api/ssl/request')
@auth_required
def api_ssl_request():
    data = _json_body()
    domain = str(data.get('domain') or '').strip()
    email = str(data.get('email') or '').strip()
    if not _valid_name(domain) or not email:
        return _error('domain and email are required', 400)
    ok, out, err, _ = certs.obtain(domain, email)
    if not ok:
        return _error('Certbot execution failed', 500, details=err)
    ok, _, rerr, _ = commands.nginx_reload()
    if not ok:
        return _error('Nginx reload failed', 500, details=rerr, output=out)
    return jsonify({'ok': True, 'message': 'SSL certificate obtained and Nginx reloaded successfully', 'output': out})

@app.get('/api/ssl/certificates')
@auth_required
def api_ssl_certificates():
    ok, items, _ = certs.list_certificates()
    if not ok:
        return _error('Failed to list certificates', 500)
    return jsonify(items)

@app.post('/api/ssl/renew')
@auth_required
def api_ssl_renew_all():
    ok, out, err, _ = certs.renew()
    if not ok:
        return _error('Renewal failed', 500, details=err)
    return jsonify({'ok': True, 'message': 'Renewal process triggered', 'output': out})

@app.post('/api/ssl/renew/<name>')
@auth_required
def api_ssl_renew(name):
    if not _valid_name(name):
        return _error('Invalid certificate name', 400)
    ok, out, err, _ = certs.renew(name)
    if not ok:
        return _error(f'Renewal failed for {name}', 500, details=err)
    return jsonify({'ok': True, 'message': f'Renewal successful for {name}', 'output': out})


# --- frontend ---
@app.route('/', defaults={'path': ''})
@app.route('/<path:path>')
@auth_required
def serve_frontend(path):
    if path.startswith('api/'):
        return _error('Not found', 404)
    dist = config.frontend_dist()
    if path and os.path.isfile(os.path.join(dist, path)):
        return send_from_directory(dist, path)
    # client-side routing: every other path gets the SPA shell
    if os.path.isfile(os.path.join(dist, 'index.html')):
        return send_from_directory(dist, 'index.html')
    return 'Frontend not built', 404


def main():
    logging.basicConfig(level=logging.INFO, format='%(asctime)s %(levelname)s %(name)s: %(message)s')
    app.logger.info('Backend server running on port %s', config.port())
    app.run(host=config.get('HOST', '0.0.0.0'), port=config.port(), threaded=True)
