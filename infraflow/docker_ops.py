"""Thin wrappers over the Docker Engine API.

List calls return the Engine's own JSON so the browser can read ``Names``,
``NetworkSettings`` and friends directly.
"""
import logging
import threading
from urllib.parse import quote

import docker
from docker.types import CancellableStream, IPAMConfig, IPAMPool

log = logging.getLogger(__name__)

_client = None
_client_lock = threading.Lock()


def get_client():
    global _client
    with _client_lock:
        if _client is None:
            _client = docker.from_env()
        return _client


def _api():
    return get_client().api


# --- containers ---
def list_containers():
    return _api().containers(all=True)


def _exposed_ports(port_bindings):
    ports = []
    for key in port_bindings or {}:
        port, _, proto = str(key).partition('/')
        ports.append((port, proto or 'tcp'))
    return ports


def create_container(name, image, network=None, ip_address=None, env=None, ports=None):
    """Create a container, optionally pinned to an address on ``network``, and start it.

    ``ports`` uses the Engine ``PortBindings`` shape, e.g.
    ``{"80/tcp": [{"HostPort": "8080"}]}``.
    """
    api = _api()
    host_config = api.create_host_config(port_bindings=ports or {}, network_mode=network or None)
    networking_config = None
    if network:
        endpoint = api.create_endpoint_config(ipv4_address=ip_address or None)
        networking_config = api.create_networking_config({network: endpoint})
    created = api.create_container(
        image,
        name=name or None,
        environment=env or [],
        ports=_exposed_ports(ports) or None,
        host_config=host_config,
        networking_config=networking_config,
    )
    cid = created.get('Id')
    api.start(cid)
    log.info('started container %s (%s) from %s', name or cid[:12], cid[:12], image)
    return cid


def remove_container(container_id):
    api = _api()
    api.stop(container_id)
    api.remove_container(container_id)


def inspect_container(container_id):
    return _api().inspect_container(container_id)


# --- networks ---
def list_networks():
    return _api().networks()


def create_network(name, driver=None, subnet=None, gateway=None):
    ipam = None
    if subnet or gateway:
        ipam = IPAMConfig(pool_configs=[IPAMPool(subnet=subnet or None, gateway=gateway or None)])
    res = _api().create_network(name, driver=driver or 'bridge', ipam=ipam)
    return res.get('Id')


def remove_network(network_id):
    _api().remove_network(network_id)


# --- volumes ---
def list_volumes():
    res = _api().volumes() or {}
    return res.get('Volumes') or []


def create_volume(name, driver=None, labels=None):
    res = _api().create_volume(name=name, driver=driver or 'local', labels=labels or {})
    return res.get('Name')


def remove_volume(name):
    _api().remove_volume(name)


# --- logs ---
def open_log_stream(container_id, tail=100):
    """Resolve ``container_id`` and open its follow-mode log stream.

    Returns a ``CancellableStream`` of raw multiplexed chunks. Its ``close``
    shuts the socket down, so a reader blocked on a quiet container wakes up
    and the iteration simply stops.

    Raises ``docker.errors.NotFound`` before any streaming when the container
    does not exist.
    """
    api = _api()
    info = inspect_container(container_id)
    # the SDK's own logs() demuxes for us; the bridge needs the raw frames
    url = f"{api.base_url}/v{api.api_version}/containers/{quote(info['Id'], safe='')}/logs"
    params = {'follow': 1, 'stdout': 1, 'stderr': 1, 'tail': str(tail)}
    res = api.get(url, params=params, stream=True, timeout=None)
    if res.status_code >= 400:
        try:
            explanation = res.json().get('message')
        except ValueError:
            explanation = res.text
        res.close()
        raise docker.errors.APIError(f'log stream failed ({res.status_code})', response=res, explanation=explanation)
    return CancellableStream(api._stream_raw_result(res, chunk_size=None, decode=False), res)
