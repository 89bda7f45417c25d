"""Shared fixtures for the InfraFlow test suite."""

import base64
from unittest import mock

import pytest


@pytest.fixture
def panel_env(tmp_path, monkeypatch):
    """Point every nginx/certbot directory at tmp_path and disable the .env file."""
    from infraflow import config

    dirs = {
        'NGINX_CONF_DIR': tmp_path / 'sites-available',
        'NGINX_ENABLED_DIR': tmp_path / 'sites-enabled',
        'NGINX_META_DIR': tmp_path / 'meta',
        'NGINX_SNIPPET_DIR': tmp_path / 'snippets',
        'ERROR_PAGES_DIR': tmp_path / 'error-pages',
        'STREAMS_CONF_DIR': tmp_path / 'streams-available',
        'STREAMS_ENABLED_DIR': tmp_path / 'streams-enabled',
        'LETSENCRYPT_LIVE_DIR': tmp_path / 'live',
        'FRONTEND_DIST': tmp_path / 'dist',
    }
    for key, path in dirs.items():
        monkeypatch.setenv(key, str(path))
    monkeypatch.setenv('INFRAFLOW_ENV_FILE', str(tmp_path / 'missing.env'))
    monkeypatch.delenv('INFRAFLOW_USER', raising=False)
    monkeypatch.delenv('INFRAFLOW_PASS', raising=False)
    config.reload()
    return dirs


class CommandRecorder:
    """Stands in for infraflow.commands.run; answers are scripted per tool name."""

    def __init__(self):
        self.calls = []
        self.results = {}
        self.side_effects = {}

    def set(self, tool, ok=True, stdout='', stderr=''):
        self.results[tool] = (ok, stdout, stderr, 0 if ok else 1)

    def __call__(self, *args, timeout=None):
        self.calls.append(list(args))
        effect = self.side_effects.get(args[0])
        if effect:
            effect(list(args))
        return self.results.get(args[0], (True, '', '', 0))

    def tools(self):
        return [c[0] for c in self.calls]


@pytest.fixture
def commands(panel_env, monkeypatch):
    from infraflow import commands as commands_mod

    rec = CommandRecorder()
    monkeypatch.setattr(commands_mod, 'run', rec)
    return rec


@pytest.fixture
def docker_api(monkeypatch):
    """A MagicMock standing in for docker.APIClient."""
    from infraflow import docker_ops

    client = mock.MagicMock()
    monkeypatch.setattr(docker_ops, 'get_client', lambda: client)
    return client.api


@pytest.fixture
def client(panel_env):
    from infraflow.app import app

    app.config['TESTING'] = True
    with app.test_client() as c:
        yield c


@pytest.fixture
def basic_auth():
    def header(user, pw):
        token = base64.b64encode(f'{user}:{pw}'.encode()).decode()
        return {'Authorization': f'Basic {token}'}
    return header


class VirtualClock:
    """Timer factory with manual time, for the log bridge keep-alive."""

    class Handle:
        def __init__(self, when, fn):
            self.when = when
            self.fn = fn
            self.cancels = 0
            self.fired = False

        def cancel(self):
            self.cancels += 1

    def __init__(self):
        self.now = 0.0
        self.handles = []

    def call_later(self, delay, fn):
        h = self.Handle(self.now + delay, fn)
        self.handles.append(h)
        return h

    def pending(self):
        return [h for h in self.handles if not h.cancels and not h.fired]

    def advance(self, seconds):
        target = self.now + seconds
        while True:
            due = sorted((h for h in self.pending() if h.when <= target), key=lambda h: h.when)
            if not due:
                break
            h = due[0]
            self.now = h.when
            h.fired = True
            h.fn()
        self.now = target


@pytest.fixture
def clock():
    return VirtualClock()
