import logging
import subprocess

from . import config

log = logging.getLogger(__name__)


def run(*args, timeout=None):
    """Run an external tool. Returns (ok: bool, stdout: str, stderr: str, returncode: int).

    A missing binary is reported like a shell would (127) instead of raising.
    """
    try:
        r = subprocess.run(list(args), capture_output=True, text=True, timeout=timeout)
    except FileNotFoundError:
        r = subprocess.CompletedProcess(list(args), 127, '', f'{args[0]}: not found')
    except subprocess.TimeoutExpired as e:
        r = subprocess.CompletedProcess(list(args), 124, '', f'{args[0]}: timed out after {e.timeout}s')
    ok = r.returncode == 0
    if not ok:
        log.warning('%s exited %s: %s', ' '.join(args), r.returncode, (r.stderr or '').strip())
    return (ok, (r.stdout or '').strip(), (r.stderr or '').strip(), r.returncode)


def nginx_test():
    return run(config.nginx_bin(), '-t')


def nginx_reload():
    return run(config.systemctl_bin(), 'reload', 'nginx')


def nginx_test_and_reload():
    """`nginx -t && systemctl reload nginx`; the reload only runs when the test passes."""
    res = nginx_test()
    if not res[0]:
        return res
    return nginx_reload()
