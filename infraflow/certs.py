import re

from . import commands, config

_NAME_SPLIT = re.compile(r'Certificate Name:[ \t]*')
_DOMAINS_RE = re.compile(r'Domains: (.+)')
_EXPIRY_RE = re.compile(r'Expiry Date: (.+) \((?:VALID|INVALID): (.+)\)')


def parse_certificates(output):
    """Turn `certbot certificates` output into a list of dicts, one per certificate."""
    certs = []
    for block in _NAME_SPLIT.split(output or '')[1:]:
        name = block.split('\n', 1)[0].strip()
        if not name:
            continue
        domains = _DOMAINS_RE.search(block)
        expiry = _EXPIRY_RE.search(block)
        certs.append({
            'name': name,
            'domains': domains.group(1).strip() if domains else '',
            'expiry': expiry.group(1).strip() if expiry else '',
            'validDays': expiry.group(2).strip() if expiry else '',
        })
    return certs


def list_certificates():
    """Returns (ok, certs, stderr). Certbot exits non-zero on some warnings but still prints the list."""
    ok, out, err, _ = commands.run(config.certbot_bin(), 'certificates')
    if not ok and not out:
        return False, [], err
    return True, parse_certificates(out), err


def obtain(domain, email, redirect=False):
    args = [config.certbot_bin(), '--nginx', '-d', domain, '-m', email,
            '--non-interactive', '--agree-tos']
    if redirect:
        args.append('--redirect')
    return commands.run(*args)


def renew(name=None):
    args = [config.certbot_bin(), 'renew']
    if name:
        args += ['--cert-name', name]
    return commands.run(*args)
