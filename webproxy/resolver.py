"""
Turns the raw `url` query parameter into a validated target.

Steps: percent-decode and HTML-unescape, resolve relative references from the
Referer, then refuse anything that is not plain http(s) to a public host.
"""

import ipaddress
import logging
from urllib.parse import parse_qs, unquote, urlsplit

from webproxy.config import PROXY_PREFIX, SELF_HOSTS, TRACKER_DOMAINS
from webproxy.errors import ForbiddenTarget, InvalidUrl

logger = logging.getLogger(__name__)

# Order matters: &amp; goes last so "&amp;lt;" ends up as "&lt;", not "<".
HTML_ENTITIES = (
    ('&quot;', '"'),
    ('&#39;', "'"),
    ('&lt;', '<'),
    ('&gt;', '>'),
    ('&amp;', '&'),
)

PRIVATE_PREFIXES = ('127.', '10.', '172.', '192.168.')

# Paths under which the browser shell page is served.
SHELL_PATHS = ('/', '/browser')


class Target:
    """The resolved destination of one proxied request."""

    def __init__(self, url):
        self.url = url
        try:
            self.parts = urlsplit(url)
            # Accessing .port validates it.
            self.parts.port
        except ValueError:
            raise InvalidUrl('Invalid URL format')
        self.scheme = self.parts.scheme.lower()
        self.hostname = (self.parts.hostname or '').lower()
        self.netloc = self.parts.netloc.lower()

    @property
    def origin(self):
        return f"{self.scheme}://{self.netloc}"

    def __repr__(self):
        return f"Target({self.url!r})"


def decode_target(raw):
    decoded = unquote(raw)
    for entity, char in HTML_ENTITIES:
        decoded = decoded.replace(entity, char)
    return decoded


class OriginHint:
    """
    A guess for the origin of a relative URL requested straight from the browser shell.
    Matches when every non-empty marker list has a hit.
    """

    def __init__(self, base_url, path_markers=(), agent_markers=()):
        self.base_url = base_url.rstrip('/')
        self.path_markers = tuple(path_markers)
        self.agent_markers = tuple(agent_markers)

    def matches(self, path, user_agent, referer):
        if self.path_markers and not any(m in path for m in self.path_markers):
            return False
        if self.agent_markers and not any(m in user_agent or m in referer for m in self.agent_markers):
            return False
        return True


class OriginInference:
    """
    Table-driven origin guessing for relative URLs that escaped rewriting.
    This is a heuristic for sites whose scripts build root-relative asset URLs
    (observed with a canvas game client), not general-purpose resolution.
    """

    def __init__(self, hints=None, default='https://venge.io'):
        if hints is None:
            hints = [OriginHint('https://venge.io', ('/img/', '/js/', '/css/'), ('venge',))]
        self.hints = list(hints)
        self.default = default.rstrip('/')

    def infer(self, path, user_agent='', referer=''):
        for hint in self.hints:
            if hint.matches(path, user_agent, referer):
                return hint.base_url
        return self.default


def _proxied_target_of(referer_parts):
    """The target origin embedded in a referer that is itself a proxy URL, if any."""
    if referer_parts.path != PROXY_PREFIX.split('?')[0]:
        return None
    values = parse_qs(referer_parts.query).get('url')
    if not values:
        return None
    embedded = urlsplit(decode_target(values[0]))
    if embedded.scheme in ('http', 'https') and embedded.netloc:
        return f"{embedded.scheme}://{embedded.netloc}"
    return None


def resolve_relative(path, referer, user_agent='', proxy_host=None, inference=None):
    """Rebuild an absolute URL for a root-relative path from the request's Referer."""
    if not referer or not path.startswith('/'):
        raise InvalidUrl('Invalid URL format')

    try:
        ref = urlsplit(referer)
        if not ref.scheme or not ref.netloc:
            raise ValueError(referer)

        from_shell = ref.path in SHELL_PATHS and (proxy_host is None or ref.netloc == proxy_host)
        embedded = _proxied_target_of(ref)

        if path.startswith('//'):
            full_url = f"{ref.scheme}:{path}"
        elif embedded:
            full_url = embedded + path
        elif from_shell:
            base = (inference or OriginInference()).infer(path, user_agent, referer)
            full_url = base + path
            logger.info(f"Converting relative URL {path} to {full_url} (fallback to {base})")
            return full_url
        else:
            full_url = f"{ref.scheme}://{ref.netloc}{path}"
    except ValueError:
        raise InvalidUrl('Invalid relative URL - could not construct full URL')

    logger.info(f"Converting relative URL {path} to {full_url} based on referrer origin")
    return full_url


def parse_target(decoded, referer=None, user_agent='', proxy_host=None, inference=None, allow_relative=True):
    """Parse the decoded URL, falling back to Referer-based resolution for relative paths."""
    try:
        parts = urlsplit(decoded) if decoded else None
    except ValueError:
        raise InvalidUrl('Invalid URL format')
    if parts and parts.scheme and (parts.netloc or parts.scheme not in ('http', 'https')):
        return Target(decoded)
    if allow_relative and decoded.startswith('/'):
        return Target(resolve_relative(decoded, referer, user_agent, proxy_host, inference))
    raise InvalidUrl('Invalid URL format')


def is_private_host(hostname):
    if hostname in ('localhost', '0.0.0.0') or 'local' in hostname:
        return True
    if hostname.startswith(PRIVATE_PREFIXES):
        return True
    try:
        address = ipaddress.ip_address(hostname)
    except ValueError:
        return False
    return (address.is_private or address.is_loopback or address.is_link_local
            or address.is_unspecified or address.is_reserved or address.is_multicast)


def check_target(target, proxy_domain=None):
    """Refuse targets the proxy must never fetch."""
    if target.scheme not in ('http', 'https'):
        raise InvalidUrl('Only HTTP and HTTPS protocols are allowed')
    if not target.hostname:
        raise InvalidUrl('Invalid URL format')

    own = list(SELF_HOSTS)
    if proxy_domain:
        own.append(proxy_domain)
    if any(h in target.hostname or h in target.netloc for h in own):
        raise ForbiddenTarget('Access to this proxy is not allowed through the proxy')

    if is_private_host(target.hostname):
        raise ForbiddenTarget('Access to local addresses is not allowed')


def is_tracker(hostname):
    return any(domain in hostname for domain in TRACKER_DOMAINS)
