# Outbound requests made on behalf of the proxied page.

import logging
import re

import requests
from urllib3.util.request import ACCEPT_ENCODING

from webproxy import config as defaults

logger = logging.getLogger(__name__)

USER_AGENT = (
    'Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 '
    '(KHTML, like Gecko) Chrome/120.0.0.0 Safari/537.36'
)

BROWSER_HEADERS = {
    'User-Agent': USER_AGENT,
    'Accept': 'text/html,application/xhtml+xml,application/xml;q=0.9,image/webp,image/apng,*/*;q=0.8',
    'Accept-Language': 'en-US,en;q=0.9',
    # Only what urllib3 can decode here (br needs the brotli package).
    'Accept-Encoding': ACCEPT_ENCODING,
    'DNT': '1',
    'Connection': 'keep-alive',
    'Upgrade-Insecure-Requests': '1',
    'Sec-Fetch-Dest': 'document',
    'Sec-Fetch-Mode': 'navigate',
    'Sec-Fetch-Site': 'none',
    'Sec-Fetch-User': '?1',
    'Cache-Control': 'max-age=0',
}

IMAGE_RE = re.compile(r'\.(jpg|jpeg|png|gif|webp|svg|ico)$', re.IGNORECASE)

# Per asset class: (url test, header overrides). Later entries win.
ASSET_PROFILES = (
    (lambda url: any(ext in url for ext in ('.woff', '.ttf', '.otf')), {
        'Accept': 'font/woff2,font/woff,font/ttf,*/*;q=0.1',
        'Sec-Fetch-Dest': 'font',
        'Sec-Fetch-Mode': 'cors',
        'Sec-Fetch-Site': 'same-origin',
    }),
    (lambda url: '.css' in url, {
        'Accept': 'text/css,*/*;q=0.1',
        'Sec-Fetch-Dest': 'style',
        'Sec-Fetch-Mode': 'no-cors',
        'Sec-Fetch-Site': 'same-origin',
    }),
    (lambda url: '.js' in url, {
        'Accept': '*/*',
        'Sec-Fetch-Dest': 'script',
        'Sec-Fetch-Mode': 'no-cors',
        'Sec-Fetch-Site': 'same-origin',
    }),
    (lambda url: IMAGE_RE.search(url) is not None, {
        'Accept': 'image/webp,image/apng,image/svg+xml,image/*,*/*;q=0.8',
        'Sec-Fetch-Dest': 'image',
        'Sec-Fetch-Mode': 'no-cors',
        'Sec-Fetch-Site': 'same-origin',
    }),
)

GAME_MARKERS = ('game', 'agar', 'slither', 'diep')


def build_headers(target):
    """Request headers that look like a real browser loading this kind of asset."""
    headers = dict(BROWSER_HEADERS)
    headers['Referer'] = target.origin + '/'
    for applies, overrides in ASSET_PROFILES:
        if applies(target.url):
            headers.update(overrides)
    return headers


def is_game_host(target):
    host = target.hostname
    return ('.io' in host or 'game' in target.url
            or any(marker in host for marker in GAME_MARKERS))


class Fetcher:
    """
    Wraps a requests.Session. Redirects are followed; every call is bounded by a timeout.
    """

    def __init__(self, session=None, default_timeout=defaults.DEFAULT_TIMEOUT,
                 game_timeout=defaults.GAME_TIMEOUT,
                 font_fallback_timeout=defaults.FONT_FALLBACK_TIMEOUT):
        self.session = session if session is not None else requests.Session()
        self.default_timeout = default_timeout
        self.game_timeout = game_timeout
        self.font_fallback_timeout = font_fallback_timeout

    def timeout_for(self, target):
        # Game hosts stream large assets.
        return self.game_timeout if is_game_host(target) else self.default_timeout

    def get(self, target):
        return self.session.request(
            'GET',
            target.url,
            headers=build_headers(target),
            timeout=self.timeout_for(target),
            allow_redirects=True,
        )

    def post(self, target, body, content_type):
        headers = {
            'Content-Type': content_type,
            'User-Agent': 'Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36',
            'Accept': '*/*',
            'Origin': target.origin,
            'Referer': target.url,
        }
        return self.session.request(
            'POST',
            target.url,
            headers=headers,
            data=body or None,
            timeout=self.default_timeout,
            allow_redirects=True,
        )

    def get_font(self, url):
        return self.session.request(
            'GET',
            url,
            headers={
                'User-Agent': USER_AGENT,
                'Accept': 'font/woff2,font/woff,*/*;q=0.1',
                'Referer': 'https://fonts.googleapis.com/',
            },
            timeout=self.font_fallback_timeout,
            allow_redirects=True,
        )
