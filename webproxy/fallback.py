"""
Substitute responses for sub-resources the upstream refused or could not serve.

A page that embeds dozens of best-effort assets (icons, fonts, ad scripts) should
keep rendering when a few of them fail, so known failure shapes are answered
with a harmless 200 body of the right content type.
"""

import logging
import re

import requests
from flask import Response

logger = logging.getLogger(__name__)

CORS = {'Access-Control-Allow-Origin': '*'}

IMAGE_EXT_RE = re.compile(r'\.(jpg|jpeg|png|gif|webp|svg|ico)$', re.IGNORECASE)

# Public mirrors for fonts some CDNs refuse to hand out cross-site.
FONT_MIRRORS = (
    ('Lato', 'https://fonts.gstatic.com/s/lato/v24/S6uyw4BMUTPHjx4wXiWtFCc.woff2'),
    ('NotoSans', 'https://fonts.gstatic.com/s/notosans/v36/o-0IIpQlx3QUlC5A4PNr5TRASf6M7Q.woff2'),
)

_SVG_OPEN = '<svg xmlns="http://www.w3.org/2000/svg" width="24" height="24" viewBox="0 0 24 24" fill="currentColor">'

ICON_PATHS = (
    (('arrow', 'caret'), 'M7 10l5 5 5-5z'),
    (('magnifying-glass', 'search'),
     'M15.5 14h-.79l-.28-.27C15.41 12.59 16 11.11 16 9.5 16 5.91 13.09 3 9.5 3S3 5.91 3 9.5 5.91 16 9.5 16'
     'c1.61 0 3.09-.59 4.23-1.57l.27.28v.79l5 4.99L20.49 19l-4.99-5zm-6 0C7.01 14 5 11.99 5 9.5S7.01 5 9.5 5 '
     '14 7.01 14 9.5 11.99 14 9.5 14z'),
    (('facebook',),
     'M24 12.073c0-6.627-5.373-12-12-12s-12 5.373-12 12c0 5.99 4.388 10.954 10.125 11.854v-8.385H7.078v-3.47'
     'h3.047V9.43c0-3.007 1.792-4.669 4.533-4.669 1.312 0 2.686.235 2.686.235v2.953H15.83c-1.491 0-1.956.925'
     '-1.956 1.874v2.25h3.328l-.532 3.47h-2.796v8.385C19.612 23.027 24 18.062 24 12.073z'),
    (('twitter',),
     'M23.953 4.57a10 10 0 01-2.825.775 4.958 4.958 0 002.163-2.723c-.951.555-2.005.959-3.127 1.184a4.92 4.92 '
     '0 00-8.384 4.482C7.69 8.095 4.067 6.13 1.64 3.162a4.822 4.822 0 00-.666 2.475c0 1.71.87 3.213 2.188 '
     '4.096a4.904 4.904 0 01-2.228-.616v.06a4.923 4.923 0 003.946 4.827 4.996 4.996 0 01-2.212.085 4.936 '
     '4.936 0 004.604 3.417 9.867 9.867 0 01-6.102 2.105c-.39 0-.779-.023-1.17-.067a13.995 13.995 0 007.557 '
     '2.209c9.053 0 13.998-7.496 13.998-13.985 0-.21 0-.42-.015-.63A9.935 9.935 0 0024 4.59z'),
    (('instagram',),
     'M12 2.163c3.204 0 3.584.012 4.85.07 3.252.148 4.771 1.691 4.919 4.919.058 1.265.069 1.645.069 4.849 0 '
     '3.205-.012 3.584-.069 4.849-.149 3.225-1.664 4.771-4.919 4.919-1.266.058-1.644.07-4.85.07-3.204 '
     '0-3.584-.012-4.849-.07-3.26-.149-4.771-1.699-4.919-4.92-.058-1.265-.07-1.644-.07-4.849 0-3.204.013'
     '-3.583.07-4.849.149-3.227 1.664-4.771 4.919-4.919 1.266-.057 1.645-.069 4.849-.069zm0-2.163c-3.259 0'
     '-3.667.014-4.947.072-4.358.2-6.78 2.618-6.98 6.98-.059 1.281-.073 1.689-.073 4.948 0 3.259.014 3.668'
     '.072 4.948.2 4.358 2.618 6.78 6.98 6.98 1.281.058 1.689.072 4.948.072 3.259 0 3.668-.014 4.948-.072 '
     '4.354-.2 6.782-2.618 6.979-6.98.059-1.28.073-1.689.073-4.948 0-3.259-.014-3.667-.072-4.947-.196'
     '-4.354-2.617-6.78-6.979-6.98-1.281-.059-1.69-.073-4.949-.073zm0 5.838c-3.403 0-6.162 2.759-6.162 '
     '6.162s2.759 6.163 6.162 6.163 6.162-2.759 6.162-6.163c0-3.403-2.759-6.162-6.162-6.162zm0 10.162c-2.209 '
     '0-4-1.79-4-4 0-2.209 1.791-4 4-4s4 1.791 4 4c0 2.21-1.791 4-4 4zm6.406-11.845c-.796 0-1.441.645-1.441 '
     '1.44s.645 1.44 1.441 1.44c.795 0 1.439-.645 1.439-1.44s-.644-1.44-1.439-1.44z'),
)

GENERIC_ICON_PATH = ('M12 2C6.48 2 2 6.48 2 12s4.48 10 10 10 10-4.48 10-10S17.52 2 12 2zm-2 15l-5-5 '
                     '1.41-1.41L10 14.17l7.59-7.59L19 8l-9 9z')

PLACEHOLDER_SVG = """<svg xmlns="http://www.w3.org/2000/svg" width="100" height="100" viewBox="0 0 100 100" fill="#f0f0f0">
  <rect width="100" height="100" fill="#f8f9fa" stroke="#dee2e6" stroke-width="1"/>
  <path d="M30 35h40v30H30z" fill="#6c757d" opacity="0.3"/>
  <circle cx="40" cy="45" r="3" fill="#6c757d"/>
  <path d="M35 60l8-8 4 4 8-8 10 10v2H35z" fill="#6c757d"/>
  <text x="50" y="80" text-anchor="middle" font-family="Arial, sans-serif" font-size="8" fill="#6c757d">Image</text>
</svg>"""

DNS_MARKERS = ('NameResolutionError', 'Name or service not known', 'getaddrinfo failed',
               'nodename nor servname', 'Temporary failure in name resolution', 'No address associated')


def is_font(url):
    return '.woff' in url or '.ttf' in url


def is_image(url):
    return IMAGE_EXT_RE.search(url) is not None or '/img/' in url or '/images/' in url


def fallback_icon(url):
    """Pick an inline SVG icon by looking for well-known words in the URL."""
    path = GENERIC_ICON_PATH
    for markers, icon in ICON_PATHS:
        if any(marker in url for marker in markers):
            path = icon
            break
    return f'{_SVG_OPEN}<path d="{path}"/></svg>'


def _script_stub(body):
    return Response(body, status=200, headers={
        'Content-Type': 'application/javascript; charset=utf-8',
        **CORS,
    })


def _font_fallback(url, fetcher):
    logger.info("Font blocked by 403, trying fallback strategies")
    mirror = next((mirror for name, mirror in FONT_MIRRORS if name in url), None)
    if mirror:
        try:
            logger.info(f"Trying Google Fonts fallback: {mirror}")
            resp = fetcher.get_font(mirror)
            if resp.ok:
                return Response(resp.content, status=200, headers={
                    'Content-Type': 'font/woff2',
                    'Cache-Control': 'public, max-age=86400',
                    **CORS,
                })
            logger.info(f"Google Fonts fallback answered {resp.status_code}")
        except requests.exceptions.RequestException as e:
            logger.info(f"Google Fonts fallback failed: {e}")

    logger.info("All font fallbacks failed, returning empty font")
    return Response(b'', status=200, headers={
        'Content-Type': 'font/woff2',
        'Content-Length': '0',
        'Cache-Control': 'public, max-age=3600',
        **CORS,
    })


def for_status(status, url, fetcher):
    """
    A substitute for a non-2xx upstream answer, or None when no policy covers it.
    """
    if status == 403 and is_font(url):
        return _font_fallback(url, fetcher)

    if status == 403 and ('.svg' in url or '/images/' in url):
        logger.info("Image/SVG blocked by 403, providing fallback icon")
        return Response(fallback_icon(url), status=200, headers={
            'Content-Type': 'image/svg+xml',
            'Cache-Control': 'public, max-age=3600',
            **CORS,
        })

    if status == 404 and is_image(url):
        logger.info("Image not found (404), providing placeholder")
        return Response(PLACEHOLDER_SVG, status=200, headers={
            'Content-Type': 'image/svg+xml',
            'Cache-Control': 'public, max-age=3600',
            **CORS,
        })

    if status == 404 and ('.js' in url or '.css' in url or '.br' in url):
        logger.info("JS/CSS/BR file not found (404), providing empty content")
        if '.css' in url:
            content_type, body = 'text/css', '/* File not found */'
        elif '.js.br' in url:
            content_type, body = 'application/javascript', '// Compressed JS file not found'
        else:
            content_type, body = 'application/javascript', '// File not found'
        return Response(body, status=200, headers={
            'Content-Type': content_type,
            'Cache-Control': 'public, max-age=3600',
            **CORS,
        })

    return None


def for_network_error(exc):
    """
    Map a requests exception to a response. Timeouts are reported as 504;
    DNS and connection failures become an empty script so the embedding page keeps running.
    Anything else is re-raised.
    """
    if isinstance(exc, requests.exceptions.Timeout):
        logger.warning(f"Upstream timeout: {exc}")
        return Response('Request timeout - the website took too long to respond', status=504,
                        mimetype='text/plain')

    if isinstance(exc, requests.exceptions.ConnectionError):
        message = str(exc)
        if any(marker in message for marker in DNS_MARKERS):
            logger.warning(f"DNS resolution failed: {message}")
            return _script_stub('// DNS resolution failed - domain not found')
        logger.warning(f"Network connection failed: {message}")
        return _script_stub('// Network connection failed')

    raise exc
