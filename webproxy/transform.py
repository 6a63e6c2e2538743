# Builds the client-facing response for a successful upstream fetch.

import logging

from flask import Response

from webproxy.rewrite import rewrite_css, rewrite_html

logger = logging.getLogger(__name__)

CORS_HEADERS = {
    'Access-Control-Allow-Origin': '*',
    'Access-Control-Allow-Methods': 'GET, POST, PUT, DELETE, OPTIONS',
    'Access-Control-Allow-Headers': 'Content-Type, Authorization',
}

HTML_HEADERS = {
    'Content-Type': 'text/html; charset=utf-8',
    'X-Frame-Options': 'SAMEORIGIN',
    'Content-Security-Policy': "default-src 'self' 'unsafe-inline' 'unsafe-eval' *; frame-ancestors 'self';",
    # Injected rewriting depends on the current target, never cache it.
    'Cache-Control': 'no-cache, no-store, must-revalidate',
    'Pragma': 'no-cache',
    'Expires': '0',
}


def effective_content_type(url, declared):
    """Trust the file extension over the upstream's Content-Type for scripts, styles and JSON."""
    if url.endswith('.js') or '.js?' in url or url.endswith('.js.br'):
        return 'application/javascript'
    if url.endswith('.css') or '.css?' in url or url.endswith('.css.br'):
        return 'text/css'
    if url.endswith('.json') or '.json?' in url:
        return 'application/json'
    return declared or 'text/html'


def declared_charset(content_type):
    for param in content_type.split(';')[1:]:
        name, _, value = param.strip().partition('=')
        if name.lower() == 'charset' and value:
            return value.strip('"\'')
    return None


def _text(resp):
    # requests falls back to ISO-8859-1 for text/* without a charset; prefer sniffing.
    if declared_charset(resp.headers.get('Content-Type', '')) is None:
        resp.encoding = resp.apparent_encoding
    return resp.text


def build_response(resp, target):
    """
    Dispatch on content type and apply the matching rewrite and cache policy.

    Relative references are resolved against the URL the upstream finally answered
    from, which differs from target.url when redirects were followed.
    """
    page_url = resp.url or target.url
    content_type = effective_content_type(target.url, resp.headers.get('Content-Type'))
    kind = content_type.lower()

    if 'text/html' in kind:
        charset = declared_charset(resp.headers.get('Content-Type', ''))
        html = rewrite_html(resp.content, page_url, from_encoding=charset)
        return Response(html, status=200, headers=HTML_HEADERS)

    if 'application/json' in kind or 'text/plain' in kind:
        return Response(_text(resp), status=200, headers={'Content-Type': content_type, **CORS_HEADERS})

    if 'text/css' in kind:
        return Response(rewrite_css(_text(resp), page_url), status=200, headers={
            'Content-Type': 'text/css; charset=utf-8',
            'Cache-Control': 'public, max-age=3600',
            'Access-Control-Allow-Origin': '*',
        })

    if 'javascript' in kind:
        # Scripts are not rewritten; the injected runtime covers fetch, XHR and WebSocket.
        return Response(_text(resp), status=200, headers={
            'Content-Type': 'application/javascript; charset=utf-8',
            'Cache-Control': 'public, max-age=3600',
            'Access-Control-Allow-Origin': '*',
        })

    return Response(resp.content, status=200, headers={
        'Content-Type': content_type,
        'Cache-Control': 'public, max-age=86400',
    })
