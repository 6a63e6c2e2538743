"""
HTTP surface: the proxy endpoint, the URL safety check and the browser shell page.
"""

import logging
from urllib.parse import unquote

import requests
from flask import Blueprint, Response, current_app, jsonify, render_template, request
from werkzeug.exceptions import HTTPException

from webproxy import fallback
from webproxy.config import STATUS_CHECK_HEADER
from webproxy.errors import DomainBlocked, InvalidUrl, ProxyError, RateLimited, UpstreamFailure
from webproxy.resolver import check_target, decode_target, is_tracker, parse_target
from webproxy.transform import CORS_HEADERS, build_response

logger = logging.getLogger(__name__)

proxy = Blueprint('proxy', __name__)
shell = Blueprint('shell', __name__)

PREFLIGHT_HEADERS = {
    'Access-Control-Allow-Origin': '*',
    'Access-Control-Allow-Methods': 'GET, POST, PUT, DELETE, OPTIONS, HEAD',
    'Access-Control-Allow-Headers': 'Content-Type, Authorization',
}


def services():
    return current_app.extensions['webproxy']


def client_ip_of(req):
    forwarded = req.headers.get('X-Forwarded-For')
    if forwarded:
        return forwarded.split(',')[0].strip()
    return req.headers.get('X-Real-IP') or 'unknown'


# --- Pipeline stages ---

def rate_limit_rules(config, client_ip, raw_url, post=False):
    """(key, limit, refusal message) for each counter a request goes through, in order."""
    if post:
        return [
            (f"ip:{client_ip}:post", config.ip_limit_post, 'Rate limit exceeded for POST requests.'),
            (f"url:{raw_url}:post", config.url_limit_post, 'Too many POST requests to this URL.'),
        ]
    return [
        (f"ip:{client_ip}", config.ip_limit_get, 'Rate limit exceeded. Please slow down.'),
        (f"url:{raw_url}", config.url_limit_get, 'Too many requests to this URL. Please wait.'),
    ]


def enforce_rate_limits(svc, client_ip, raw_url, post=False):
    if not svc.config.rate_limiting_enabled:
        return
    for key, limit, message in rate_limit_rules(svc.config, client_ip, raw_url, post):
        if not svc.limiter.check(key, limit):
            raise RateLimited(message, limit=limit, reset=svc.limiter.reset_time(key))


def enforce_domain_policy(svc, target, client_ip):
    verdict = svc.detector.check(target.hostname, client_ip)
    if not verdict.allowed:
        logger.warning(f"Domain spam check failed for {target.hostname}: {verdict.reason}")
        raise DomainBlocked(verdict.reason or 'Domain temporarily blocked', target.hostname)


def resolve(svc, raw_url, allow_relative=True):
    target = parse_target(
        decode_target(raw_url),
        referer=request.headers.get('Referer'),
        user_agent=request.headers.get('User-Agent', ''),
        proxy_host=request.host,
        inference=svc.inference,
        allow_relative=allow_relative,
    )
    check_target(target, svc.config.proxy_domain)
    return target


def required_url():
    raw = request.args.get('url')
    if not raw:
        raise InvalidUrl('Missing URL parameter')
    return raw


def report_status(svc, client_ip, raw_url):
    """
    Answer whether a GET for raw_url would currently be refused, without counting
    it against any limit and without fetching anything. The browser shell polls
    this while a page is displayed.
    """
    config = svc.config
    if config.rate_limiting_enabled:
        for key, limit, message in rate_limit_rules(config, client_ip, raw_url):
            if svc.limiter.is_limited(key):
                raise RateLimited(message, limit=limit, reset=svc.limiter.reset_time(key))
    target = resolve(svc, raw_url)
    verdict = svc.detector.status(target.hostname)
    if not verdict.allowed:
        raise DomainBlocked(verdict.reason, target.hostname)
    return Response(status=204, headers={'Access-Control-Allow-Origin': '*'})


# --- Methods ---

def proxy_get():
    svc = services()
    svc.gate.check(request)
    raw = required_url()
    client_ip = client_ip_of(request)

    if request.headers.get(STATUS_CHECK_HEADER):
        return report_status(svc, client_ip, raw)

    enforce_rate_limits(svc, client_ip, raw)
    target = resolve(svc, raw)
    enforce_domain_policy(svc, target, client_ip)

    if is_tracker(target.hostname):
        logger.info(f"Blocked request to: {target.hostname}")
        if '.js' in target.url:
            return Response('// Blocked analytics/tracking request', status=200, headers={
                'Content-Type': 'application/javascript; charset=utf-8',
                'Access-Control-Allow-Origin': '*',
            })
        return Response(status=204, headers={'Access-Control-Allow-Origin': '*'})

    try:
        resp = svc.fetcher.get(target)
    except requests.exceptions.RequestException as e:
        return fallback.for_network_error(e)

    if not 200 <= resp.status_code < 300:
        logger.error(f"Error fetching web content: {resp.status_code} {resp.reason} for URL: {target.url}")
        substitute = fallback.for_status(resp.status_code, target.url, svc.fetcher)
        if substitute is not None:
            return substitute
        raise UpstreamFailure(resp.status_code, resp.reason or '')

    return build_response(resp, target)


def proxy_post():
    svc = services()
    svc.gate.check(request)
    raw = required_url()
    client_ip = client_ip_of(request)

    enforce_rate_limits(svc, client_ip, raw, post=True)
    target = resolve(svc, raw, allow_relative=False)
    enforce_domain_policy(svc, target, client_ip)

    if is_tracker(target.hostname):
        logger.info(f"Blocked POST request to: {target.hostname}")
        return Response(status=204, headers={'Access-Control-Allow-Origin': '*'})

    body = request.get_data()
    content_type = request.headers.get('Content-Type') or 'application/json'
    resp = svc.fetcher.post(target, body, content_type)

    if resp.status_code == 204:
        return Response(status=204, headers=CORS_HEADERS)

    return Response(resp.text, status=resp.status_code, headers={
        'Content-Type': resp.headers.get('Content-Type') or 'application/json',
        **CORS_HEADERS,
    })


def proxy_head():
    """Syntax check only; nothing is fetched."""
    raw = request.args.get('url')
    if not raw:
        return Response(status=400)
    try:
        target = parse_target(unquote(raw), allow_relative=False)
    except InvalidUrl:
        return Response(status=400)
    if target.scheme not in ('http', 'https') or not target.hostname:
        return Response(status=400)
    return Response(status=200, headers={'Access-Control-Allow-Origin': '*'})


def proxy_options():
    return Response(status=200, headers=PREFLIGHT_HEADERS)


HANDLERS = {
    'GET': proxy_get,
    'POST': proxy_post,
    'HEAD': proxy_head,
    'OPTIONS': proxy_options,
}


@proxy.route('/api/proxy/web', methods=list(HANDLERS))
def proxy_web():
    return HANDLERS[request.method]()


@proxy.errorhandler(ProxyError)
def _proxy_error(exc):
    return Response(exc.message, status=exc.status_code, headers=exc.headers, mimetype='text/plain')


@proxy.errorhandler(Exception)
def _unhandled(exc):
    if isinstance(exc, HTTPException):
        return exc
    logger.exception(f"Error in web proxy endpoint ({request.method} {request.full_path})")
    return Response('Internal Server Error', status=500, mimetype='text/plain')


# --- URL safety and browser shell ---

@shell.route('/api/url/check-safety', methods=['POST'])
def check_safety():
    data = request.get_json(silent=True) or {}
    url = data.get('url')
    if not url:
        return jsonify({'error': 'URL is required'}), 400
    return jsonify(services().safety.check(url))


@shell.route('/')
@shell.route('/browser')
def browser():
    """Renders the proxy browser page."""
    return render_template('browser.html', status_header=STATUS_CHECK_HEADER)
