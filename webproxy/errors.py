# Exceptions raised by the proxy pipeline. Each one knows the HTTP answer it maps to.

import time


class ProxyError(Exception):
    status_code = 500

    def __init__(self, message, status_code=None, headers=None):
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code
        self.headers = dict(headers or {})


class InvalidUrl(ProxyError):
    status_code = 400


class ForbiddenTarget(ProxyError):
    status_code = 403


class AccessDenied(ProxyError):
    status_code = 401


class RateLimited(ProxyError):
    """
    429 with the machine-readable throttling headers.
    X-RateLimit-* are only sent when the exhausted budget is known.
    """
    status_code = 429

    def __init__(self, message, limit=None, retry_after=60, reset=None, extra_headers=None):
        headers = {'Retry-After': str(retry_after)}
        if limit is not None:
            headers['X-RateLimit-Limit'] = str(limit)
            headers['X-RateLimit-Remaining'] = '0'
            if reset is None:
                reset = time.time() + retry_after
            headers['X-RateLimit-Reset'] = str(int(reset * 1000))
        headers.update(extra_headers or {})
        super().__init__(message, headers=headers)
        self.limit = limit
        self.retry_after = retry_after


class DomainBlocked(RateLimited):
    def __init__(self, message, domain, retry_after=600):
        super().__init__(
            message,
            retry_after=retry_after,
            extra_headers={
                'X-Blocked-Domain': domain,
                'X-Block-Reason': 'Spam protection',
            },
        )
        self.domain = domain


class UpstreamFailure(ProxyError):
    """Non-2xx from the target with no substitute available."""

    def __init__(self, status_code, reason=''):
        super().__init__(f"Failed to fetch content: {status_code} {reason}".rstrip(), status_code=status_code)
        self.reason = reason
