# Gate in front of the proxy endpoint. Real deployments plug their session/entitlement check in here.

import hmac

from webproxy.errors import AccessDenied


class AccessGate:
    """
    Open when no token is configured. Otherwise the caller must present the token
    as "Authorization: Bearer <token>" or in the X-Proxy-Token header.
    """

    def __init__(self, token=None):
        self.token = token

    def presented_token(self, request):
        token = request.headers.get('X-Proxy-Token')
        if token:
            return token
        auth = request.headers.get('Authorization', '')
        if auth.lower().startswith('bearer '):
            return auth[7:].strip()
        return None

    def check(self, request):
        if not self.token:
            return
        provided = self.presented_token(request)
        if not provided or not hmac.compare_digest(self.token.encode('utf-8'), provided.encode('utf-8')):
            raise AccessDenied('Authentication required')
