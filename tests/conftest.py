"""Shared fixtures for the web proxy tests."""

from http import HTTPStatus

import pytest
import requests
from requests.structures import CaseInsensitiveDict

from webproxy import create_app
from webproxy.config import ProxyConfig


class FakeClock:
    """A clock that only moves when told to."""

    def __init__(self, now=1_700_000_000.0):
        self.now = now

    def __call__(self):
        return self.now

    def advance(self, seconds):
        self.now += seconds


def make_response(status=200, body=b'', headers=None, url='', reason=None):
    """A real requests.Response with canned content."""
    resp = requests.models.Response()
    resp.status_code = status
    resp._content = body if isinstance(body, bytes) else body.encode('utf-8')
    resp.headers = CaseInsensitiveDict(headers or {})
    resp.reason = reason or HTTPStatus(status).phrase
    resp.url = url
    return resp


class FakeSession:
    """
    Stands in for requests.Session. Maps URLs to responses (or exceptions to raise)
    and records every call.
    """

    def __init__(self):
        self.routes = {}
        self.calls = []

    def add(self, url, response=None, **kwargs):
        self.routes[url] = response if response is not None else make_response(url=url, **kwargs)

    def request(self, method, url, **kwargs):
        self.calls.append((method, url, kwargs))
        answer = self.routes.get(url)
        if answer is None:
            return make_response(404, b'Not Found', {'Content-Type': 'text/plain'}, url=url, reason='Not Found')
        if isinstance(answer, BaseException):
            raise answer
        return answer

    def get(self, url, **kwargs):
        return self.request('GET', url, **kwargs)

    def post(self, url, **kwargs):
        return self.request('POST', url, **kwargs)

    @property
    def urls(self):
        return [url for _, url, _ in self.calls]


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def session():
    return FakeSession()


@pytest.fixture
def config():
    return ProxyConfig(proxy_domain='proxy.campus.example', start_sweeper=False)


@pytest.fixture
def app(config, session, clock):
    return create_app(config=config, http_session=session, clock=clock)


@pytest.fixture
def client(app):
    return app.test_client()


@pytest.fixture
def services(app):
    return app.extensions['webproxy']
