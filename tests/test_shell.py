"""Tests for the browser shell navigation state machine."""

from unittest.mock import MagicMock

import pytest
import requests
from conftest import FakeClock, FakeSession, make_response

from webproxy import create_app
from webproxy.config import STATUS_CHECK_HEADER, ProxyConfig
from webproxy.rewrite import proxy_url
from webproxy.shell import (
    BrowserShell,
    CourtesyThrottle,
    Frame,
    HttpFrame,
    NavigationHistory,
    RateLimitProbe,
    SafetyCheck,
    ShellState,
    detect_rate_limit,
    drive,
    main,
    normalize_url,
)

BLOCKED = 'Too many requests to this URL. Please wait.'


@pytest.fixture
def shell_clock():
    return FakeClock(now=1000.0)


@pytest.fixture
def probe():
    return MagicMock(return_value=None)


@pytest.fixture
def shell(shell_clock, probe):
    return BrowserShell(safety_check=lambda url: True, probe=probe, clock=shell_clock)


def _run(shell, clock, seconds, step=0.1):
    """Tick the shell the way the page's 100 ms interval does, ending exactly at now + seconds."""
    end = clock.now + seconds
    while clock.now < end:
        clock.now = min(clock.now + step, end)
        shell.tick()


class TestNormalizeUrl:
    def test_adds_scheme(self):
        assert normalize_url(' wikipedia.org ') == 'https://wikipedia.org'

    def test_keeps_scheme(self):
        assert normalize_url('http://example.com/a') == 'http://example.com/a'

    @pytest.mark.parametrize('text', ['', 'not a url', 'https://', 'http://example.com:notaport/'])
    def test_rejects(self, text):
        with pytest.raises(ValueError, match='Please enter a valid URL'):
            normalize_url(text)


class TestNavigationHistory:
    def test_back_and_forward(self):
        history = NavigationHistory()
        for url in ('a', 'b', 'c'):
            history.push(url)
        assert history.back() == 'b'
        assert history.back() == 'a'
        assert history.back() is None
        assert history.forward() == 'b'
        assert history.current == 'b'

    def test_push_drops_forward_entries(self):
        history = NavigationHistory()
        for url in ('a', 'b', 'c'):
            history.push(url)
        history.back()
        history.back()
        history.push('d')
        assert history.entries == ['a', 'd']
        assert not history.can_go_forward


class TestCourtesyThrottle:
    def test_spacing(self):
        clock = FakeClock()
        throttle = CourtesyThrottle(clock)
        assert throttle.allow() == CourtesyThrottle.OK
        clock.advance(0.5)
        assert throttle.allow() == CourtesyThrottle.TOO_FAST
        clock.advance(0.5)
        assert throttle.allow() == CourtesyThrottle.OK

    def test_per_minute_budget_and_reset(self):
        clock = FakeClock()
        throttle = CourtesyThrottle(clock)
        for _ in range(20):
            assert throttle.allow() == CourtesyThrottle.OK
            clock.advance(1)
        assert throttle.allow() == CourtesyThrottle.TOO_MANY
        clock.advance(61)
        assert throttle.allow() == CourtesyThrottle.OK

    def test_window_rolls_instead_of_waiting_for_a_gap(self):
        clock = FakeClock()
        throttle = CourtesyThrottle(clock)
        verdicts = []
        for _ in range(30):
            verdicts.append(throttle.allow())
            clock.advance(5)
        assert verdicts == [CourtesyThrottle.OK] * 30

    def test_oldest_navigation_leaves_the_window(self):
        clock = FakeClock()
        throttle = CourtesyThrottle(clock)
        for _ in range(20):
            throttle.allow()
            clock.advance(2)
        assert throttle.allow() == CourtesyThrottle.TOO_MANY
        clock.advance(20)
        assert throttle.allow() == CourtesyThrottle.OK
        assert throttle.allow() == CourtesyThrottle.TOO_FAST


class TestLoading:
    def test_successful_load(self, shell):
        assert shell.navigate('example.com')
        assert shell.state is ShellState.LOADING
        assert shell.frame.src == proxy_url('https://example.com')
        assert shell.status == 'Loading through secure proxy...'

        shell.frame_loaded()
        assert shell.state is ShellState.LOADED
        assert shell.status == 'Secure proxy active'
        assert shell.page_displayed

    def test_countdown(self, shell, shell_clock):
        shell.navigate('example.com')
        assert shell.countdown == 2.0
        _run(shell, shell_clock, 1.0)
        assert shell.countdown == pytest.approx(1.0)

    def test_retries_then_gives_up(self, shell, shell_clock, probe):
        shell.navigate('example.com')

        _run(shell, shell_clock, 2.0)
        assert shell.status == 'Auto-refresh 2/3'
        _run(shell, shell_clock, 0.3)
        assert shell.frame.loads == 2

        _run(shell, shell_clock, 2.0)
        assert shell.status == 'Auto-refresh 3/3'
        _run(shell, shell_clock, 0.3)
        assert shell.frame.loads == 3

        _run(shell, shell_clock, 2.0)
        assert shell.state is ShellState.FAILED
        assert shell.status == 'Page may not be compatible with proxy'
        assert shell.frame.loads == 3
        assert probe.call_count == 3

    def test_load_during_retry_delay_wins(self, shell, shell_clock):
        shell.navigate('example.com')
        _run(shell, shell_clock, 2.1)
        shell.frame_loaded()
        _run(shell, shell_clock, 1.0)
        assert shell.state is ShellState.LOADED
        assert shell.frame.loads == 1

    def test_rate_limit_detected_at_deadline(self, shell, shell_clock, probe):
        probe.return_value = BLOCKED
        shell.navigate('example.com')
        _run(shell, shell_clock, 2.0)

        assert shell.state is ShellState.RATE_LIMITED
        assert shell.error == BLOCKED
        assert shell.frame.src == Frame.BLANK
        assert len(shell.history) == 0
        assert shell.current_url == ''

    def test_new_navigation_restarts_the_countdown(self, shell, shell_clock, probe):
        shell.navigate('example.com')
        _run(shell, shell_clock, 1.5)
        shell.navigate('example.org')
        _run(shell, shell_clock, 1.0)
        probe.assert_not_called()
        assert shell.frame.src == proxy_url('https://example.org')


class TestMonitoring:
    def test_probe_every_five_seconds_after_load(self, shell, shell_clock, probe):
        shell.navigate('example.com')
        shell.frame_loaded()

        _run(shell, shell_clock, 4.9)
        probe.assert_not_called()
        _run(shell, shell_clock, 0.2)
        assert probe.call_count == 1
        assert shell.state is ShellState.LOADED

        probe.return_value = 'Domain example.com is temporarily blocked'
        _run(shell, shell_clock, 5.0)
        assert shell.state is ShellState.RATE_LIMITED
        assert shell.frame.src == Frame.BLANK

    def test_failed_page_is_still_monitored(self, shell, shell_clock, probe):
        shell.navigate('example.com')
        for seconds in (2.0, 0.3, 2.0, 0.3, 2.0):
            _run(shell, shell_clock, seconds)
        assert shell.state is ShellState.FAILED
        probe.return_value = BLOCKED
        _run(shell, shell_clock, 5.1)
        assert shell.state is ShellState.RATE_LIMITED

    def test_home_stops_monitoring(self, shell, shell_clock, probe):
        shell.navigate('example.com')
        shell.frame_loaded()
        shell.home()
        _run(shell, shell_clock, 10)
        probe.assert_not_called()
        assert shell.state is ShellState.IDLE
        assert shell.frame.src == Frame.BLANK


class TestUserActions:
    def test_unsafe_url(self, shell_clock):
        shell = BrowserShell(safety_check=lambda url: False, clock=shell_clock)
        assert not shell.navigate('malware.example')
        assert shell.state is ShellState.FAILED
        assert shell.error == 'This URL has been flagged as potentially unsafe. Please try a different site.'
        assert shell.frame.loads == 0
        assert len(shell.history) == 0

    def test_invalid_url(self, shell):
        assert not shell.navigate('not a url')
        assert shell.error == 'Please enter a valid URL'

    def test_too_fast_is_ignored(self, shell, shell_clock):
        shell.navigate('example.com')
        shell_clock.advance(0.2)
        assert not shell.navigate('example.org')
        assert shell.current_url == 'https://example.com'

    def test_too_many_navigations(self, shell, shell_clock):
        for i in range(20):
            assert shell.navigate(f'example.com/{i}')
            shell_clock.advance(1)
        assert not shell.navigate('example.com/x')
        assert shell.error == 'Too many requests. Please wait a moment before navigating again.'

    def test_back_forward_refresh(self, shell, shell_clock):
        shell.navigate('a.example')
        shell_clock.advance(1)
        shell.navigate('b.example')

        assert shell.back()
        assert shell.current_url == 'https://a.example'
        assert shell.frame.src == proxy_url('https://a.example')
        assert not shell.back()

        assert shell.forward()
        assert shell.current_url == 'https://b.example'

        assert shell.refresh()
        assert shell.status == 'Refreshing through secure proxy...'
        assert shell.state is ShellState.LOADING

    def test_refresh_without_page(self, shell):
        assert not shell.refresh()

    def test_home_keeps_history(self, shell):
        shell.navigate('a.example')
        shell.home()
        assert shell.current_url == ''
        assert len(shell.history) == 1

    def test_proxy_navigate_message(self, shell):
        assert shell.handle_message({'type': 'proxy-navigate', 'url': 'https://popup.example/'})
        assert shell.current_url == 'https://popup.example/'
        assert not shell.handle_message({'type': 'other'})
        assert not shell.handle_message('proxy-navigate')


class TestRateLimitDetection:
    def test_status_429(self):
        assert detect_rate_limit(429, {}, BLOCKED + '\n') == BLOCKED

    def test_blocked_domain_header(self):
        assert detect_rate_limit(200, {'X-Blocked-Domain': 'x.example', 'X-Block-Reason': 'Spam protection'}, '') \
            == 'Spam protection'

    def test_plain_text_marker(self):
        body = 'Rate limit exceeded. Please slow down.'
        assert detect_rate_limit(200, {'Content-Type': 'text/plain; charset=utf-8'}, body) == body

    def test_html_mentioning_limits_is_not_a_block(self):
        assert detect_rate_limit(200, {'Content-Type': 'text/html'}, 'too many requests') is None

    def test_probe_over_http(self):
        session = FakeSession()
        session.add('http://proxy.test/api/proxy/web?url=https%3A%2F%2Fexample.com',
                    make_response(429, BLOCKED, {'Content-Type': 'text/plain'}))
        assert RateLimitProbe('http://proxy.test/', session=session)('https://example.com') == BLOCKED
        assert session.calls[0][2]['headers'] == {STATUS_CHECK_HEADER: '1'}

    def test_probe_failure_is_not_a_block(self):
        session = FakeSession()
        session.add('http://proxy.test/api/proxy/web?url=https%3A%2F%2Fexample.com',
                    requests.exceptions.ConnectionError('down'))
        assert RateLimitProbe('http://proxy.test', session=session)('https://example.com') is None


class TestSafetyCheck:
    def test_flagged(self):
        session = FakeSession()
        session.add('http://proxy.test/api/url/check-safety', make_response(200, '{"isSafe": false}'))
        assert SafetyCheck('http://proxy.test', session=session)('https://bad.example') is False
        assert session.calls[0][2]['json'] == {'url': 'https://bad.example'}

    def test_error_counts_as_safe(self):
        session = FakeSession()
        session.add('http://proxy.test/api/url/check-safety', requests.exceptions.Timeout('slow'))
        assert SafetyCheck('http://proxy.test', session=session)('https://example.com') is True


class TestFrames:
    def test_headless_frame_never_reports_a_load(self):
        frame = Frame()
        frame.load('/api/proxy/web?url=x')
        assert not frame.take_load()

    def test_http_frame_reports_successful_loads_once(self):
        session = FakeSession()
        session.add('http://proxy.test/api/proxy/web?url=https%3A%2F%2Fexample.com', make_response(200, 'ok'))
        frame = HttpFrame('http://proxy.test/', session=session)
        frame.load(proxy_url('https://example.com'))
        assert frame.status_code == 200
        assert frame.take_load()
        assert not frame.take_load()

    def test_http_frame_error_is_not_a_load(self):
        session = FakeSession()
        frame = HttpFrame('http://proxy.test', session=session)
        frame.load(proxy_url('https://missing.example'))
        assert frame.status_code == 404
        assert not frame.take_load()


class AppSession:
    """Sends the shell's HTTP calls for http://proxy.test into a Flask test client."""

    BASE = 'http://proxy.test'

    def __init__(self, client):
        self.client = client

    def get(self, url, headers=None, **kwargs):
        return self._answer(self.client.get(url[len(self.BASE):], headers=headers or {}))

    def post(self, url, json=None, **kwargs):
        return self._answer(self.client.post(url[len(self.BASE):], json=json))

    def _answer(self, resp):
        return make_response(resp.status_code, resp.get_data(), dict(resp.headers))


@pytest.fixture
def proxy_shell(session, clock):
    """A shell talking to a real proxy app; both share one fake clock."""
    session.add('https://example.com', make_response(200, '<html><head></head><body>hi</body></html>',
                                                     {'Content-Type': 'text/html'}))
    app = create_app(ProxyConfig(start_sweeper=False), http_session=session, clock=clock)
    client = app.test_client()
    http = AppSession(client)
    shell = BrowserShell(
        frame=HttpFrame(AppSession.BASE, session=http),
        safety_check=SafetyCheck(AppSession.BASE, session=http),
        probe=RateLimitProbe(AppSession.BASE, session=http),
        clock=clock,
    )
    return shell, client


class TestAgainstProxyApp:
    def test_page_stays_up_while_monitored(self, proxy_shell, clock, session):
        shell, _ = proxy_shell
        assert shell.navigate('example.com')

        assert drive(shell, 90, sleep=clock.advance) is ShellState.LOADED
        assert shell.status == 'Secure proxy active'
        assert shell.frame.loads == 1
        assert session.urls == ['https://example.com']

    def test_refused_url_is_detected(self, proxy_shell, clock):
        shell, client = proxy_shell
        shell.navigate('example.com')
        drive(shell, 1, sleep=clock.advance)
        assert shell.state is ShellState.LOADED

        statuses = [client.get(proxy_url('https://example.com')).status_code for _ in range(10)]
        assert statuses[-1] == 429

        assert drive(shell, 6, sleep=clock.advance) is ShellState.RATE_LIMITED
        assert shell.block_reason == BLOCKED
        assert shell.frame.src == Frame.BLANK

    def test_status_check_is_not_counted(self, proxy_shell, clock):
        shell, client = proxy_shell
        shell.navigate('example.com')
        drive(shell, 1, sleep=clock.advance)
        for _ in range(50):
            assert shell.probe(shell.current_url) is None
        assert client.get(proxy_url('https://example.com')).status_code == 200


class TestCommandLine:
    def test_invalid_address(self, capsys):
        assert main(['not a url']) == 2
        assert 'Please enter a valid URL' in capsys.readouterr().out

    def test_watches_the_page(self, monkeypatch, capsys):
        shells = []

        def fake_drive(shell, seconds):
            shells.append((shell, seconds))
            shell.frame_loaded()
            return shell.state

        monkeypatch.setattr('webproxy.shell.drive', fake_drive)
        monkeypatch.setattr('webproxy.shell.SafetyCheck.__call__', lambda self, url: True)
        monkeypatch.setattr('webproxy.shell.HttpFrame.load', Frame.load)

        assert main(['example.com', '--proxy', 'http://proxy.test:8080/', '--watch', '5']) == 0
        shell, seconds = shells[0]
        assert seconds == 5.0
        assert shell.frame.base_url == 'http://proxy.test:8080'
        assert capsys.readouterr().out.startswith('loaded: Secure proxy active')
