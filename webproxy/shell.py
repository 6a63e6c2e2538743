"""
Navigation state machine of the proxy browser.

The page served at / runs the same machine in JavaScript (templates/browser.html).
This module is the headless client: `webproxy-shell <url>` opens a page through a
running proxy and watches it for rate limiting. Time only moves when tick() is
called, using the injected clock.

States: IDLE -> CHECKING_SAFETY -> LOADING -> LOADED | RATE_LIMITED | FAILED.
A load sets the frame source and starts a 2 second countdown. If the frame
reports a load first the page is LOADED. Otherwise the proxy is asked whether it
is refusing the page and the load is retried, at most twice, before giving up.
"""

import argparse
import enum
import logging
import time
from collections import deque
from urllib.parse import urlsplit

import requests

from webproxy import LOG_FORMAT
from webproxy.config import STATUS_CHECK_HEADER
from webproxy.rewrite import proxy_url

logger = logging.getLogger(__name__)

COUNTDOWN_SECONDS = 2.0
TICK_SECONDS = 0.1
RETRY_DELAY = 0.3
MAX_RETRIES = 2
MONITOR_INTERVAL = 5.0
MIN_NAVIGATION_SPACING = 1.0
MAX_NAVIGATIONS_PER_MINUTE = 20

RATE_LIMIT_MARKERS = ('rate limit exceeded', 'too many requests', 'temporarily blocked', 'blocked for')


class ShellState(enum.Enum):
    IDLE = 'idle'
    CHECKING_SAFETY = 'checking_safety'
    LOADING = 'loading'
    LOADED = 'loaded'
    RATE_LIMITED = 'rate_limited'
    FAILED = 'failed'


def normalize_url(text):
    """Add a scheme when missing and make sure the result looks like a web address."""
    url = text.strip()
    if not url.startswith(('http://', 'https://')):
        url = 'https://' + url
    try:
        parts = urlsplit(url)
        parts.port
    except ValueError:
        raise ValueError('Please enter a valid URL')
    if not parts.hostname or ' ' in parts.netloc:
        raise ValueError('Please enter a valid URL')
    return url


class NavigationHistory:
    """Visited URLs plus a cursor. Pushing drops everything after the cursor."""

    def __init__(self):
        self.entries = []
        self.index = -1

    def push(self, url):
        del self.entries[self.index + 1:]
        self.entries.append(url)
        self.index = len(self.entries) - 1

    @property
    def current(self):
        return self.entries[self.index] if self.index >= 0 else None

    @property
    def can_go_back(self):
        return self.index > 0

    @property
    def can_go_forward(self):
        return self.index < len(self.entries) - 1

    def back(self):
        if not self.can_go_back:
            return None
        self.index -= 1
        return self.entries[self.index]

    def forward(self):
        if not self.can_go_forward:
            return None
        self.index += 1
        return self.entries[self.index]

    def clear(self):
        self.entries = []
        self.index = -1

    def __len__(self):
        return len(self.entries)


class CourtesyThrottle:
    """
    Client-side navigation throttle, independent of the server limits:
    at most one navigation per second and 20 in any rolling minute.
    """

    OK = 'ok'
    TOO_FAST = 'too_fast'
    TOO_MANY = 'too_many'

    def __init__(self, clock=time.monotonic, min_spacing=MIN_NAVIGATION_SPACING,
                 per_minute=MAX_NAVIGATIONS_PER_MINUTE):
        self.clock = clock
        self.min_spacing = min_spacing
        self.per_minute = per_minute
        self.recent = deque()

    def allow(self):
        now = self.clock()
        if self.recent and now - self.recent[-1] < self.min_spacing:
            return self.TOO_FAST
        while self.recent and now - self.recent[0] >= 60:
            self.recent.popleft()
        if len(self.recent) >= self.per_minute:
            return self.TOO_MANY
        self.recent.append(now)
        return self.OK


class Frame:
    """The embedded page. It only remembers its source and never reports a load by itself."""

    BLANK = 'about:blank'

    def __init__(self):
        self.src = self.BLANK
        self.loads = 0
        self.load_finished = False

    def load(self, url):
        self.src = url
        self.loads += 1
        self.load_finished = False

    def clear(self):
        self.src = self.BLANK
        self.load_finished = False

    def take_load(self):
        """Return True once per finished load."""
        finished, self.load_finished = self.load_finished, False
        return finished


class HttpFrame(Frame):
    """Requests its source from the proxy. A 2xx answer counts as a finished load."""

    def __init__(self, base_url, session=None, timeout=60):
        super().__init__()
        self.base_url = base_url.rstrip('/')
        self.session = session if session is not None else requests.Session()
        self.timeout = timeout
        self.status_code = None

    def load(self, url):
        super().load(url)
        try:
            resp = self.session.get(self.base_url + url, timeout=self.timeout)
        except requests.exceptions.RequestException as e:
            logger.warning(f"Frame load failed: {e}")
            self.status_code = None
            return
        self.status_code = resp.status_code
        self.load_finished = 200 <= resp.status_code < 300


class RateLimitProbe:
    """
    Asks the proxy whether GETs for a URL are currently refused and returns the
    reason, or None. The request carries the status check header, so it is not
    counted against any limit and nothing is fetched upstream.
    """

    def __init__(self, base_url, session=None, timeout=10):
        self.base_url = base_url.rstrip('/')
        self.session = session if session is not None else requests.Session()
        self.timeout = timeout

    def __call__(self, url):
        try:
            resp = self.session.get(self.base_url + proxy_url(url), headers={STATUS_CHECK_HEADER: '1'},
                                    timeout=self.timeout)
        except requests.exceptions.RequestException as e:
            logger.debug(f"Rate limit probe failed: {e}")
            return None
        return detect_rate_limit(resp.status_code, resp.headers, resp.text)


def detect_rate_limit(status_code, headers, body):
    if status_code == 429 or headers.get('X-Blocked-Domain'):
        return (body or '').strip()[:300] or headers.get('X-Block-Reason') or 'Rate limited'
    content_type = headers.get('Content-Type', '')
    if content_type.startswith('text/plain'):
        lowered = (body or '').lower()
        if any(marker in lowered for marker in RATE_LIMIT_MARKERS):
            return body.strip()[:300]
    return None


class SafetyCheck:
    """Asks the proxy's /api/url/check-safety endpoint. Any failure counts as safe."""

    def __init__(self, base_url, session=None, timeout=10):
        self.base_url = base_url.rstrip('/')
        self.session = session if session is not None else requests.Session()
        self.timeout = timeout

    def __call__(self, url):
        try:
            resp = self.session.post(self.base_url + '/api/url/check-safety', json={'url': url},
                                     timeout=self.timeout)
            return bool(resp.json().get('isSafe', True))
        except (requests.exceptions.RequestException, ValueError) as e:
            logger.error(f"Error checking URL safety: {e}")
            return True


class BrowserShell:

    def __init__(self, frame=None, safety_check=None, probe=None, clock=time.monotonic):
        self.frame = frame if frame is not None else Frame()
        self.safety_check = safety_check or (lambda url: True)
        self.probe = probe or (lambda url: None)
        self.clock = clock
        self.throttle = CourtesyThrottle(clock)
        self.history = NavigationHistory()

        self.state = ShellState.IDLE
        self.current_url = ''
        self.status = ''
        self.error = ''
        self.block_reason = None
        self.countdown = 0.0
        self.retry_count = 0

        self._deadline = None
        self._retry_at = None
        self._next_probe = None

    # --- Timers ---

    def _cancel_timers(self):
        self._deadline = None
        self._retry_at = None
        self._next_probe = None

    @property
    def page_displayed(self):
        return bool(self.current_url) and self.state in (ShellState.LOADED, ShellState.FAILED)

    # --- Loading ---

    def _begin_load(self, url, retry_count=0):
        self._cancel_timers()
        self.retry_count = retry_count
        self.state = ShellState.LOADING
        self.frame.load(proxy_url(url))
        self.countdown = COUNTDOWN_SECONDS
        self._deadline = self.clock() + COUNTDOWN_SECONDS
        logger.debug(f"Loading {url} (attempt {retry_count + 1})")

    def frame_loaded(self):
        """Called when the frame reports a finished load."""
        if self.state is not ShellState.LOADING:
            return
        self._cancel_timers()
        self.state = ShellState.LOADED
        self.status = 'Secure proxy active'
        self.countdown = 0.0
        self._next_probe = self.clock() + MONITOR_INTERVAL

    def _countdown_elapsed(self, now):
        reason = self.probe(self.current_url)
        if reason:
            self._rate_limited(reason)
            return
        if self.retry_count < MAX_RETRIES:
            self.status = f'Auto-refresh {self.retry_count + 2}/{MAX_RETRIES + 1}'
            self.countdown = 0.0
            self._retry_at = now + RETRY_DELAY
            return
        logger.info(f"Giving up on {self.current_url} after {MAX_RETRIES} retries")
        self.state = ShellState.FAILED
        self.status = 'Page may not be compatible with proxy'
        self.countdown = 0.0
        self._next_probe = now + MONITOR_INTERVAL

    def _rate_limited(self, reason):
        logger.warning(f"Rate limiting detected for {self.current_url}: {reason}")
        self._cancel_timers()
        self.state = ShellState.RATE_LIMITED
        self.block_reason = reason
        self.error = reason
        self.status = ''
        self.countdown = 0.0
        self.frame.clear()
        self.history.clear()
        self.current_url = ''

    def tick(self):
        """Advance timers to the current clock reading."""
        now = self.clock()

        if self.state is ShellState.LOADING:
            if self._retry_at is not None:
                if now >= self._retry_at:
                    self._begin_load(self.current_url, self.retry_count + 1)
                return
            if self._deadline is not None:
                self.countdown = max(0.0, self._deadline - now)
                if now >= self._deadline:
                    self._deadline = None
                    self._countdown_elapsed(now)
            return

        if self.page_displayed and self._next_probe is not None and now >= self._next_probe:
            self.monitor()

    def monitor(self):
        """Probe the displayed page once. Returns False when it turned out to be rate limited."""
        if not self.page_displayed:
            return True
        reason = self.probe(self.current_url)
        if reason:
            self._rate_limited(reason)
            return False
        self._next_probe = self.clock() + MONITOR_INTERVAL
        return True

    # --- User actions ---

    def navigate(self, text):
        verdict = self.throttle.allow()
        if verdict == CourtesyThrottle.TOO_FAST:
            logger.debug("Navigation throttled - too frequent")
            return False
        if verdict == CourtesyThrottle.TOO_MANY:
            self.error = 'Too many requests. Please wait a moment before navigating again.'
            return False

        self.error = ''
        self.block_reason = None
        self.state = ShellState.CHECKING_SAFETY
        self.status = 'Checking URL safety...'

        try:
            url = normalize_url(text)
        except ValueError as e:
            return self._fail(str(e))

        if not self.safety_check(url):
            return self._fail('This URL has been flagged as potentially unsafe. Please try a different site.')

        self.history.push(url)
        self.current_url = url
        self.status = 'Loading through secure proxy...'
        self._begin_load(url)
        return True

    def _fail(self, message):
        self._cancel_timers()
        self.state = ShellState.FAILED
        self.error = message
        self.status = ''
        return False

    def _load_history_entry(self, url):
        if url is None:
            return False
        self.current_url = url
        self.status = 'Loading through secure proxy...'
        self._begin_load(url)
        return True

    def back(self):
        return self._load_history_entry(self.history.back())

    def forward(self):
        return self._load_history_entry(self.history.forward())

    def refresh(self):
        if not self.current_url:
            return False
        self.status = 'Refreshing through secure proxy...'
        self._begin_load(self.current_url)
        return True

    def home(self):
        self._cancel_timers()
        self.frame.clear()
        self.state = ShellState.IDLE
        self.current_url = ''
        self.status = ''
        self.error = ''
        self.countdown = 0.0

    def handle_message(self, data):
        """Messages posted by the injected script (window.open is turned into proxy-navigate)."""
        if isinstance(data, dict) and data.get('type') == 'proxy-navigate' and data.get('url'):
            return self.navigate(data['url'])
        return False


def drive(shell, seconds, sleep=time.sleep):
    """
    Run the shell for seconds of its clock at the page's tick rate, handing finished
    frame loads to it. Stops early once the proxy has rate limited the page.
    """
    end = shell.clock() + seconds
    while shell.clock() < end:
        if shell.frame.take_load():
            shell.frame_loaded()
        shell.tick()
        if shell.state is ShellState.RATE_LIMITED:
            break
        sleep(TICK_SECONDS)
    return shell.state


def main(argv=None):
    parser = argparse.ArgumentParser(
        description='Open a page through the web proxy and watch it for rate limiting.')
    parser.add_argument('url', help='Address to open, with or without a scheme')
    parser.add_argument('--proxy', default='http://127.0.0.1:5000', help='Proxy base URL (default: %(default)s)')
    parser.add_argument('--watch', type=float, default=60.0,
                        help='Seconds to keep the page open (default: %(default)s)')
    parser.add_argument('--token', help='Access token when the proxy requires one')
    parser.add_argument('-v', '--verbose', action='store_true', help='Log every load and check')
    args = parser.parse_args(argv)

    logging.basicConfig(level=logging.DEBUG if args.verbose else logging.INFO, format=LOG_FORMAT)

    session = requests.Session()
    if args.token:
        session.headers['X-Proxy-Token'] = args.token
    shell = BrowserShell(
        frame=HttpFrame(args.proxy, session=session),
        safety_check=SafetyCheck(args.proxy, session=session),
        probe=RateLimitProbe(args.proxy, session=session),
    )

    if not shell.navigate(args.url):
        print(f"Not opened: {shell.error}")
        return 2

    state = drive(shell, args.watch)
    if state is ShellState.RATE_LIMITED:
        print(f"Rate limited: {shell.block_reason}")
        return 1
    print(f"{state.value}: {shell.status or shell.error}")
    return 0 if state is ShellState.LOADED else 1


if __name__ == '__main__':
    raise SystemExit(main())
