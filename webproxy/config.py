# Runtime configuration for the web proxy, read from the environment.

import os

# --- Fixed policy constants ---
RATE_LIMIT_WINDOW = 60  # seconds
DOMAIN_SPAM_THRESHOLD = 50  # requests per window per domain
AGGRESSIVE_SPAM_THRESHOLD = 100  # immediate block
DOMAIN_VIOLATION_THRESHOLD = 3
DOMAIN_BLOCK_DURATION = 10 * 60  # seconds
SWEEP_INTERVAL = 5 * 60  # seconds

DEFAULT_TIMEOUT = 30
GAME_TIMEOUT = 45
FONT_FALLBACK_TIMEOUT = 10

PROXY_PREFIX = '/api/proxy/web?url='

# GETs carrying this header only report whether the URL is being refused; nothing is counted or fetched.
STATUS_CHECK_HEADER = 'X-Proxy-Status-Check'

# Hosts that are answered with an empty body instead of being fetched.
TRACKER_DOMAINS = (
    'sentry.end.gg',
    'analytics.google.com',
    'googletagmanager.com',
    'facebook.com/tr',
    'doubleclick.net',
    'googlesyndication.com',
    'google-analytics.com',
    'googleadservices.com',
    'googletag',
    'adsystem.google.com',
)

# Development addresses of the proxy itself.
SELF_HOSTS = ('localhost:3000', '127.0.0.1:3000')


def env_truthy(value, default=False):
    if value is None:
        return default
    return value.strip().lower() in {'1', 'true', 'yes', 'on'}


def _env_int(value, default):
    if value is None or not value.strip():
        return default
    return int(value)


class ProxyConfig:
    """
    All tunables of the proxy in one place.
    Build it explicitly in tests, or with from_env() in a deployment.
    """

    def __init__(self, proxy_domain=None, rate_limiting_enabled=True, anti_spam_enabled=True,
                 ip_limit=100, url_limit=10, sweep_interval=SWEEP_INTERVAL,
                 access_token=None, safe_browsing_api_key=None, log_level='INFO',
                 start_sweeper=True):
        self.proxy_domain = proxy_domain.lower() if proxy_domain else None
        self.rate_limiting_enabled = rate_limiting_enabled
        self.anti_spam_enabled = anti_spam_enabled

        self.rate_limit_window = RATE_LIMIT_WINDOW
        self.ip_limit_get = ip_limit
        self.ip_limit_post = ip_limit // 2
        self.url_limit_get = url_limit
        self.url_limit_post = url_limit // 2

        self.domain_spam_threshold = DOMAIN_SPAM_THRESHOLD
        self.aggressive_spam_threshold = AGGRESSIVE_SPAM_THRESHOLD
        self.domain_violation_threshold = DOMAIN_VIOLATION_THRESHOLD
        self.domain_block_duration = DOMAIN_BLOCK_DURATION
        self.sweep_interval = sweep_interval

        self.default_timeout = DEFAULT_TIMEOUT
        self.game_timeout = GAME_TIMEOUT
        self.font_fallback_timeout = FONT_FALLBACK_TIMEOUT

        self.access_token = access_token or None
        self.safe_browsing_api_key = safe_browsing_api_key or None
        self.log_level = log_level.upper()
        self.start_sweeper = start_sweeper

    @classmethod
    def from_env(cls, environ=None):
        env = os.environ if environ is None else environ
        return cls(
            proxy_domain=env.get('PROXY_DOMAIN'),
            rate_limiting_enabled=env_truthy(env.get('PROXY_RATE_LIMITING'), default=True),
            anti_spam_enabled=env_truthy(env.get('PROXY_ANTI_SPAM'), default=True),
            ip_limit=_env_int(env.get('PROXY_IP_LIMIT'), 100),
            url_limit=_env_int(env.get('PROXY_URL_LIMIT'), 10),
            sweep_interval=_env_int(env.get('PROXY_SWEEP_INTERVAL'), SWEEP_INTERVAL),
            access_token=env.get('PROXY_ACCESS_TOKEN'),
            safe_browsing_api_key=env.get('GOOGLE_SAFE_BROWSING_API_KEY'),
            log_level=env.get('PROXY_LOG_LEVEL', 'INFO'),
            start_sweeper=env_truthy(env.get('PROXY_START_SWEEPER'), default=True),
        )
