# The long-lived collaborators of the proxy, created once per application.

import time

from webproxy.abuse import DomainAbuseDetector
from webproxy.access import AccessGate
from webproxy.fetcher import Fetcher
from webproxy.ratelimit import RateLimiter
from webproxy.resolver import OriginInference
from webproxy.safety import SafeBrowsingClient
from webproxy.store import MemoryStore
from webproxy.sweeper import Sweeper


def _store(stores, name):
    store = stores.get(name)
    return store if store is not None else MemoryStore()


class ProxyServices:

    def __init__(self, config, session=None, clock=time.time, stores=None):
        """
        stores: optional dict with "rate_limits", "domain_counters" and "domain_blocks"
        CounterStore instances; in-memory stores are used for anything missing.
        """
        stores = stores or {}
        self.config = config
        self.clock = clock
        self.limiter = RateLimiter(
            store=_store(stores, 'rate_limits'),
            window=config.rate_limit_window,
            clock=clock,
        )
        self.detector = DomainAbuseDetector(
            counters=_store(stores, 'domain_counters'),
            blocks=_store(stores, 'domain_blocks'),
            clock=clock,
            window=config.rate_limit_window,
            spam_threshold=config.domain_spam_threshold,
            aggressive_threshold=config.aggressive_spam_threshold,
            violation_threshold=config.domain_violation_threshold,
            block_duration=config.domain_block_duration,
            enabled=config.anti_spam_enabled,
        )
        self.fetcher = Fetcher(
            session=session,
            default_timeout=config.default_timeout,
            game_timeout=config.game_timeout,
            font_fallback_timeout=config.font_fallback_timeout,
        )
        self.gate = AccessGate(config.access_token)
        self.safety = SafeBrowsingClient(config.safe_browsing_api_key, session=session)
        self.inference = OriginInference()
        self.sweeper = Sweeper(config.sweep_interval, jobs=[self.limiter.sweep, self.detector.sweep])
