"""
Per-domain abuse detection.

Game and ad-asset hosts can fire dozens of polling requests per second through
the proxy. Each domain gets a window counter: crossing the spam threshold is a
soft throttle that records a violation, repeated violations or an extreme
burst block the domain outright for a while.
"""

import logging
import math
import time

from webproxy import config as defaults
from webproxy.store import MemoryStore

logger = logging.getLogger(__name__)


class DomainCounter:
    def __init__(self, count, reset_time, violations=0):
        self.count = count
        self.reset_time = reset_time
        # Survives window resets until the domain is swept.
        self.violations = violations


class DomainBlock:
    def __init__(self, blocked_until, reason):
        self.blocked_until = blocked_until
        self.reason = reason


class SpamVerdict:
    def __init__(self, allowed, reason=None):
        self.allowed = allowed
        self.reason = reason

    def __bool__(self):
        return self.allowed

    def __repr__(self):
        return f"SpamVerdict(allowed={self.allowed}, reason={self.reason!r})"


ALLOWED = SpamVerdict(True)


class DomainAbuseDetector:

    def __init__(self, counters=None, blocks=None, clock=time.time,
                 window=defaults.RATE_LIMIT_WINDOW,
                 spam_threshold=defaults.DOMAIN_SPAM_THRESHOLD,
                 aggressive_threshold=defaults.AGGRESSIVE_SPAM_THRESHOLD,
                 violation_threshold=defaults.DOMAIN_VIOLATION_THRESHOLD,
                 block_duration=defaults.DOMAIN_BLOCK_DURATION,
                 enabled=True):
        self.counters = counters if counters is not None else MemoryStore()
        self.blocks = blocks if blocks is not None else MemoryStore()
        self.clock = clock
        self.window = window
        self.spam_threshold = spam_threshold
        self.aggressive_threshold = aggressive_threshold
        self.violation_threshold = violation_threshold
        self.block_duration = block_duration
        self.enabled = enabled

    def check(self, domain, client_ip='unknown'):
        """Count a request to domain and decide whether it may go upstream."""
        if not self.enabled:
            return ALLOWED

        now = self.clock()

        blocked = self._block_verdict(domain, now)
        if blocked is not None:
            return blocked

        def step(entry):
            if entry is None or now > entry.reset_time:
                violations = entry.violations if entry else 0
                return DomainCounter(1, now + self.window, violations), ('ok', 1, violations)
            entry.count += 1
            if entry.count >= self.aggressive_threshold:
                return entry, ('aggressive', entry.count, entry.violations)
            if entry.count >= self.spam_threshold:
                entry.violations += 1
                return entry, ('spam', entry.count, entry.violations)
            return entry, ('ok', entry.count, entry.violations)

        outcome, count, violations = self.counters.update(f"domain:{domain}", step)

        if outcome == 'aggressive':
            self._block(domain, f"Aggressive spam detected ({count} requests in 1 minute)", now, client_ip)
            return SpamVerdict(False, f"Domain {domain} blocked for aggressive spam behavior.")

        if outcome == 'spam':
            logger.warning(
                f"Spam warning: {domain} exceeded threshold "
                f"({count} requests, violation #{violations}) (IP: {client_ip})"
            )
            if violations >= self.violation_threshold:
                self._block(domain, f"Multiple spam violations ({violations} violations)", now, client_ip)
                return SpamVerdict(False, f"Domain {domain} blocked for repeated spam violations.")
            return SpamVerdict(False, f"Domain {domain} is sending too many requests. Please slow down.")

        return ALLOWED

    def _block(self, domain, reason, now, client_ip):
        self.blocks.set(domain, DomainBlock(now + self.block_duration, reason))
        logger.warning(f"Blocked domain: {domain} - {reason} (IP: {client_ip})")

    def _block_verdict(self, domain, now):
        block = self.blocks.get(domain)
        if block and now < block.blocked_until:
            minutes = math.ceil((block.blocked_until - now) / 60)
            return SpamVerdict(
                False,
                f"Domain {domain} is temporarily blocked: {block.reason}. "
                f"Block expires in {minutes} minutes.",
            )
        return None

    def status(self, domain):
        """
        Report whether requests to domain are being refused right now, without
        counting anything. A domain over the spam threshold in its current window
        is refused even when it is not blocked.
        """
        if not self.enabled:
            return ALLOWED
        now = self.clock()
        blocked = self._block_verdict(domain, now)
        if blocked is not None:
            return blocked
        entry = self.counters.get(f"domain:{domain}")
        if entry and now <= entry.reset_time and entry.count >= self.spam_threshold:
            return SpamVerdict(False, f"Domain {domain} is sending too many requests. Please slow down.")
        return ALLOWED

    def sweep(self):
        """Drop finished windows and expired blocks."""
        now = self.clock()
        self.counters.sweep(lambda key, entry: now > entry.reset_time)
        for domain in self.blocks.sweep(lambda key, block: now > block.blocked_until):
            logger.info(f"Unblocking domain: {domain} (block expired)")
