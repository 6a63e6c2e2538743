# URL reputation lookups against the Google Safe Browsing v4 API.

import logging

import requests

logger = logging.getLogger(__name__)

SAFE_BROWSING_ENDPOINT = 'https://safebrowsing.googleapis.com/v4/threatMatches:find'

THREAT_TYPES = [
    'MALWARE',
    'SOCIAL_ENGINEERING',
    'UNWANTED_SOFTWARE',
    'POTENTIALLY_HARMFUL_APPLICATION',
]


class SafeBrowsingClient:
    """
    Fails open: without an API key, or when the lookup itself fails, every URL is reported safe.
    """

    def __init__(self, api_key=None, session=None, timeout=10):
        self.api_key = api_key
        self.session = session if session is not None else requests.Session()
        self.timeout = timeout

    def payload(self, url):
        return {
            'client': {'clientId': 'webproxy', 'clientVersion': '1.0'},
            'threatInfo': {
                'threatTypes': THREAT_TYPES,
                'platformTypes': ['ANY_PLATFORM'],
                'threatEntryTypes': ['URL'],
                'threatEntries': [{'url': url}],
            },
        }

    def check(self, url):
        """Returns a dict with at least "isSafe"."""
        if not self.api_key:
            logger.warning("Google Safe Browsing API key is not configured")
            return {'isSafe': True}

        try:
            resp = self.session.post(
                SAFE_BROWSING_ENDPOINT,
                params={'key': self.api_key},
                json=self.payload(url),
                timeout=self.timeout,
            )
        except requests.exceptions.RequestException as e:
            logger.error(f"Error checking URL safety: {e}")
            return {'isSafe': True}

        if not resp.ok:
            logger.error(f"Error from Google Safe Browsing API: {resp.status_code} {resp.text[:200]}")
            return {'isSafe': True}

        try:
            matches = resp.json().get('matches') or []
        except ValueError:
            logger.error("Google Safe Browsing API returned invalid JSON")
            return {'isSafe': True}

        if not matches:
            return {'isSafe': True}

        threat = matches[0]
        return {
            'isSafe': False,
            'threatType': threat.get('threatType'),
            'platformType': threat.get('platformType'),
            'threatEntryType': threat.get('threatEntryType'),
        }
