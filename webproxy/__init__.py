"""
A rewriting web proxy for browsing sites inside a frame.

Pages are fetched upstream, their HTML/CSS rewritten so that every
sub-request comes back through /api/proxy/web, and the proxy guards itself
with per-IP/per-URL rate limits and per-domain abuse detection.
"""

import atexit
import logging
import time

from dotenv import load_dotenv
from flask import Flask

from webproxy.config import ProxyConfig
from webproxy.services import ProxyServices

__version__ = '0.3.0'

LOG_FORMAT = '%(asctime)s - %(name)s - %(levelname)s - %(message)s'

logger = logging.getLogger(__name__)


def create_app(config=None, http_session=None, clock=time.time, stores=None):
    """
    Build the Flask application.

    Without an explicit config, settings come from the environment (and a .env file if present).
    http_session replaces the requests.Session used for upstream calls.
    """
    if config is None:
        load_dotenv()
        config = ProxyConfig.from_env()

    logging.basicConfig(level=getattr(logging, config.log_level, logging.INFO), format=LOG_FORMAT)

    app = Flask(__name__)
    app.extensions['webproxy'] = ProxyServices(config, session=http_session, clock=clock, stores=stores)

    from webproxy.views import proxy, shell
    app.register_blueprint(proxy)
    app.register_blueprint(shell)

    if config.start_sweeper:
        sweeper = app.extensions['webproxy'].sweeper
        sweeper.start()
        atexit.register(sweeper.stop)

    logger.info(
        f"Proxy ready - rate limiting: {config.rate_limiting_enabled} "
        f"({config.ip_limit_get}/min per IP, {config.url_limit_get}/min per URL), "
        f"anti-spam: {config.anti_spam_enabled}"
    )
    return app
