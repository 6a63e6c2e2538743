# Background housekeeping for the in-memory limiter state.

import logging
from threading import Event, Thread

logger = logging.getLogger(__name__)


class Sweeper:
    """
    Runs a list of cleanup jobs every `interval` seconds on a daemon thread.
    Owned by the application: started when the app is built, stopped on shutdown.
    """

    def __init__(self, interval, jobs=()):
        self.interval = interval
        self.jobs = list(jobs)
        self.thread = None
        self.stop_event = Event()

    def run_once(self):
        for job in self.jobs:
            try:
                job()
            except Exception:
                # One broken job must not stop the others or kill the thread.
                logger.exception(f"Sweep job {getattr(job, '__qualname__', job)!r} failed")

    def _loop(self):
        logger.info(f"Sweeper started (every {self.interval}s)")
        while not self.stop_event.wait(self.interval):
            self.run_once()
        logger.info("Sweeper stopped")

    @property
    def running(self):
        return bool(self.thread and self.thread.is_alive())

    def start(self):
        if self.running:
            logger.warning("Sweeper already running")
            return
        self.stop_event.clear()
        self.thread = Thread(target=self._loop, name='webproxy-sweeper', daemon=True)
        self.thread.start()

    def stop(self, timeout=5):
        if not self.running:
            return
        self.stop_event.set()
        self.thread.join(timeout=timeout)
        if self.thread.is_alive():
            logger.warning("Sweeper thread did not terminate in time, but marked for stop")
