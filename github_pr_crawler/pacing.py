"""Request admission and pacing shared by all crawl workers.

The admission limiter caps in-flight API requests independently of how many
repositories are being crawled. Pacing spaces requests by a base interval
scaled by a shared backoff multiplier that doubles on secondary rate limits
and resets after every successful request.
"""

import random
import sys
import threading
import time

from .models import SECONDARY, CrawlInterrupted, RetryLater

DEFAULT_MAX_CONCURRENT_REQUESTS = 10
DEFAULT_REQUEST_INTERVAL = 1.0
MIN_REQUEST_INTERVAL = 0.1
MAX_BACKOFF_MULTIPLIER = 60.0
BACKOFF_JITTER = 5.0


def _log(msg: str):
    sys.stderr.write(f"[pacing] {msg}\n")
    sys.stderr.flush()


class RequestPacer:
    """Owned by the orchestrator and shared by every worker."""

    def __init__(
        self,
        max_concurrent_requests: int = DEFAULT_MAX_CONCURRENT_REQUESTS,
        request_interval: float = DEFAULT_REQUEST_INTERVAL,
    ):
        self._admission = threading.Semaphore(max_concurrent_requests)
        self._lock = threading.Lock()
        self._request_interval = request_interval
        self._last_request_time = 0.0
        self._backoff_multiplier = 1.0
        self.secondary_rate_limit_hits = 0
        self.stop_requested = threading.Event()

    def stop(self):
        """Wake every waiting caller. No request is issued, and no result handed back, after this."""
        self.stop_requested.set()

    def _check_stop(self):
        if self.stop_requested.is_set():
            raise CrawlInterrupted("stop requested")

    def _pause(self, seconds: float):
        if self.stop_requested.wait(seconds):
            raise CrawlInterrupted("stop requested while pacing")

    @property
    def backoff_multiplier(self) -> float:
        with self._lock:
            return self._backoff_multiplier

    def _space_requests(self):
        """Wait until this caller's slot; reserve it under the lock."""
        with self._lock:
            interval = max(self._request_interval * self._backoff_multiplier, MIN_REQUEST_INTERVAL)
            now = time.monotonic()
            slot = max(now, self._last_request_time + interval)
            self._last_request_time = slot
        wait = slot - now
        if wait > 0:
            self._pause(wait)

    def _back_off(self):
        with self._lock:
            self._backoff_multiplier = min(self._backoff_multiplier * 2, MAX_BACKOFF_MULTIPLIER)
            multiplier = self._backoff_multiplier
            self.secondary_rate_limit_hits += 1
        sleep_time = multiplier + random.uniform(0, BACKOFF_JITTER)
        _log(f"Secondary rate limit hit. Backing off for {sleep_time:.2f}s...")
        self._pause(sleep_time)

    def _reset_backoff(self):
        with self._lock:
            self._backoff_multiplier = 1.0

    def call(self, fn, *args, **kwargs):
        """Run `fn` under admission control, re-issuing it while it returns RetryLater.

        Raises CrawlInterrupted instead of issuing or returning once stop() was called.
        """
        with self._admission:
            while True:
                self._check_stop()
                self._space_requests()
                result = fn(*args, **kwargs)
                self._check_stop()
                if isinstance(result, RetryLater):
                    if result.reason == SECONDARY:
                        self._back_off()
                    continue
                self._reset_backoff()
                return result
