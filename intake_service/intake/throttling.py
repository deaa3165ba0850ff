"""
Fixed-window per-IP rate limiting for the chat endpoints.
"""
import logging
import time

from django.conf import settings
from django.core.cache import cache
from rest_framework.throttling import BaseThrottle

logger = logging.getLogger(__name__)


class FixedWindowIPThrottle(BaseThrottle):
    """
    Allows ``CHAT_RATE_LIMIT`` requests per client IP per ``CHAT_RATE_WINDOW`` seconds.

    The counter lives in the shared Django cache (Redis in production).
    ``cache.add`` creates the window key with its expiry and ``cache.incr``
    bumps it, so every web worker sees the same count.
    """

    cache_prefix = 'throttle:chat'

    def __init__(self):
        self.rate = settings.CHAT_RATE_LIMIT
        self.window = settings.CHAT_RATE_WINDOW
        self.window_start = None

    def _key(self, ident: str) -> str:
        return f"{self.cache_prefix}:{ident}:{self.window_start}"

    def allow_request(self, request, view) -> bool:
        if not self.rate:
            return True
        ident = self.get_ident(request)
        now = int(time.time())
        self.window_start = now - now % self.window
        key = self._key(ident)

        if cache.add(key, 1, timeout=self.window):
            return True
        try:
            count = cache.incr(key)
        except ValueError:
            # Key expired between add and incr; start a fresh window.
            cache.add(key, 1, timeout=self.window)
            return True

        if count > self.rate:
            logger.warning(f"Rate limit exceeded for {ident}: {count}/{self.rate}")
            return False
        return True

    def wait(self):
        if self.window_start is None:
            return None
        return max(0, self.window_start + self.window - time.time())
