#!/usr/bin/env python3
"""
Utility classes and functions for the drainer.

This module contains shared utilities used by the fetcher, the Discord notifier
and the run coordinator: pacing, retry backoff and small formatting helpers.
"""

from asyncio import Lock, sleep
from time import monotonic
from typing import Optional
from urllib.parse import urlparse

from config import get_logger

# Module-specific logger
logger = get_logger("utils")


class RateLimiter:
    """Enforces a minimum interval between consecutive operations.

    The first call to acquire() returns immediately; every later call waits until
    at least ``min_interval`` seconds have passed since the previous one was granted.
    Waiting is an awaited sleep, so the event loop keeps running in between.
    """

    def __init__(self, min_interval: float):
        """Initialize the rate limiter.

        Args:
            min_interval: Minimum number of seconds between two grants.
                          If 0 or negative, no pacing is applied.
        """
        self.min_interval = max(float(min_interval), 0.0)
        self.last_request_time: Optional[float] = None
        self._lock = Lock()

    async def acquire(self):
        """Wait, if necessary, until the next operation may start."""
        if self.min_interval <= 0:
            return

        async with self._lock:
            if self.last_request_time is not None:
                time_since_last = monotonic() - self.last_request_time
                if time_since_last < self.min_interval:
                    wait_time = self.min_interval - time_since_last
                    logger.debug(f"Rate limiting: waiting {wait_time:.2f} seconds")
                    await sleep(wait_time)

            self.last_request_time = monotonic()


class RetryHelper:
    """Exponential backoff between attempts: base_delay, 2*base_delay, ... capped at max_delay."""

    def __init__(self, max_retries: int = 3, base_delay: float = 1.0, max_delay: float = 60.0):
        self.max_retries = max_retries
        self.base_delay = base_delay
        self.max_delay = max_delay

    def calculate_delay(self, attempt: int) -> float:
        """Seconds to wait after the failed ``attempt`` (0-based)."""
        return min(self.base_delay * (2 ** attempt), self.max_delay)

    async def sleep_for_attempt(self, attempt: int):
        delay = self.calculate_delay(attempt)
        if delay <= 0:
            return
        logger.debug(f"Backing off {delay:.2f}s before attempt {attempt + 2}")
        await sleep(delay)


def validate_url(url: str) -> bool:
    """True for an absolute http(s) URL with a host."""
    if not isinstance(url, str) or not url.strip():
        return False
    try:
        parsed = urlparse(url.strip())
    except ValueError:
        return False
    return parsed.scheme in ('http', 'https') and bool(parsed.netloc)


def format_duration(seconds: float) -> str:
    """Short elapsed-time label for run summaries: "850ms", "4.2s", "3m 07s"."""
    if seconds < 1:
        return f"{max(seconds, 0) * 1000:.0f}ms"
    if seconds < 60:
        return f"{seconds:.1f}s"
    minutes, secs = divmod(int(seconds), 60)
    return f"{minutes}m {secs:02d}s"


def truncate_string(text: str, max_length: int, suffix: str = "...") -> str:
    """Cut ``text`` to at most ``max_length`` characters, ending with ``suffix`` when cut."""
    if not text or len(text) <= max_length:
        return text
    keep = max_length - len(suffix)
    if keep <= 0:
        return text[:max_length]
    return text[:keep] + suffix
