#!/usr/bin/env python3
"""
RSS/Atom feed fetcher.

Downloads feeds with aiohttp, parses them with feedparser (in a worker thread, it is
blocking), and normalizes every entry into a plain dict:

    {
        'title': str,             # display only
        'link': str,              # display only
        'guid': str,              # guid -> id -> link -> '' ('' means not trackable)
        'pub_date': str | None,   # raw date text from the feed
        'published': int | None,  # Unix seconds parsed from pub_date, when possible
        'feed_url': str,          # the feed this entry came from
    }

Fetching never raises: a feed that cannot be downloaded or parsed contributes no items.
"""

from asyncio import Semaphore, TimeoutError, gather, get_running_loop, wait_for
from calendar import timegm
from concurrent.futures import ThreadPoolExecutor
from datetime import datetime, timezone
from email.utils import parsedate_to_datetime
from functools import partial
import traceback
from typing import Any, List, Optional

import feedparser
from aiohttp import ClientError, ClientSession, ClientTimeout

from config import config, get_logger
from telemetry import trace_span
from utils import RetryHelper

# Module-specific logger
logger = get_logger("fetcher")

# HTTP status codes
HTTP_OK = 200
HTTP_TOO_MANY_REQUESTS = 429

DEFAULT_TITLE = "No title"


class FeedFetcher:
    """Fetches and normalizes feeds, isolating failures per feed."""

    def __init__(self, timeout: Optional[int] = None, max_retries: Optional[int] = None,
                 concurrency: Optional[int] = None) -> None:
        self.timeout = timeout or config.HTTP_TIMEOUT
        self.max_retries = config.MAX_RETRIES if max_retries is None else max_retries
        self.concurrency = concurrency or config.FETCH_CONCURRENCY
        self.retry_helper = RetryHelper(max_retries=self.max_retries, base_delay=config.RETRY_DELAY_BASE)
        self.executor = ThreadPoolExecutor(max_workers=self.concurrency)

    async def run_in_executor(self, func, *args) -> Any:
        """Run a blocking function in the thread pool executor."""
        loop = get_running_loop()
        return await loop.run_in_executor(self.executor, partial(func, *args))

    async def fetch_many(self, feed_urls: List[str], session: Optional[ClientSession] = None) -> List[dict]:
        """Fetch several feeds concurrently and return all their items, in feed order.

        One feed failing never affects the others.
        """
        if not feed_urls:
            return []

        semaphore = Semaphore(self.concurrency)

        async def fetch_with_semaphore(url: str, client: ClientSession) -> List[dict]:
            async with semaphore:
                return await self.fetch_feed(url, client)

        async def _run(client: ClientSession) -> List[Any]:
            return await gather(*(fetch_with_semaphore(url, client) for url in feed_urls), return_exceptions=True)

        if session is None:
            async with ClientSession(timeout=ClientTimeout(total=self.timeout)) as owned_session:
                results = await _run(owned_session)
        else:
            results = await _run(session)

        all_items: List[dict] = []
        for url, result in zip(feed_urls, results):
            if isinstance(result, BaseException):
                logger.error(f"Failed to parse feed {url}: {result}")
                continue
            all_items.extend(result)
        return all_items

    @trace_span(
        "fetch_feed",
        tracer_name="fetcher",
        attr_from_args=lambda self, url, session: {"feed.url": url},
    )
    async def fetch_feed(self, url: str, session: ClientSession) -> List[dict]:
        """Fetch and parse a single feed. Returns [] on any failure."""
        logger.info(f"Fetching feed: {url}")
        try:
            content = await self._fetch_feed_content(url, session)
            if content is None:
                return []
            items = await self.run_in_executor(self.parse_feed_content, content, url)
        except Exception as e:
            logger.error(f"Error parsing feed {url}: {e}")
            logger.debug(traceback.format_exc())
            return []

        if not items:
            logger.info(f"No items found in feed: {url}")
        else:
            logger.info(f"Found {len(items)} items in feed: {url}")
        return items

    async def _fetch_feed_content(self, url: str, session: ClientSession) -> bytes | None:
        """Download the raw feed document, retrying transient network failures."""
        headers = {'User-Agent': config.USER_AGENT}
        timeout = ClientTimeout(total=self.timeout)
        for attempt in range(self.max_retries + 1):
            try:
                async with session.get(url, headers=headers, timeout=timeout) as response:
                    if response.status == HTTP_TOO_MANY_REQUESTS:
                        retry_after = response.headers.get("Retry-After", "unknown")
                        logger.warning(f"Received 429 Too Many Requests for {url} (Retry-After: {retry_after})")
                        return None
                    if response.status != HTTP_OK:
                        logger.error(f"Error fetching {url}: HTTP {response.status}")
                        return None
                    return await response.read()
            except (ClientError, TimeoutError) as e:
                detail = self._format_client_error(e)
                if attempt < self.max_retries:
                    logger.warning(
                        "Retry %d/%d for %s due to error: %s",
                        attempt + 1,
                        self.max_retries,
                        url,
                        detail,
                    )
                    await self.retry_helper.sleep_for_attempt(attempt)
                    continue
                logger.error(f"Failed to fetch {url} after {self.max_retries} retries ({detail})")
                return None
        return None

    def parse_feed_content(self, content: bytes, feed_url: str) -> List[dict]:
        """Parse a feed document and normalize its entries (blocking)."""
        feed = feedparser.parse(content, sanitize_html=True, resolve_relative_uris=True)

        if feed.bozo and getattr(feed, 'bozo_exception', None) is not None:
            logger.warning(f"Feed parsing warning for {feed_url}: {feed.bozo_exception}")

        entries = feed.get('entries') or []
        return [self.normalize_entry(entry, feed_url) for entry in entries]

    def normalize_entry(self, entry, feed_url: str) -> dict:
        """Turn a feedparser entry into the drainer's item dict."""
        title = (self._get_entry_value(entry, 'title') or '').strip() or DEFAULT_TITLE
        link = (self._get_entry_value(entry, 'link') or '').strip()
        pub_date = self._get_entry_value(entry, 'published') or self._get_entry_value(entry, 'updated')
        return {
            'title': title,
            'link': link,
            'guid': self.get_guid(entry),
            'pub_date': pub_date or None,
            'published': self.parse_published(entry),
            'feed_url': feed_url,
        }

    def get_guid(self, entry) -> str:
        """Identity of an entry: explicit guid, then id, then link; '' when none is usable."""
        for field in ('guid', 'id', 'link'):
            value = self._get_entry_value(entry, field)
            if isinstance(value, str) and value.strip():
                return value.strip()
        return ''

    def parse_published(self, entry) -> Optional[int]:
        """Publication time as Unix seconds, or None when the entry carries no usable date."""
        for field in ('published', 'updated', 'created', 'pubDate', 'date'):
            timestamp = self._date_value_to_timestamp(self._get_entry_value(entry, f"{field}_parsed"))
            if timestamp is not None:
                return timestamp
            timestamp = self._date_value_to_timestamp(self._get_entry_value(entry, field))
            if timestamp is not None:
                return timestamp
        return None

    def _get_entry_value(self, entry, field: str) -> Any:
        """Safely fetch feedparser entry fields with attribute or dict access."""
        if not field or entry is None:
            return None
        getter = getattr(entry, 'get', None)
        if callable(getter):
            try:
                value = getter(field)
            except (KeyError, AttributeError):
                value = None
            if value is not None:
                return value
        try:
            return getattr(entry, field)
        except AttributeError:
            return None

    def _date_value_to_timestamp(self, value: Any) -> Optional[int]:
        """Convert assorted date representations into a Unix timestamp."""
        if value in (None, ''):
            return None

        if isinstance(value, bool):
            return None

        if isinstance(value, (int, float)):
            return int(value) if value > 0 else None

        if isinstance(value, datetime):
            dt = value if value.tzinfo else value.replace(tzinfo=timezone.utc)
            return int(dt.timestamp())

        if isinstance(value, (list, tuple)):
            # feedparser *_parsed values are UTC struct_time
            try:
                return timegm(tuple(value)[:9])
            except (OverflowError, ValueError, TypeError):
                return None

        if isinstance(value, str):
            return self._parse_date_string(value.strip())

        return None

    def _parse_date_string(self, date_str: str) -> Optional[int]:
        if not date_str:
            return None
        parsers = (
            self._parse_with_feedparser,
            self._parse_with_email_utils,
            self._parse_with_isoformat,
        )
        for parser in parsers:
            timestamp = parser(date_str)
            if timestamp is not None:
                return timestamp
        return None

    def _parse_with_feedparser(self, date_str: str) -> Optional[int]:
        try:
            time_struct = feedparser._parse_date(date_str)
            if time_struct:
                return timegm(time_struct)
        except (ValueError, TypeError, AttributeError, OverflowError):
            return None
        return None

    def _parse_with_email_utils(self, date_str: str) -> Optional[int]:
        try:
            dt = parsedate_to_datetime(date_str)
        except (TypeError, ValueError, IndexError, OverflowError):
            return None
        if dt is None:
            return None
        if dt.tzinfo is None:
            dt = dt.replace(tzinfo=timezone.utc)
        return int(dt.timestamp())

    def _parse_with_isoformat(self, date_str: str) -> Optional[int]:
        try:
            dt = datetime.fromisoformat(date_str.replace("Z", "+00:00"))
        except ValueError:
            return None
        if dt.tzinfo is None:
            dt = dt.replace(tzinfo=timezone.utc)
        return int(dt.timestamp())

    def _format_client_error(self, error: Exception) -> str:
        """Describe aiohttp client errors with any available status/errno."""
        parts: List[str] = [error.__class__.__name__]
        status = getattr(error, 'status', None)
        if status is not None:
            parts.append(f"status={status}")
        os_error = getattr(error, 'os_error', None)
        if os_error is not None:
            errno = getattr(os_error, 'errno', None)
            if errno is not None:
                parts.append(f"errno={errno}")
        message = str(error)
        if message:
            parts.append(message)
        return " ".join(parts)

    async def close(self) -> None:
        """Shut down the parser thread pool."""
        loop = get_running_loop()
        try:
            await wait_for(loop.run_in_executor(None, partial(self.executor.shutdown, wait=True)), timeout=30.0)
        except TimeoutError:
            logger.warning("Thread pool executor shutdown timed out after 30 seconds")
            self.executor.shutdown(wait=False)


def pick_latest(items: List[dict]) -> Optional[dict]:
    """Most recently published item; items without a date only win when nothing is dated."""
    if not items:
        return None
    dated = [item for item in items if item.get('published') is not None]
    if not dated:
        return items[0]
    return max(dated, key=lambda item: item['published'])


__all__ = ["FeedFetcher", "pick_latest"]
