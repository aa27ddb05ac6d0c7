#!/usr/bin/env python3
"""
Run coordinator.

A run walks through these steps, in order:

    load tracking record -> resolve categories
      -> per category: resolve webhook, fetch, group, classify, deliver, mark
    -> expire old tracking entries -> save tracking record

Anything that goes wrong inside one category is logged and counted; the next
category still runs and the record is still saved. Only failures before the
category loop (credentials, unreadable feed list, record that cannot be fetched)
abort the run.
"""

import time
from typing import Callable, Dict, List, Optional

from aiohttp import ClientSession, ClientTimeout

from config import config, get_logger
from dedup import classify_category, order_for_delivery
from fetcher import FeedFetcher, pick_latest
from notifier import DiscordNotifier, is_valid_webhook_url
from sources import category_to_webhook_name, load_category_feeds
from telemetry import trace_span
from tracking import RecordStore
from utils import RateLimiter, format_duration

logger = get_logger("drainer")


class RunStats:
    """Counters reported at the end of a run. Informational only."""

    def __init__(self) -> None:
        self.categories_total = 0
        self.categories_processed = 0
        self.feeds_checked = 0
        self.items_found = 0
        self.items_initialized = 0
        self.items_posted = 0
        self.errors = 0

    def as_dict(self) -> Dict[str, int]:
        return dict(vars(self))

    def log_summary(self) -> None:
        logger.info("=== Summary ===")
        logger.info(f"Categories processed: {self.categories_processed}/{self.categories_total}")
        logger.info(f"Feeds checked: {self.feeds_checked}")
        logger.info(f"Items found: {self.items_found}")
        logger.info(f"Items initialized from new feeds: {self.items_initialized}")
        logger.info(f"Items posted: {self.items_posted}")
        logger.info(f"Errors: {self.errors}")


def resolve_webhook(category: str, lookup: Optional[Callable[[str], Optional[str]]] = None) -> Optional[str]:
    """Webhook URL for a category, or None (logged) when missing or invalid."""
    lookup = lookup or config.webhook_for
    env_name = category_to_webhook_name(category)
    webhook_url = lookup(env_name)
    if not webhook_url:
        logger.error(f"Warning: No webhook URL found for {category} (expected env var: {env_name})")
        return None
    if not is_valid_webhook_url(webhook_url):
        logger.error(f"Warning: Invalid webhook URL for {category} ({env_name})")
        return None
    return webhook_url


class FeedDrainer:
    """Drives one run: owns the tracking record for its whole duration.

    Args:
        store: Tracking record, with a transport unless the run is a dry run.
        fetcher: Feed fetcher (defaults to a new FeedFetcher).
        notifier: Webhook notifier (defaults to a new DiscordNotifier).
        retention_days: Age after which tracking entries are dropped.
        dry_run: Classify and log, but neither post nor save.
        webhook_lookup: Maps a webhook environment variable name to its value.
    """

    def __init__(
        self,
        store: RecordStore,
        fetcher: Optional[FeedFetcher] = None,
        notifier: Optional[DiscordNotifier] = None,
        retention_days: Optional[int] = None,
        dry_run: bool = False,
        webhook_lookup: Optional[Callable[[str], Optional[str]]] = None,
    ) -> None:
        self.store = store
        self.fetcher = fetcher or FeedFetcher()
        self.notifier = notifier or DiscordNotifier()
        self.retention_days = retention_days or config.RETENTION_DAYS
        self.dry_run = dry_run
        self.webhook_lookup = webhook_lookup or config.webhook_for
        self.stats = RunStats()

    def resolve_webhook(self, category: str) -> Optional[str]:
        return resolve_webhook(category, self.webhook_lookup)

    @trace_span(
        "drainer.run",
        tracer_name="drainer",
        attr_from_args=lambda self, category_feeds=None, config_path=None, session=None: {
            "drainer.dry_run": self.dry_run,
        },
    )
    async def run(self, category_feeds: Optional[Dict[str, List[str]]] = None,
                  config_path: Optional[str] = None, session: Optional[ClientSession] = None) -> RunStats:
        """Execute a full run against an already loaded tracking record.

        Args:
            category_feeds: Categories to process; read from the feeds document when omitted.
            config_path: Feeds document path used when category_feeds is omitted.
            session: Shared aiohttp session for feed fetching.

        Raises:
            ConfigurationError: the feeds document cannot be read.
            TrackingSaveError: the record could not be written back.
        """
        start_time = time.time()
        if category_feeds is None:
            logger.info("--- Resolving categories ---")
            category_feeds = load_category_feeds(config_path)

        categories = list(category_feeds.keys())
        self.stats.categories_total = len(categories)
        if not categories:
            logger.info("No categories found in feeds configuration")
        else:
            logger.info(f"Found {len(categories)} categories: {', '.join(categories)}")

        if categories:
            if session is None:
                async with ClientSession(timeout=ClientTimeout(total=config.HTTP_TIMEOUT)) as owned_session:
                    await self._process_categories(category_feeds, owned_session)
            else:
                await self._process_categories(category_feeds, session)

        await self.finalize()
        self.stats.log_summary()
        logger.info(f"🎉 Run completed in {format_duration(time.time() - start_time)}")
        return self.stats

    async def _process_categories(self, category_feeds: Dict[str, List[str]], session: ClientSession) -> None:
        for category, feeds in category_feeds.items():
            try:
                await self.process_category(category, feeds, session)
            except Exception as e:
                logger.error(f"❌ Category {category} failed: {e}")
                self.stats.errors += 1

    @trace_span(
        "drainer.process_category",
        tracer_name="drainer",
        attr_from_args=lambda self, category, feeds, session=None: {
            "category": category,
            "category.feeds": len(feeds),
        },
    )
    async def process_category(self, category: str, feeds: List[str], session: Optional[ClientSession] = None) -> None:
        """Fetch, classify and deliver one category."""
        logger.info(f"--- Processing Category: {category} ---")

        webhook_url = self.resolve_webhook(category)
        if webhook_url is None:
            self.stats.errors += 1
            return

        self.stats.feeds_checked += len(feeds)
        logger.info(f"Fetching {len(feeds)} feed(s) for {category}...")
        items = await self.fetcher.fetch_many(feeds, session)
        self.stats.items_found += len(items)
        if not items:
            logger.info(f"No items found for {category}")
            return

        outcome = classify_category(items, self.store)
        self.stats.items_initialized += outcome.initialized
        if outcome.initialized:
            logger.info(f"Initialized {outcome.initialized} items from new feeds in {category}")

        new_items = order_for_delivery(outcome.deliver)
        logger.info(f"Found {len(new_items)} new item(s) out of {len(items)} total for {category}")
        if not new_items:
            logger.info(f"No new items to post for {category}")
            self.stats.categories_processed += 1
            return

        if self.dry_run:
            for item in new_items:
                logger.info(f"[dry-run] Would post to {category}: {item['title']} ({item['link']})")
            self.stats.categories_processed += 1
            return

        logger.info(f"Posting {len(new_items)} item(s) to Discord for {category}...")
        results = await self.notifier.post_items(webhook_url, new_items, category)
        posted = self.reconcile(new_items, results)

        self.stats.items_posted += posted
        self.stats.errors += len(new_items) - posted
        self.stats.categories_processed += 1
        logger.info(f"Posted {posted}/{len(new_items)} items for {category}")

    def reconcile(self, items: List[dict], results: List[bool]) -> int:
        """Mark delivered items as posted, in delivery order; returns how many were marked."""
        marked = 0
        for item, delivered in zip(items, results):
            if delivered and item.get("guid"):
                self.store.mark(item["guid"])
                marked += 1
        return marked

    async def finalize(self) -> None:
        """Expire old entries and persist the record. Runs once, after every category."""
        self.store.expire(self.retention_days)
        if self.dry_run:
            logger.info(f"[dry-run] Tracking data not saved ({len(self.store)} items in memory)")
            return
        logger.info("--- Saving Tracking Data ---")
        await self.store.save()


async def send_test_posts(
    category_feeds: Dict[str, List[str]],
    fetcher: Optional[FeedFetcher] = None,
    notifier: Optional[DiscordNotifier] = None,
    webhook_lookup: Optional[Callable[[str], Optional[str]]] = None,
    delay: Optional[float] = None,
    session: Optional[ClientSession] = None,
) -> Dict[str, bool]:
    """Post the newest item of every category, to check webhooks end to end.

    The tracking record is neither read nor written. Returns category -> posted flag
    for every category that had a valid webhook.
    """
    fetcher = fetcher or FeedFetcher()
    notifier = notifier or DiscordNotifier()
    limiter = RateLimiter(config.DELIVERY_DELAY_SECONDS if delay is None else delay)
    results: Dict[str, bool] = {}

    for category, feeds in category_feeds.items():
        webhook_url = resolve_webhook(category, webhook_lookup)
        if webhook_url is None:
            continue

        logger.info(f"Fetching latest item for {category}...")
        items = await fetcher.fetch_many(feeds, session)
        latest = pick_latest(items)
        if latest is None:
            logger.warning(f"No items found for {category}")
            results[category] = False
            continue

        await limiter.acquire()
        logger.info(f"Posting test item to {category}: {latest['title']}")
        results[category] = await notifier.post_item(webhook_url, latest, category)

    sent = sum(1 for ok in results.values() if ok)
    logger.info(f"Test posts sent: {sent}/{len(results)}")
    return results
