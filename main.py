#!/usr/bin/env python3
"""
RSS Drainer entry point.

Modes:
  run        Fetch every category's feeds, announce new items on Discord, update tracking
  test-post  Post the newest item of each category (tracking is left untouched)
  list       Show configured categories and whether their webhooks are set

Exit status is 0 on normal completion (even if some categories had errors) and 1 when
the run could not start or its tracking record could not be saved.
"""

import argparse
import asyncio
import sys
from typing import Optional

from config import config, get_logger
from drainer import FeedDrainer, send_test_posts
from errors import ConfigurationError, TrackingLoadError, TrackingSaveError
from fetcher import FeedFetcher
from notifier import DiscordNotifier, is_valid_webhook_url
from sources import category_to_webhook_name, load_category_feeds
from storage import create_transport
from telemetry import init_telemetry
from tracking import RecordStore

# Module-specific logger
logger = get_logger("main")


async def run_drain(feeds_path: Optional[str] = None, dry_run: bool = False,
                    retention_days: Optional[int] = None) -> int:
    """One full drain run. Returns the process exit code."""
    logger.info("🚀 Starting RSS Drainer")
    logger.debug(f"Configuration: {config.get_config_summary()}")

    transport = create_transport()
    fetcher = FeedFetcher()
    notifier = DiscordNotifier()
    try:
        logger.info("--- Loading Tracking Data ---")
        store = await RecordStore(transport).load()
        drainer = FeedDrainer(
            store,
            fetcher=fetcher,
            notifier=notifier,
            retention_days=retention_days,
            dry_run=dry_run,
        )
        await drainer.run(config_path=feeds_path)
    finally:
        await notifier.close()
        await fetcher.close()
        await transport.close()
    return 0


async def run_test_posts(feeds_path: Optional[str] = None) -> int:
    """Send one test post per category. Returns the process exit code."""
    logger.info("🧪 Sending test posts")
    category_feeds = load_category_feeds(feeds_path)
    if not category_feeds:
        logger.warning("No categories found in feeds configuration")
        return 0

    fetcher = FeedFetcher()
    notifier = DiscordNotifier()
    try:
        await send_test_posts(category_feeds, fetcher=fetcher, notifier=notifier)
    finally:
        await notifier.close()
        await fetcher.close()
    return 0


def print_categories(feeds_path: Optional[str] = None) -> int:
    """Print categories, their feeds and webhook status."""
    category_feeds = load_category_feeds(feeds_path)
    print(f"\n📋 Categories ({len(category_feeds)}) from {feeds_path or config.FEEDS_CONFIG_PATH}")
    for category, feeds in category_feeds.items():
        env_name = category_to_webhook_name(category)
        webhook_url = config.webhook_for(env_name)
        if not webhook_url:
            status = "❌ missing"
        elif not is_valid_webhook_url(webhook_url):
            status = "⚠️ invalid"
        else:
            status = "✅ set"
        print(f"\n## {category}  ({env_name}: {status})")
        for url in feeds:
            print(f"   📡 {url}")
    return 0


def main():
    """Main entry point."""

    parser = argparse.ArgumentParser(description='RSS Drainer: forward new feed items to Discord')
    parser.add_argument('mode', nargs='?', default='run', choices=['run', 'test-post', 'list'],
                        help='Operation mode (default: run)')
    parser.add_argument('--dry-run', action='store_true',
                        help='Fetch and classify, log what would be posted, but neither post nor save tracking')
    parser.add_argument('--feeds', type=str,
                        help='Feeds configuration document (Markdown or YAML); defaults to FEEDS_CONFIG_PATH')
    parser.add_argument('--retention-days', type=int,
                        help='Drop tracking entries older than this many days; defaults to RETENTION_DAYS')

    args = parser.parse_args()
    if args.retention_days is not None and args.retention_days < 1:
        parser.error('--retention-days must be at least 1')

    init_telemetry("rss-drainer")

    try:
        if args.mode == 'run':
            code = asyncio.run(run_drain(args.feeds, dry_run=args.dry_run, retention_days=args.retention_days))
        elif args.mode == 'test-post':
            code = asyncio.run(run_test_posts(args.feeds))
        else:
            code = print_categories(args.feeds)
        sys.exit(code)

    except ConfigurationError as e:
        logger.error(f"❌ Configuration error: {e}")
        sys.exit(1)
    except TrackingLoadError as e:
        logger.error(f"❌ Failed to load tracking data: {e}")
        sys.exit(1)
    except TrackingSaveError as e:
        logger.error(f"❌ Failed to save tracking data: {e}")
        sys.exit(1)
    except KeyboardInterrupt:
        logger.info("👋 RSS Drainer shutting down")
    except Exception as e:
        logger.error(f"💥 Unexpected error: {e}")
        sys.exit(1)


if __name__ == "__main__":
    main()
