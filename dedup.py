#!/usr/bin/env python3
"""
Novelty detection for fetched feed items.

Given one category's freshly fetched items and the tracking record, decide which
items are new and must be announced. Items are first grouped by the feed they
came from, then each feed group is classified on its own:

- bootstrap: none of the group's guids is known. The feed is assumed to be newly
  configured, so its whole current window is recorded as posted and nothing is
  announced (posting the backlog would flood the channel).
- incremental: at least one guid is known. Unknown guids are announced; known ones
  are skipped.

Items without a guid can never be deduplicated and are neither announced nor recorded.
Bootstrap marks are applied to the record immediately; marks for announced items are
applied by the caller once delivery succeeds.
"""

from typing import Dict, List, Optional

from config import get_logger
from tracking import RecordStore

logger = get_logger("dedup")

UNKNOWN_FEED = "unknown"
MODE_BOOTSTRAP = "bootstrap"
MODE_INCREMENTAL = "incremental"


class FeedClassification:
    """Outcome of classifying one feed group."""

    def __init__(self, feed_key: str, mode: str) -> None:
        self.feed_key = feed_key
        self.mode = mode
        self.deliver: List[dict] = []
        self.initialized = 0
        self.known = 0
        self.skipped_no_guid = 0

    @property
    def is_bootstrap(self) -> bool:
        return self.mode == MODE_BOOTSTRAP

    def __repr__(self) -> str:
        return (f"FeedClassification({self.feed_key!r}, mode={self.mode}, deliver={len(self.deliver)}, "
                f"initialized={self.initialized}, known={self.known}, skipped_no_guid={self.skipped_no_guid})")


class CategoryClassification:
    """Outcome of classifying every feed group of one category."""

    def __init__(self) -> None:
        self.feeds: List[FeedClassification] = []
        self.deliver: List[dict] = []

    @property
    def initialized(self) -> int:
        return sum(f.initialized for f in self.feeds)

    @property
    def bootstrapped_feeds(self) -> List[str]:
        return [f.feed_key for f in self.feeds if f.is_bootstrap]


def feed_key_for(item: dict) -> str:
    return item.get("feed_url") or UNKNOWN_FEED


def group_by_feed(items: List[dict]) -> Dict[str, List[dict]]:
    """Partition items by origin feed URL, preserving fetch order within each group."""
    groups: Dict[str, List[dict]] = {}
    for item in items:
        groups.setdefault(feed_key_for(item), []).append(item)
    return groups


def classify_feed_group(feed_key: str, items: List[dict], store: RecordStore,
                        queued: Optional[set] = None) -> FeedClassification:
    """Classify one feed group against the record and apply bootstrap marks.

    Args:
        feed_key: Feed URL (or the "unknown" sentinel) used for logging.
        items: The group's items in fetch order.
        store: Tracking record; mutated only in bootstrap mode.
        queued: Guids already selected for delivery in this run. Updated in place so the
                same guid is never announced twice within one category.
    """
    if queued is None:
        queued = set()

    known = sum(1 for item in items if item.get("guid") and store.is_posted(item["guid"]))

    if known == 0 and items:
        result = FeedClassification(feed_key, MODE_BOOTSTRAP)
        logger.info(f"⚠️ New feed detected ({feed_key})! Initializing {len(items)} items without posting")
        for item in items:
            guid = item.get("guid")
            if not guid:
                logger.info(f"Skipping item without guid: {item.get('title', '')}")
                result.skipped_no_guid += 1
                continue
            store.mark(guid)
            result.initialized += 1
        logger.info(f"✅ Feed {feed_key} initialized ({result.initialized} items). Future new items will be posted")
        return result

    result = FeedClassification(feed_key, MODE_INCREMENTAL)
    result.known = known
    for item in items:
        guid = item.get("guid")
        if not guid:
            logger.info(f"Skipping item without guid: {item.get('title', '')}")
            result.skipped_no_guid += 1
            continue
        if store.is_posted(guid) or guid in queued:
            continue
        queued.add(guid)
        result.deliver.append(item)
    return result


def classify_category(items: List[dict], store: RecordStore) -> CategoryClassification:
    """Group a category's items by feed and classify each group in turn."""
    outcome = CategoryClassification()
    queued: set = set()
    for feed_key, feed_items in group_by_feed(items).items():
        result = classify_feed_group(feed_key, feed_items, store, queued)
        outcome.feeds.append(result)
        outcome.deliver.extend(result.deliver)
    return outcome


def order_for_delivery(items: List[dict]) -> List[dict]:
    """Order items oldest first by their ``published`` timestamp.

    Only items with a timestamp move: they are sorted among the positions timestamped
    items already occupy. Items without one keep their exact position, so their
    relative fetch order is untouched.
    """
    timed_slots = [i for i, item in enumerate(items) if item.get("published") is not None]
    timed_sorted = sorted((items[i] for i in timed_slots), key=lambda item: item["published"])
    ordered = list(items)
    for slot, item in zip(timed_slots, timed_sorted):
        ordered[slot] = item
    return ordered
