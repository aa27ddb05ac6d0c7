import json

import pytest

from drainer import FeedDrainer, RunStats, resolve_webhook, send_test_posts
from errors import TrackingSaveError
from tracking import MS_PER_DAY, RecordStore

NOW = 1_700_000_000_000
WEBHOOK = "https://discord.com/api/webhooks/123/abc"
SESSION = object()


def make_item(guid, feed_url, published=None):
    return {
        "title": f"Title {guid}",
        "link": f"https://example.com/{guid}",
        "guid": guid,
        "pub_date": None,
        "published": published,
        "feed_url": feed_url,
    }


class FakeTransport:
    def __init__(self, blob=None, fail_save=None):
        self.blob = blob
        self.fail_save = fail_save
        self.saves = []

    async def load_blob(self):
        return self.blob

    async def save_blob(self, content):
        if self.fail_save is not None:
            raise self.fail_save
        self.saves.append(content)

    async def close(self):
        pass


class FakeFetcher:
    """Returns canned items per feed URL; raises for URLs mapped to an exception."""

    def __init__(self, feeds):
        self.feeds = feeds
        self.calls = []

    async def fetch_many(self, feed_urls, session=None):
        self.calls.append(list(feed_urls))
        items = []
        for url in feed_urls:
            result = self.feeds.get(url, [])
            if isinstance(result, Exception):
                raise result
            items.extend(result)
        return items


class FakeNotifier:
    """Records posts; outcome per guid defaults to success."""

    def __init__(self, failures=()):
        self.failures = set(failures)
        self.posted = []

    async def post_item(self, webhook_url, item, category):
        self.posted.append((category, item["guid"]))
        return item["guid"] not in self.failures

    async def post_items(self, webhook_url, items, category):
        return [await self.post_item(webhook_url, item, category) for item in items]


def all_webhooks(env_name):
    return WEBHOOK


def make_drainer(store, fetcher, notifier=None, **kwargs):
    kwargs.setdefault("webhook_lookup", all_webhooks)
    return FeedDrainer(store, fetcher=fetcher, notifier=notifier or FakeNotifier(), **kwargs)


@pytest.mark.asyncio
async def test_partial_delivery_failure_marks_only_successes():
    feed = "https://news.example/rss"
    transport = FakeTransport()
    store = RecordStore(transport, clock=lambda: NOW, entries={"g0": NOW})
    fetcher = FakeFetcher({
        feed: [make_item(g, feed, published=p) for g, p in (("g0", 1), ("g1", 2), ("g2", 3), ("g3", 4))],
        "https://other.example/rss": [make_item("o1", "https://other.example/rss")],
    })
    notifier = FakeNotifier(failures={"g2"})
    drainer = make_drainer(store, fetcher, notifier)

    stats = await drainer.run(
        {"News": [feed], "Other": ["https://other.example/rss"]},
        session=SESSION,
    )

    assert notifier.posted == [("News", "g1"), ("News", "g2"), ("News", "g3")]
    assert store.is_posted("g1")
    assert not store.is_posted("g2")
    assert store.is_posted("g3")
    # next category still ran (and was bootstrapped)
    assert store.is_posted("o1")
    assert stats.items_posted == 2
    assert stats.errors == 1
    assert stats.categories_processed == 2
    assert stats.items_initialized == 1
    assert len(transport.saves) == 1
    assert set(json.loads(transport.saves[0])) == {"g0", "g1", "g3", "o1"}


@pytest.mark.asyncio
async def test_new_feed_in_known_category_is_bootstrapped_silently():
    old_feed, new_feed = "https://old.example/rss", "https://new.example/rss"
    store = RecordStore(FakeTransport(), clock=lambda: NOW, entries={"a1": NOW})
    fetcher = FakeFetcher({
        old_feed: [make_item("a1", old_feed), make_item("a2", old_feed)],
        new_feed: [make_item("n1", new_feed), make_item("n2", new_feed)],
    })
    notifier = FakeNotifier()

    stats = await make_drainer(store, fetcher, notifier).run({"Tech": [old_feed, new_feed]}, session=SESSION)

    assert notifier.posted == [("Tech", "a2")]
    assert store.is_posted("n1") and store.is_posted("n2")
    assert stats.items_initialized == 2


@pytest.mark.asyncio
async def test_delivery_is_ordered_oldest_first():
    feed = "https://f.example/rss"
    store = RecordStore(FakeTransport(), clock=lambda: NOW, entries={"known": NOW})
    fetcher = FakeFetcher({
        feed: [make_item("known", feed), make_item("new", feed, 300), make_item("old", feed, 100)],
    })
    notifier = FakeNotifier()

    await make_drainer(store, fetcher, notifier).run({"Cat": [feed]}, session=SESSION)

    assert [guid for _, guid in notifier.posted] == ["old", "new"]


@pytest.mark.asyncio
async def test_missing_webhook_skips_category_and_counts_error():
    feed_a, feed_b = "https://a.example/rss", "https://b.example/rss"
    store = RecordStore(FakeTransport(), clock=lambda: NOW, entries={"a1": NOW, "b1": NOW})
    fetcher = FakeFetcher({
        feed_a: [make_item("a1", feed_a), make_item("a2", feed_a)],
        feed_b: [make_item("b1", feed_b), make_item("b2", feed_b)],
    })
    notifier = FakeNotifier()

    def lookup(env_name):
        return WEBHOOK if env_name == "DISCORD_WEBHOOK_WORLDNEWS" else None

    stats = await make_drainer(store, fetcher, notifier, webhook_lookup=lookup).run(
        {"AI": [feed_a], "World News": [feed_b]},
        session=SESSION,
    )

    assert fetcher.calls == [[feed_b]]
    assert notifier.posted == [("World News", "b2")]
    assert not store.is_posted("a2")
    assert stats.errors == 1
    assert stats.categories_processed == 1


@pytest.mark.asyncio
async def test_invalid_webhook_is_treated_as_missing():
    store = RecordStore(FakeTransport(), clock=lambda: NOW)
    fetcher = FakeFetcher({})
    drainer = make_drainer(store, fetcher, webhook_lookup=lambda name: "https://example.com/hook")

    stats = await drainer.run({"AI": ["https://a.example/rss"]}, session=SESSION)

    assert fetcher.calls == []
    assert stats.errors == 1


@pytest.mark.asyncio
async def test_failure_in_one_category_does_not_stop_the_next():
    feed_b = "https://b.example/rss"
    transport = FakeTransport()
    store = RecordStore(transport, clock=lambda: NOW, entries={"b1": NOW})
    fetcher = FakeFetcher({
        "https://a.example/rss": RuntimeError("boom"),
        feed_b: [make_item("b1", feed_b), make_item("b2", feed_b)],
    })
    notifier = FakeNotifier()

    stats = await make_drainer(store, fetcher, notifier).run(
        {"A": ["https://a.example/rss"], "B": [feed_b]},
        session=SESSION,
    )

    assert notifier.posted == [("B", "b2")]
    assert stats.errors == 1
    assert len(transport.saves) == 1


@pytest.mark.asyncio
async def test_expiry_runs_before_the_single_save():
    transport = FakeTransport()
    store = RecordStore(
        transport,
        clock=lambda: NOW,
        entries={"ancient": NOW - 40 * MS_PER_DAY, "recent": NOW - MS_PER_DAY},
    )

    await make_drainer(store, FakeFetcher({}), retention_days=30).run({}, session=SESSION)

    assert len(transport.saves) == 1
    assert json.loads(transport.saves[0]) == {"recent": NOW - MS_PER_DAY}


@pytest.mark.asyncio
async def test_dry_run_neither_posts_nor_saves():
    feed = "https://f.example/rss"
    transport = FakeTransport()
    store = RecordStore(transport, clock=lambda: NOW, entries={"g1": NOW})
    fetcher = FakeFetcher({feed: [make_item("g1", feed), make_item("g2", feed)]})
    notifier = FakeNotifier()

    stats = await make_drainer(store, fetcher, notifier, dry_run=True).run({"Cat": [feed]}, session=SESSION)

    assert notifier.posted == []
    assert transport.saves == []
    assert not store.is_posted("g2")
    assert stats.items_posted == 0


@pytest.mark.asyncio
async def test_save_failure_propagates():
    store = RecordStore(FakeTransport(fail_save=TrackingSaveError("HTTP 500")), clock=lambda: NOW)
    with pytest.raises(TrackingSaveError):
        await make_drainer(store, FakeFetcher({})).run({}, session=SESSION)


@pytest.mark.asyncio
async def test_run_reads_categories_from_feeds_document(tmp_path):
    feeds_doc = tmp_path / "README.md"
    feeds_doc.write_text(
        "# Feeds\n\n### Feeds\n\n## AI\n- https://ai.example/rss\n\n## License\nMIT\n",
        encoding="utf-8",
    )
    store = RecordStore(FakeTransport(), clock=lambda: NOW)
    fetcher = FakeFetcher({"https://ai.example/rss": [make_item("x", "https://ai.example/rss")]})

    stats = await make_drainer(store, fetcher).run(config_path=str(feeds_doc), session=SESSION)

    assert fetcher.calls == [["https://ai.example/rss"]]
    assert stats.categories_total == 1
    assert stats.items_initialized == 1


def test_resolve_webhook_uses_category_env_name():
    seen = []

    def lookup(env_name):
        seen.append(env_name)
        return WEBHOOK

    assert resolve_webhook("World News", lookup) == WEBHOOK
    assert seen == ["DISCORD_WEBHOOK_WORLDNEWS"]


def test_run_stats_as_dict():
    stats = RunStats()
    stats.items_posted = 3
    assert stats.as_dict()["items_posted"] == 3
    assert set(stats.as_dict()) == {
        "categories_total", "categories_processed", "feeds_checked",
        "items_found", "items_initialized", "items_posted", "errors",
    }


@pytest.mark.asyncio
async def test_send_test_posts_posts_latest_item_per_category():
    feed_a, feed_b = "https://a.example/rss", "https://b.example/rss"
    fetcher = FakeFetcher({
        feed_a: [make_item("a-old", feed_a, 100), make_item("a-new", feed_a, 200), make_item("a-undated", feed_a)],
        feed_b: [],
    })
    notifier = FakeNotifier()

    results = await send_test_posts(
        {"A": [feed_a], "B": [feed_b]},
        fetcher=fetcher,
        notifier=notifier,
        webhook_lookup=all_webhooks,
        delay=0,
        session=SESSION,
    )

    assert notifier.posted == [("A", "a-new")]
    assert results == {"A": True, "B": False}
