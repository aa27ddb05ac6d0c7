import json
import sys

import pytest

import main
from config import config
from errors import ConfigurationError, TrackingLoadError, TrackingSaveError

WEBHOOK = "https://discord.com/api/webhooks/123/abc"
GOOD_FEED = "https://good.example/rss"
BROKEN_FEED = "https://broken.example/rss"


class FakeTransport:
    def __init__(self, blob="{}", fail_save=None):
        self.blob = blob
        self.fail_save = fail_save
        self.saves = []
        self.closed = False

    async def load_blob(self):
        return self.blob

    async def save_blob(self, content):
        if self.fail_save is not None:
            raise self.fail_save
        self.saves.append(content)

    async def close(self):
        self.closed = True


class FakeFetcher:
    async def fetch_many(self, feed_urls, session=None):
        if BROKEN_FEED in feed_urls:
            raise RuntimeError("feed exploded")
        return [{
            "title": "Hello",
            "link": "https://good.example/1",
            "guid": "good-1",
            "pub_date": None,
            "published": None,
            "feed_url": GOOD_FEED,
        }]

    async def close(self):
        pass


class FakeNotifier:
    async def post_items(self, webhook_url, items, category):
        return [True for _ in items]

    async def close(self):
        pass


@pytest.fixture
def feeds_doc(tmp_path):
    doc = tmp_path / "README.md"
    doc.write_text(
        f"### Feeds\n\n## Good\n- {GOOD_FEED}\n\n## Broken\n- {BROKEN_FEED}\n",
        encoding="utf-8",
    )
    return str(doc)


@pytest.fixture
def cli(monkeypatch):
    """Invoke main() with the given arguments and return the exit code."""
    monkeypatch.setattr(main, "init_telemetry", lambda *args, **kwargs: None)

    def invoke(*args):
        monkeypatch.setattr(sys, "argv", ["rss-drainer", *args])
        with pytest.raises(SystemExit) as excinfo:
            main.main()
        return excinfo.value.code

    return invoke


@pytest.fixture
def offline_run(monkeypatch):
    """Route the real run_drain through in-memory collaborators."""
    transport = FakeTransport()
    monkeypatch.setattr(main, "create_transport", lambda: transport)
    monkeypatch.setattr(main, "FeedFetcher", FakeFetcher)
    monkeypatch.setattr(main, "DiscordNotifier", FakeNotifier)
    monkeypatch.setattr(config, "webhook_for", lambda env_name: WEBHOOK)
    return transport


def test_run_exits_zero_on_success(cli, monkeypatch):
    calls = []

    async def fake_run_drain(feeds_path, dry_run=False, retention_days=None):
        calls.append((feeds_path, dry_run, retention_days))
        return 0

    monkeypatch.setattr(main, "run_drain", fake_run_drain)

    assert cli() == 0
    assert calls == [(None, False, None)]


def test_run_passes_flags_through(cli, monkeypatch):
    calls = []

    async def fake_run_drain(feeds_path, dry_run=False, retention_days=None):
        calls.append((feeds_path, dry_run, retention_days))
        return 0

    monkeypatch.setattr(main, "run_drain", fake_run_drain)

    assert cli("run", "--dry-run", "--feeds", "feeds.yaml", "--retention-days", "7") == 0
    assert calls == [("feeds.yaml", True, 7)]


def test_failing_category_still_exits_zero_and_saves(cli, offline_run, feeds_doc):
    assert cli("run", "--feeds", feeds_doc) == 0

    assert len(offline_run.saves) == 1
    assert "good-1" in json.loads(offline_run.saves[0])
    assert offline_run.closed


@pytest.mark.parametrize("error", [
    ConfigurationError("GIST_ID and GIST_TOKEN environment variables are required"),
    TrackingLoadError("HTTP 500"),
    TrackingSaveError("HTTP 500"),
])
def test_fatal_errors_exit_one(cli, monkeypatch, error):
    async def failing_run_drain(feeds_path, dry_run=False, retention_days=None):
        raise error

    monkeypatch.setattr(main, "run_drain", failing_run_drain)

    assert cli("run") == 1


def test_missing_credentials_exit_one(cli, monkeypatch, feeds_doc):
    def no_credentials():
        raise ConfigurationError("GIST_ID and GIST_TOKEN environment variables are required")

    monkeypatch.setattr(main, "create_transport", no_credentials)

    assert cli("run", "--feeds", feeds_doc) == 1


def test_save_failure_exits_one(cli, offline_run, feeds_doc):
    offline_run.fail_save = TrackingSaveError("HTTP 500", details={"status": 500})

    assert cli("run", "--feeds", feeds_doc) == 1
    assert offline_run.closed


def test_unreadable_record_exits_one(cli, offline_run, feeds_doc, monkeypatch):
    async def failing_load():
        raise TrackingLoadError("HTTP 502")

    monkeypatch.setattr(offline_run, "load_blob", failing_load)

    assert cli("run", "--feeds", feeds_doc) == 1


def test_unexpected_error_exits_one(cli, monkeypatch):
    async def broken_run_drain(feeds_path, dry_run=False, retention_days=None):
        raise RuntimeError("boom")

    monkeypatch.setattr(main, "run_drain", broken_run_drain)

    assert cli("run") == 1


def test_missing_feeds_document_exits_one(cli, offline_run, tmp_path):
    assert cli("run", "--feeds", str(tmp_path / "nope.md")) == 1


def test_list_prints_webhook_status(cli, monkeypatch, feeds_doc, capsys):
    monkeypatch.setattr(config, "webhook_for", lambda env_name: WEBHOOK if env_name.endswith("GOOD") else None)

    assert cli("list", "--feeds", feeds_doc) == 0

    out = capsys.readouterr().out
    assert "DISCORD_WEBHOOK_GOOD: ✅ set" in out
    assert "DISCORD_WEBHOOK_BROKEN: ❌ missing" in out


def test_retention_days_below_one_is_rejected(cli):
    assert cli("run", "--retention-days", "0") == 2
