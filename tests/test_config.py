from config import Config, config


def test_positive_int_falls_back_on_invalid_values(monkeypatch):
    monkeypatch.setenv("RETENTION_DAYS", "zero")
    assert config._validate_positive_int("RETENTION_DAYS", 30) == 30

    monkeypatch.setenv("RETENTION_DAYS", "0")
    assert config._validate_positive_int("RETENTION_DAYS", 30) == 30

    monkeypatch.setenv("RETENTION_DAYS", "7")
    assert config._validate_positive_int("RETENTION_DAYS", 30) == 7


def test_positive_float_respects_minimum(monkeypatch):
    monkeypatch.setenv("DELIVERY_DELAY_SECONDS", "0")
    assert config._validate_positive_float("DELIVERY_DELAY_SECONDS", 2.0, 0.0) == 0.0

    monkeypatch.setenv("DELIVERY_DELAY_SECONDS", "-1")
    assert config._validate_positive_float("DELIVERY_DELAY_SECONDS", 2.0, 0.0) == 2.0


def test_webhook_for_strips_and_ignores_blank(monkeypatch):
    monkeypatch.setenv("DISCORD_WEBHOOK_AI", "  https://discord.com/api/webhooks/1/x  ")
    monkeypatch.setenv("DISCORD_WEBHOOK_BLANK", "   ")
    monkeypatch.delenv("DISCORD_WEBHOOK_MISSING", raising=False)

    assert config.webhook_for("DISCORD_WEBHOOK_AI") == "https://discord.com/api/webhooks/1/x"
    assert config.webhook_for("DISCORD_WEBHOOK_BLANK") is None
    assert config.webhook_for("DISCORD_WEBHOOK_MISSING") is None


def test_secrets_file_populates_environment(tmp_path, monkeypatch):
    secrets = tmp_path / "secrets.yaml"
    secrets.write_text(
        "environment:\n  GIST_ID: from-secrets\n  RETENTION_DAYS: 14\n",
        encoding="utf-8",
    )
    monkeypatch.setenv("SECRETS_FILE", str(secrets))
    # setenv/delenv registers the keys so monkeypatch restores them afterwards
    monkeypatch.setenv("GIST_ID", "from-env")
    monkeypatch.setenv("RETENTION_DAYS", "30")

    fresh = Config()

    assert fresh.GIST_ID == "from-secrets"
    assert fresh.RETENTION_DAYS == 14


def test_defaults(monkeypatch):
    for name in ("TRACKING_BACKEND", "TRACKING_FILENAME", "WEBHOOK_ENV_PREFIX", "SECRETS_FILE"):
        monkeypatch.delenv(name, raising=False)

    fresh = Config()

    assert fresh.TRACKING_BACKEND == "gist"
    assert fresh.TRACKING_FILENAME == "rss-drainer-tracking.json"
    assert fresh.WEBHOOK_ENV_PREFIX == "DISCORD_WEBHOOK_"
    assert fresh.get_config_summary()["tracking_backend"] == "gist"
