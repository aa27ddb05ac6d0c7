#!/usr/bin/env python3
"""
Configuration for RSS Drainer.

Everything is read from the environment once, at import time, into the global
``config`` object. A ``.env`` file next to this module and a YAML file named by
SECRETS_FILE are merged into the environment first, so CI secrets, local
development and container jobs all configure the drainer the same way.

Logging is configured here as well, since every module imports this one first.
"""

from os import environ, path, access, R_OK
from typing import Dict, Any
from logging import getLogger, basicConfig, StreamHandler, getLevelName, INFO, WARNING
import sys
import yaml
from dotenv import load_dotenv


def _level_from_env(env_var: str, default: int) -> int:
    level = getLevelName(environ.get(env_var, "").strip().upper())
    return level if isinstance(level, int) else default


def _setup_global_logger():
    """Configure root logging once for the whole process.

    LOG_LEVEL (default INFO) and LOG_TIMESTAMPS (default true) control the output,
    AZURE_LOG_LEVEL (default WARNING) the Azure SDK loggers. Output goes to a
    line-buffered stdout so scheduled jobs show progress live.
    """
    environ.setdefault("PYTHONUNBUFFERED", "1")

    fields = ['%(name)s', '%(levelname)s', '%(message)s']
    if environ.get("LOG_TIMESTAMPS", "true").lower() != "false":
        fields.insert(0, '%(asctime)s')

    basicConfig(
        level=_level_from_env("LOG_LEVEL", INFO),
        format=' - '.join(fields),
        handlers=[StreamHandler(sys.stdout)],
        force=True,
    )

    # pytest and some runners swap stdout for objects without reconfigure()
    for stream in (sys.stdout, sys.stderr):
        reconfigure = getattr(stream, "reconfigure", None)
        if callable(reconfigure):
            reconfigure(line_buffering=True)

    azure_level = _level_from_env("AZURE_LOG_LEVEL", WARNING)
    for name in ("azure", "azure.core", "azure.monitor"):
        getLogger(name).setLevel(azure_level)

    return getLogger("RSSDrainer")


def get_logger(name: str):
    """Logger for one module, named ``RSSDrainer.<name>`` so it inherits the setup above."""
    return getLogger(f"RSSDrainer.{name}")


logger = _setup_global_logger()


def safe_read_yaml(file_path: str, max_size: int, kind: str) -> Any | None:
    """Safely read a YAML file with consistent validation.

    Args:
        file_path: Path to the YAML file
        max_size: Maximum allowed file size in bytes
        kind: Short label for logging context (e.g. 'secrets', 'feeds')

    Returns:
        Parsed YAML (mapping/list/primitive) or None on failure.
    """
    try:
        if not path.isfile(file_path):
            logger.warning(f"{kind.capitalize()} file not found at {file_path}")
            return None
        if not access(file_path, R_OK):
            logger.error(f"No read permission for {kind} file at {file_path}")
            return None
        size = path.getsize(file_path)
        if size > max_size:
            logger.error(f"{kind.capitalize()} file too large: {size} bytes (limit: {max_size} bytes)")
            return None
        with open(file_path, 'r', encoding='utf-8') as f:
            data = yaml.safe_load(f)
        if not data:
            logger.warning(f"Empty or invalid YAML in {kind} file {file_path}")
            return None
        return data
    except yaml.YAMLError as e:
        logger.error(f"Error parsing YAML in {kind} file {file_path}: {e}")
    except OSError as e:
        logger.error(f"Error loading {kind} file {file_path}: {e}")
    return None


class Config:
    """Typed view of the drainer's environment.

    Sources, later ones winning: process environment, ``.env``, SECRETS_FILE.
    Numeric settings fall back to their default (with a warning) when unparseable or
    below their minimum. Credentials (GIST_TOKEN, AZURE_STORAGE_KEY, webhooks) are not
    checked here, only when a run needs them, so importing this module never fails.

    Example secrets.yaml::

        GIST_ID: "0123456789abcdef"
        GIST_TOKEN: "ghp_..."
        DISCORD_WEBHOOK_AI: "https://discord.com/api/webhooks/..."
    """

    def __init__(self):
        self._load_environment()
        self._validate_and_set_config()

    def _load_environment(self):
        dotenv_path = path.join(path.dirname(path.abspath(__file__)), '.env')
        if path.exists(dotenv_path):
            load_dotenv(dotenv_path, override=True)
            logger.info(f"Loaded environment variables from {dotenv_path}")

        self._load_secrets_file()

    def _env_number(self, env_var: str, default, min_val, cast):
        raw = environ.get(env_var)
        if raw is None or not raw.strip():
            return default
        try:
            value = cast(raw.strip())
        except ValueError:
            logger.warning(f"Invalid {env_var} value {raw!r}, using default {default}")
            return default
        if value < min_val:
            logger.warning(f"{env_var} must be at least {min_val}, using default {default}")
            return default
        return value

    def _validate_positive_int(self, env_var: str, default: int, min_val: int = 1) -> int:
        return self._env_number(env_var, default, min_val, int)

    def _validate_positive_float(self, env_var: str, default: float, min_val: float = 0.1) -> float:
        return self._env_number(env_var, default, min_val, float)

    def _validate_and_set_config(self):
        """Validate and set all configuration values."""
        # Feed sources document (Markdown README section or feeds.yaml)
        self.FEEDS_CONFIG_PATH = environ.get("FEEDS_CONFIG_PATH", "README.md")
        self.USER_AGENT = environ.get("USER_AGENT", "Mozilla/5.0 (compatible; RSSDrainer/1.0)")

        # HTTP request configuration
        self.HTTP_TIMEOUT = self._validate_positive_int("HTTP_TIMEOUT", 10, 1)
        self.MAX_RETRIES = self._validate_positive_int("MAX_RETRIES", 2, 0)
        self.RETRY_DELAY_BASE = self._validate_positive_float("RETRY_DELAY_BASE", 1.0, 0.0)
        self.FETCH_CONCURRENCY = self._validate_positive_int("FETCH_CONCURRENCY", 5, 1)

        # Delivery pacing: minimum gap between two webhook posts in one category
        self.DELIVERY_DELAY_SECONDS = self._validate_positive_float("DELIVERY_DELAY_SECONDS", 2.0, 0.0)
        self.WEBHOOK_ENV_PREFIX = environ.get("WEBHOOK_ENV_PREFIX", "DISCORD_WEBHOOK_")
        self.DISCORD_USERNAME_PREFIX = environ.get("DISCORD_USERNAME_PREFIX", "RSS Drainer")

        # Tracking record retention
        self.RETENTION_DAYS = self._validate_positive_int("RETENTION_DAYS", 30, 1)

        # Tracking storage backend
        self.TRACKING_BACKEND = environ.get("TRACKING_BACKEND", "gist").strip().lower()
        self.GIST_ID = environ.get("GIST_ID")
        self.GIST_TOKEN = environ.get("GIST_TOKEN")
        self.GITHUB_API_URL = environ.get("GITHUB_API_URL", "https://api.github.com").rstrip("/")
        self.TRACKING_FILENAME = environ.get("TRACKING_FILENAME", "rss-drainer-tracking.json")

        self.AZURE_STORAGE_ACCOUNT = environ.get("AZURE_STORAGE_ACCOUNT")
        self.AZURE_STORAGE_KEY = environ.get("AZURE_STORAGE_KEY")
        self.AZURE_STORAGE_CONTAINER = environ.get("AZURE_STORAGE_CONTAINER", "rss-drainer")
        self.TRACKING_BLOB_PATH = environ.get("TRACKING_BLOB_PATH", "rss-drainer-tracking.json")


    def _load_secrets_file(self):
        """Load environment variable overrides from a YAML secrets file.

        If SECRETS_FILE environment variable is set, loads the specified YAML file
        and sets environment variables from it.

        Expected YAML formats (both supported):
        ```yaml
        # Preferred: top-level mapping
        GIST_ID: "..."
        GIST_TOKEN: "..."

        # Backward-compatible: nested under `environment`
        # environment:
        #   GIST_ID: "..."
        ```
        """
        secrets_file_path = environ.get("SECRETS_FILE")
        if not secrets_file_path:
            logger.debug("SECRETS_FILE not set; relying on environment/.env for secrets")
            return

        secrets_config = safe_read_yaml(secrets_file_path, 2 * 1024 * 1024, 'secrets')
        if not secrets_config:
            return

        if not isinstance(secrets_config, dict):
            logger.warning(f"Secrets file {secrets_file_path} must be a YAML mapping at the top level")
            return

        if isinstance(secrets_config.get('environment'), dict):
            env_vars = secrets_config['environment']
            logger.debug(f"Using 'environment' section from secrets file {secrets_file_path}")
        else:
            env_vars = secrets_config

        secrets_loaded = 0
        for key, value in env_vars.items():
            if isinstance(key, str) and value is not None:
                environ[key] = str(value)
                secrets_loaded += 1
                logger.debug(f"Set environment variable {key} from secrets file")
            else:
                logger.warning(f"Skipping invalid environment variable in secrets file: {key}")

        logger.info(f"Successfully loaded {secrets_loaded} environment variables from secrets file {secrets_file_path}")

    def webhook_for(self, env_name: str) -> str | None:
        """Look up a destination webhook by its environment variable name."""
        value = environ.get(env_name)
        if value is None:
            return None
        value = value.strip()
        return value or None

    def get_config_summary(self) -> Dict[str, Any]:
        """Get a summary of current configuration for logging/debugging."""
        return {
            "feeds_config_path": self.FEEDS_CONFIG_PATH,
            "tracking_backend": self.TRACKING_BACKEND,
            "retention_days": self.RETENTION_DAYS,
            "delivery_delay_seconds": self.DELIVERY_DELAY_SECONDS,
            "http_timeout": self.HTTP_TIMEOUT,
            "max_retries": self.MAX_RETRIES,
            "fetch_concurrency": self.FETCH_CONCURRENCY,
            "secrets_file_configured": bool(environ.get("SECRETS_FILE")),
            "has_gist_credentials": bool(self.GIST_ID and self.GIST_TOKEN),
            "has_azure_storage": bool(self.AZURE_STORAGE_ACCOUNT and self.AZURE_STORAGE_KEY),
        }

# Global configuration instance
config = Config()
