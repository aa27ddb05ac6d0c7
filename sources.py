#!/usr/bin/env python3
"""
Category and feed discovery.

Feeds are declared in a document, grouped by category. Two formats are understood:

Markdown (the project README by default). The feed list lives in a section that
starts with a ``### Feeds`` (or ``### Example Feeds``) heading; inside it every
``## Category`` heading opens a category and every line holding an http(s) URL
adds that URL to the current category::

    ### Feeds

    ## AI
    - https://example.com/ai.xml

    ## World News
    - https://example.com/world.rss

YAML (``*.yaml`` / ``*.yml``)::

    categories:
      AI:
        - https://example.com/ai.xml
      World News:
        feeds:
          - https://example.com/world.rss

Categories that end up without feeds are dropped.
"""

import re
from os import path
from typing import Dict, List

from config import config, get_logger, safe_read_yaml
from errors import ConfigurationError
from utils import validate_url

logger = get_logger("sources")

FEED_SECTION_RE = re.compile(
    r"###\s+(?:Example\s+)?Feeds[\s\S]*?(?=##\s+(?:Technology Stack|Local Development|How It Works|Troubleshooting|License)|\Z)",
    re.IGNORECASE,
)
CATEGORY_HEADER_RE = re.compile(r"^##\s+(.+)$")
URL_RE = re.compile(r"https?://[^\s)]+")
WHITESPACE_RE = re.compile(r"\s+")

MAX_CONFIG_SIZE = 5 * 1024 * 1024


def parse_markdown_feeds(content: str) -> Dict[str, List[str]]:
    """Extract ``category -> [feed urls]`` from the feeds section of a Markdown document."""
    category_feeds: Dict[str, List[str]] = {}

    match = FEED_SECTION_RE.search(content)
    if not match:
        logger.warning("No feed configuration section found in document")
        return category_feeds

    current_category = None
    for line in match.group(0).splitlines():
        header = CATEGORY_HEADER_RE.match(line)
        if header:
            current_category = header.group(1).strip()
            category_feeds[current_category] = []
            continue

        if current_category is None:
            continue
        url_match = URL_RE.search(line)
        if url_match:
            category_feeds[current_category].append(url_match.group(0).strip())

    return {name: urls for name, urls in category_feeds.items() if urls}


def parse_yaml_feeds(data) -> Dict[str, List[str]]:
    """Extract ``category -> [feed urls]`` from an already-parsed feeds.yaml mapping."""
    if not isinstance(data, dict) or not isinstance(data.get("categories"), dict):
        logger.warning("No 'categories' mapping found in feeds configuration")
        return {}

    category_feeds: Dict[str, List[str]] = {}
    for name, entry in data["categories"].items():
        if isinstance(entry, dict):
            entry = entry.get("feeds")
        if not isinstance(entry, list):
            logger.warning(f"Skipping invalid category configuration for '{name}'")
            continue
        urls = []
        for url in entry:
            if isinstance(url, str) and validate_url(url):
                urls.append(url.strip())
            else:
                logger.warning(f"Skipping invalid feed URL in category '{name}': {url!r}")
        if urls:
            category_feeds[str(name)] = urls
    return category_feeds


def load_category_feeds(config_path: str | None = None) -> Dict[str, List[str]]:
    """Read the feeds document and return its non-empty categories in declaration order.

    Raises:
        ConfigurationError: the document is missing or cannot be read/parsed.
    """
    config_path = config_path or config.FEEDS_CONFIG_PATH
    if not path.isfile(config_path):
        raise ConfigurationError(f"Feeds configuration not found at {config_path}")

    if config_path.lower().endswith((".yaml", ".yml")):
        data = safe_read_yaml(config_path, MAX_CONFIG_SIZE, "feeds")
        if data is None:
            raise ConfigurationError(f"Failed to read feeds configuration {config_path}")
        return parse_yaml_feeds(data)

    try:
        with open(config_path, "r", encoding="utf-8") as f:
            content = f.read()
    except (OSError, UnicodeDecodeError) as e:
        raise ConfigurationError(f"Failed to read feeds configuration {config_path}: {e}") from e
    return parse_markdown_feeds(content)


def category_to_webhook_name(category: str, prefix: str | None = None) -> str:
    """Environment variable holding a category's webhook.

    "AI" -> "DISCORD_WEBHOOK_AI", "World News" -> "DISCORD_WEBHOOK_WORLDNEWS"
    """
    prefix = config.WEBHOOK_ENV_PREFIX if prefix is None else prefix
    return f"{prefix}{WHITESPACE_RE.sub('', category.upper())}"
