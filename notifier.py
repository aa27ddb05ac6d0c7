#!/usr/bin/env python3
"""
Discord webhook delivery.

Each feed item becomes one webhook message: the title in bold and the link on the
next line, posted under a per-category username. Messages within one category are
sent strictly one after another, with a minimum gap between posts, because Discord
rate-limits a webhook as a whole.
"""

from asyncio import TimeoutError
from typing import List, Optional
from urllib.parse import urlparse

from aiohttp import ClientError, ClientSession, ClientTimeout

from config import config, get_logger
from telemetry import trace_span
from utils import RateLimiter, truncate_string

logger = get_logger("discord")

DISCORD_HOSTS = ("discord.com", "discordapp.com")
DISCORD_MESSAGE_LIMIT = 2000
HTTP_TOO_MANY_REQUESTS = 429


def is_valid_webhook_url(url: Optional[str]) -> bool:
    """True for http(s) URLs on a Discord host whose path contains /api/webhooks/."""
    if not url or not isinstance(url, str):
        return False
    try:
        parsed = urlparse(url.strip())
    except ValueError:
        return False
    return (
        parsed.scheme in ("http", "https")
        and parsed.hostname in DISCORD_HOSTS
        and "/api/webhooks/" in parsed.path
    )


def format_message(item: dict, category: str) -> dict:
    """Webhook payload for one item."""
    content = f"**{item.get('title') or 'No title'}**\n{item.get('link') or ''}"
    return {
        "content": truncate_string(content, DISCORD_MESSAGE_LIMIT),
        "username": f"{config.DISCORD_USERNAME_PREFIX} - {category}",
    }


class DiscordNotifier:
    """Posts items to Discord webhooks.

    Args:
        session: Shared aiohttp session. One is created (and owned) when omitted.
        delay: Minimum seconds between two posts in the same post_items() call.
    """

    def __init__(self, session: Optional[ClientSession] = None, delay: Optional[float] = None) -> None:
        self.delay = config.DELIVERY_DELAY_SECONDS if delay is None else delay
        self._session = session
        self._owns_session = session is None

    def _get_session(self) -> ClientSession:
        if self._session is None:
            self._session = ClientSession(timeout=ClientTimeout(total=config.HTTP_TIMEOUT))
        return self._session

    @trace_span(
        "discord.post_item",
        tracer_name="discord",
        attr_from_args=lambda self, webhook_url, item, category: {
            "category": category,
            "item.guid": item.get("guid") or "",
        },
    )
    async def post_item(self, webhook_url: str, item: dict, category: str) -> bool:
        """Post a single item. Returns True on a 2xx response, False otherwise (never raises)."""
        payload = format_message(item, category)
        try:
            async with self._get_session().post(webhook_url, json=payload) as resp:
                if 200 <= resp.status < 300:
                    logger.info(f"Posted to Discord [{category}]: {item.get('title')}")
                    return True
                logger.error(f"Error posting to Discord [{category}]: HTTP {resp.status} {resp.reason or ''}".rstrip())
                if resp.status == HTTP_TOO_MANY_REQUESTS:
                    logger.error(f"Rate limited. Retry after: {resp.headers.get('Retry-After', 'unknown')}s")
                return False
        except (ClientError, TimeoutError) as e:
            logger.error(f"Error posting to Discord [{category}]: {e}")
            return False

    async def post_items(self, webhook_url: str, items: List[dict], category: str) -> List[bool]:
        """Post items in order, one at a time, pacing consecutive posts.

        A failed post does not stop the remaining ones. Returns one flag per item.
        """
        limiter = RateLimiter(self.delay)
        results: List[bool] = []
        for item in items:
            await limiter.acquire()
            results.append(await self.post_item(webhook_url, item, category))
        return results

    async def close(self) -> None:
        if self._owns_session and self._session is not None:
            await self._session.close()
            self._session = None
