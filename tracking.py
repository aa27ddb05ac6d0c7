#!/usr/bin/env python3
"""
Tracking record for already-announced feed items.

The record maps an item guid to the Unix time (milliseconds) at which it was first
marked as posted. It is loaded once when a run starts, mutated in memory while
categories are processed, pruned by age, and written back once at the end.

A missing record is the normal first-run state. A corrupted record is treated as
empty: re-posting a few items is preferable to refusing to run.
"""

import json
import math
from time import time
from typing import Any, Callable, Dict, Optional, Tuple

from config import get_logger
from storage import BlobTransport
from errors import TrackingSaveError

logger = get_logger("tracking")

MS_PER_DAY = 24 * 60 * 60 * 1000


def now_ms() -> int:
    """Current wall-clock time in Unix milliseconds."""
    return int(time() * 1000)


def sanitize_entries(raw: Any) -> Tuple[Dict[str, int], int]:
    """Keep only ``str -> finite number`` entries from a parsed record.

    Returns:
        (entries, dropped) where dropped counts rejected entries. A top-level value
        that is not a mapping yields ({}, 0); callers log that case separately.
    """
    if not isinstance(raw, dict):
        return {}, 0

    entries: Dict[str, int] = {}
    dropped = 0
    for key, value in raw.items():
        # bool is an int subclass; JSON true/false is not a timestamp.
        # ints may exceed float range; only floats can be inf or nan
        if (
            isinstance(key, str)
            and not isinstance(value, bool)
            and (isinstance(value, int) or (isinstance(value, float) and math.isfinite(value)))
        ):
            entries[key] = int(value)
        else:
            dropped += 1
    return entries, dropped


class RecordStore:
    """In-memory guid -> first-posted timestamp map with explicit load/save.

    Args:
        transport: Storage backend used by load() and save(). May be None for
                   stores built in memory (tests, dry runs).
        clock: Callable returning the current time in Unix milliseconds.
    """

    def __init__(self, transport: Optional[BlobTransport] = None, clock: Callable[[], int] = now_ms,
                 entries: Optional[Dict[str, int]] = None) -> None:
        self.transport = transport
        self.clock = clock
        self._entries: Dict[str, int] = dict(entries or {})

    @classmethod
    def from_text(cls, text: Optional[str], transport: Optional[BlobTransport] = None,
                  clock: Callable[[], int] = now_ms) -> "RecordStore":
        """Build a store from serialized record text, sanitizing as load() does."""
        store = cls(transport=transport, clock=clock)
        store._replace_from_text(text)
        return store

    def _replace_from_text(self, text: Optional[str]) -> None:
        if text is None or not text.strip():
            logger.info("No tracking data found, starting fresh")
            self._entries = {}
            return

        try:
            parsed = json.loads(text)
        except (ValueError, RecursionError) as e:
            logger.error(f"Failed to parse tracking data (corrupted JSON): {e}")
            logger.warning("⚠️ Tracking data is corrupted! Starting fresh to recover; some items may be re-posted")
            self._entries = {}
            return

        if not isinstance(parsed, dict):
            logger.warning(f"Invalid tracking data format ({type(parsed).__name__}), starting fresh")
            self._entries = {}
            return

        entries, dropped = sanitize_entries(parsed)
        self._entries = entries
        logger.info(f"Loaded {len(entries)} tracked items")
        if dropped:
            logger.warning(f"Filtered out {dropped} invalid entries")

    async def load(self) -> "RecordStore":
        """Fetch the persisted record through the transport and replace the in-memory state.

        Raises:
            TrackingLoadError: the backend failed for a reason other than "not found".
        """
        if self.transport is None:
            raise RuntimeError("RecordStore.load() requires a transport")
        text = await self.transport.load_blob()
        self._replace_from_text(text)
        return self

    def is_posted(self, guid: str) -> bool:
        return guid in self._entries

    def mark(self, guid: str) -> None:
        """Record ``guid`` as posted now. Marking again refreshes the timestamp."""
        self._entries[guid] = self.clock()

    def expire(self, retention_days: int) -> int:
        """Drop entries older than ``retention_days``; returns how many were removed."""
        cutoff = self.clock() - retention_days * MS_PER_DAY
        stale = [guid for guid, ts in self._entries.items() if ts < cutoff]
        for guid in stale:
            del self._entries[guid]
        if stale:
            logger.info(f"Cleaned up {len(stale)} old tracking entries (older than {retention_days} days)")
        return len(stale)

    def dump(self) -> str:
        return json.dumps(self._entries, indent=2)

    async def save(self) -> None:
        """Overwrite the persisted record with the full in-memory state."""
        if self.transport is None:
            raise RuntimeError("RecordStore.save() requires a transport")
        logger.info(f"Saving tracking data ({len(self._entries)} items)")
        try:
            await self.transport.save_blob(self.dump())
        except TrackingSaveError:
            raise
        except Exception as e:
            raise TrackingSaveError(f"Unexpected error saving tracking data: {e}") from e
        logger.info("Tracking data saved successfully")

    @property
    def entries(self) -> Dict[str, int]:
        """A copy of the current mapping."""
        return dict(self._entries)

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, guid: object) -> bool:
        return guid in self._entries
