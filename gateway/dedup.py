"""
Time-bounded in-memory duplicate suppression.

Delivery is at-least-once; this cache only suppresses identical events
re-observed within the window (e.g. a source re-polled after a crash
before its checkpoint was written).
"""

import hashlib
import json
import logging
import time
from collections import OrderedDict
from typing import Any, Callable, Optional

from core.config import settings

logger = logging.getLogger(__name__)


def event_key(event_type: str, org_id: Any, payload: Any) -> str:
    """SHA-256 over event type, org and canonical JSON of the payload."""
    canonical = json.dumps(payload, sort_keys=True, separators=(",", ":"), default=str)
    raw = f"{event_type}|{org_id}|{canonical}"
    return hashlib.sha256(raw.encode("utf-8")).hexdigest()


class DedupCache:

    def __init__(
        self,
        window_seconds: Optional[int] = None,
        max_entries: Optional[int] = None,
        clock: Callable[[], float] = time.monotonic
    ):
        self.window_seconds = window_seconds if window_seconds is not None else settings.DEDUP_WINDOW_SECONDS
        self.max_entries = max_entries or settings.DEDUP_MAX_ENTRIES
        self._clock = clock
        self._entries: "OrderedDict[str, float]" = OrderedDict()

    def seen(self, key: str) -> bool:
        """True when ``key`` was marked within the window."""
        seen_at = self._entries.get(key)
        if seen_at is None:
            return False
        if self._clock() - seen_at > self.window_seconds:
            del self._entries[key]
            return False
        return True

    def mark(self, key: str) -> None:
        self._entries[key] = self._clock()
        self._entries.move_to_end(key)
        while len(self._entries) > self.max_entries:
            self._entries.popitem(last=False)

    def forget(self, key: str) -> None:
        """Unmark ``key`` so a re-polled copy of the event is processed again."""
        self._entries.pop(key, None)

    def check_and_mark(self, key: str) -> bool:
        """Mark ``key``; returns True when it was already seen (a duplicate)."""
        if self.seen(key):
            return True
        self.mark(key)
        return False

    def sweep(self) -> int:
        """Drop expired entries; returns how many were removed."""
        cutoff = self._clock() - self.window_seconds
        expired = [key for key, seen_at in self._entries.items() if seen_at < cutoff]
        for key in expired:
            del self._entries[key]
        if expired:
            logger.debug(f"Dedup sweep removed {len(expired)} expired entries")
        return len(expired)

    def __len__(self) -> int:
        return len(self._entries)
