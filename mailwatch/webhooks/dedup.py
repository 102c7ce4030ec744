"""Dedup Cache - suppresses re-delivered notifications.

Keys are mailbox + message id. A key is claimed before a forward starts and
completed once it succeeds, so a re-delivery arriving while the first
forward is still in flight is also treated as a duplicate. Entries expire
after the TTL and are discarded by a periodic sweep.

The cache is in-memory and per process; it is lost on restart.
"""

import asyncio
import logging
from datetime import datetime, timedelta
from typing import Optional

from ..clock import SystemClock
from ..observability.metrics import dedup_cache_entries

logger = logging.getLogger(__name__)


def dedup_key(mailbox: str, message_id: str) -> str:
    return f"{(mailbox or '').strip().lower()}:{message_id}"


class DedupCache:

    def __init__(self, ttl: timedelta = timedelta(minutes=10), clock=None):
        self.ttl = ttl
        self.clock = clock or SystemClock()
        self._entries: dict[str, datetime] = {}
        self._pending: set[str] = set()

    def __len__(self) -> int:
        return len(self._entries)

    def contains(self, key: str) -> bool:
        inserted_at = self._entries.get(key)
        if inserted_at is None:
            return False
        if self.clock.now() - inserted_at >= self.ttl:
            del self._entries[key]
            return False
        return True

    def is_duplicate(self, key: str) -> bool:
        return key in self._pending or self.contains(key)

    def claim(self, key: str) -> bool:
        """Reserve key for a forward. False if it is already handled or in flight."""
        if self.is_duplicate(key):
            return False
        self._pending.add(key)
        return True

    def complete(self, key: str) -> None:
        """Record a successful forward."""
        self._pending.discard(key)
        self._entries[key] = self.clock.now()
        dedup_cache_entries.set(len(self._entries))

    def release(self, key: str) -> None:
        """Give up a claim after a failed forward so a retry is not suppressed."""
        self._pending.discard(key)

    def sweep(self) -> int:
        """Discard expired entries. Returns how many were removed."""
        cutoff = self.clock.now() - self.ttl
        expired = [key for key, inserted_at in self._entries.items() if inserted_at <= cutoff]
        for key in expired:
            del self._entries[key]
        dedup_cache_entries.set(len(self._entries))
        if expired:
            logger.debug(f"Dedup sweep removed {len(expired)} entries")
        return len(expired)


class DedupSweeper:
    """Runs DedupCache.sweep() on a fixed interval."""

    def __init__(self, cache: DedupCache, interval: timedelta = timedelta(minutes=10)):
        self.cache = cache
        self.interval = interval
        self._task: Optional[asyncio.Task] = None

    def start(self) -> None:
        if self._task is None or self._task.done():
            self._task = asyncio.create_task(self._run(), name="dedup-sweeper")

    async def stop(self) -> None:
        if self._task is None:
            return
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None

    async def _run(self) -> None:
        while True:
            await asyncio.sleep(self.interval.total_seconds())
            try:
                self.cache.sweep()
            except Exception:
                logger.exception("Dedup sweep failed")
