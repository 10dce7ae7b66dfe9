"""Content-addressed response cache.

Maps a fingerprint of the trailing conversation window to a previously
generated assistant reply. Entries expire a fixed TTL after insertion and are
never returned afterwards.
"""

import asyncio
import hashlib
import logging
import time
from collections.abc import Sequence
from typing import Callable

from models import CacheEntry, Message

logger = logging.getLogger(__name__)

DEFAULT_TTL_SECONDS = 3600.0
DEFAULT_WINDOW = 3


def create_message_hash(messages: Sequence[Message], window: int = DEFAULT_WINDOW) -> str:
    """Fingerprint the last `window` messages by their role and content.

    Older history does not participate, so two conversations ending in the
    same turns share a fingerprint.
    """
    tail = messages[-window:] if window > 0 else []
    joined = "\n".join(f"{msg.role}:{msg.content}" for msg in tail)
    return hashlib.sha256(joined.encode("utf-8")).hexdigest()


class ResponseCache:
    """TTL-bounded reply cache shared by concurrent chat turns."""

    def __init__(
        self,
        ttl_seconds: float = DEFAULT_TTL_SECONDS,
        clock: Callable[[], float] | None = None,
    ):
        """Initialize the cache.

        Args:
            ttl_seconds: Lifetime of each entry from insertion.
            clock: Monotonic time source. Defaults to time.monotonic.

        """
        self.ttl_seconds = ttl_seconds
        self._clock = clock or time.monotonic
        self._entries: dict[str, CacheEntry] = {}
        self._lock = asyncio.Lock()
        self._sweeper: asyncio.Task | None = None

    async def get(self, fingerprint: str) -> str | None:
        """Return cached content, or None on a miss or an expired entry."""
        async with self._lock:
            entry = self._entries.get(fingerprint)
            if entry is None:
                return None
            if self._clock() >= entry.expires_at:
                del self._entries[fingerprint]
                return None
            return entry.content

    async def put(self, fingerprint: str, content: str) -> CacheEntry:
        """Store content under fingerprint, replacing any previous entry."""
        entry = CacheEntry(
            fingerprint=fingerprint,
            content=content,
            expires_at=self._clock() + self.ttl_seconds,
        )
        async with self._lock:
            self._entries[fingerprint] = entry
        return entry

    async def purge_expired(self) -> int:
        """Drop every expired entry and return how many were removed."""
        async with self._lock:
            now = self._clock()
            expired = [key for key, entry in self._entries.items() if now >= entry.expires_at]
            for key in expired:
                del self._entries[key]
        if expired:
            logger.debug(f"Purged {len(expired)} expired cache entries")
        return len(expired)

    def __len__(self) -> int:
        return len(self._entries)

    async def _sweep_forever(self, interval: float) -> None:
        while True:
            await asyncio.sleep(interval)
            try:
                await self.purge_expired()
            except Exception as e:
                logger.error(f"Cache sweep failed: {e}")

    def start_sweeper(self, interval: float) -> None:
        """Start a background task that purges expired entries periodically."""
        if self._sweeper is not None and not self._sweeper.done():
            return
        self._sweeper = asyncio.create_task(self._sweep_forever(interval))
        logger.debug(f"Started cache sweeper (interval={interval}s)")

    async def stop_sweeper(self) -> None:
        """Cancel the background sweeper if it is running."""
        if self._sweeper is None:
            return
        self._sweeper.cancel()
        try:
            await self._sweeper
        except asyncio.CancelledError:
            pass
        self._sweeper = None
