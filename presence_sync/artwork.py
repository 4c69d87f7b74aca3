# presence_sync/artwork.py
import asyncio
import logging
import time
from pathlib import Path
from typing import Callable, Dict, Optional

from .art_cache import CACHE_TTL_SECONDS, MAX_MEMORY_ENTRIES, DiskCache, MemoryCache, cache_key
from .errors import ArtworkLookupError, ArtworkRateLimited
from .models import DEFAULT_ARTWORK

logger = logging.getLogger(__name__)

MIN_REQUEST_INTERVAL = 1.0
MAX_BACKOFF_MULTIPLIER = 64


class RateBudget:
    """
    Token bucket for outbound lookups.

    One token is refilled every `interval` seconds, up to `capacity`. Each
    rate-limit strike doubles the refill interval (up to 64x) until a lookup
    succeeds again. Waiters are served in arrival order.
    """

    def __init__(
        self,
        interval: float = MIN_REQUEST_INTERVAL,
        capacity: int = 1,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.interval = interval
        self.capacity = capacity
        self._clock = clock
        self._tokens = float(capacity)
        self._updated = clock()
        self._strikes = 0
        self._lock = asyncio.Lock()

    @property
    def strikes(self) -> int:
        return self._strikes

    @property
    def refill_interval(self) -> float:
        return self.interval * min(MAX_BACKOFF_MULTIPLIER, 2 ** self._strikes)

    @property
    def tokens(self) -> float:
        self._refill()
        return self._tokens

    def _refill(self) -> None:
        now = self._clock()
        elapsed = now - self._updated
        self._updated = now
        if elapsed > 0:
            self._tokens = min(self.capacity, self._tokens + elapsed / self.refill_interval)

    def try_take(self) -> bool:
        self._refill()
        if self._tokens >= 1:
            self._tokens -= 1
            return True
        return False

    async def acquire(self, timeout: Optional[float] = None) -> bool:
        """Wait for a token; False if none became available within `timeout`."""
        deadline = None if timeout is None else self._clock() + timeout
        try:
            await asyncio.wait_for(self._lock.acquire(), timeout)
        except asyncio.TimeoutError:
            return False
        try:
            while not self.try_take():
                wait = (1 - self._tokens) * self.refill_interval
                if deadline is not None:
                    remaining = deadline - self._clock()
                    if remaining <= 0:
                        return False
                    wait = min(wait, remaining)
                await asyncio.sleep(max(wait, 0.001))
            return True
        finally:
            self._lock.release()

    def penalize(self) -> None:
        self._refill()
        self._strikes += 1
        self._tokens = 0.0
        logger.info("Artwork lookups rate limited; refill interval now %.0fs", self.refill_interval)

    def recover(self) -> None:
        if self._strikes:
            self._refill()
            self._strikes = 0
            logger.debug("Artwork lookup rate back to normal")


class ArtworkResolver:
    """
    resolve(artist, album) -> artwork URL or DEFAULT_ARTWORK; never raises.

    Memory tier, then disk tier, then the rate-limited search. Only positive
    results are cached. Concurrent calls for one key share a single lookup.
    """

    def __init__(
        self,
        search: Callable[[str, str], Optional[str]],
        cache_path: Path,
        capacity: int = MAX_MEMORY_ENTRIES,
        ttl: float = CACHE_TTL_SECONDS,
        budget: Optional[RateBudget] = None,
        token_timeout: float = 5.0,
        lookup_timeout: float = 10.0,
        clock: Callable[[], float] = time.time,
    ):
        self._search = search
        self.memory = MemoryCache(capacity, ttl, clock)
        self.disk = DiskCache(cache_path, ttl, clock)
        self.budget = budget or RateBudget()
        self.token_timeout = token_timeout
        self.lookup_timeout = lookup_timeout
        self.lookups = 0
        self._inflight: Dict[str, asyncio.Task] = {}
        self._writer: Optional[asyncio.Task] = None

    def cached(self, artist: str, album: str) -> Optional[str]:
        key = cache_key(artist, album)
        entry = self.memory.get(key)
        if entry is not None:
            logger.debug("Art cache hit (memory): %s", key)
            return entry.url
        entry = self.disk.get(key)
        if entry is not None:
            logger.debug("Art cache hit (disk): %s", key)
            self.memory.put(key, entry.url, entry.resolved_at)
            return entry.url
        return None

    async def resolve(self, artist: str, album: str) -> str:
        key = cache_key(artist, album)
        if not key:
            return DEFAULT_ARTWORK

        url = self.cached(artist, album)
        if url:
            return url

        task = self._inflight.get(key)
        if task is None:
            task = asyncio.ensure_future(self._lookup(key, artist, album))
            self._inflight[key] = task
            task.add_done_callback(lambda t, k=key: self._forget(k, t))
        else:
            logger.debug("Joining in-flight art lookup: %s", key)

        # Shielded: a superseded caller must not cancel the shared lookup.
        try:
            return await asyncio.shield(task)
        except asyncio.CancelledError:
            # The shared lookup was cancelled under a caller that still wants an answer.
            if task.cancelled() and not asyncio.current_task().cancelling():
                return DEFAULT_ARTWORK
            raise

    def _forget(self, key: str, task: asyncio.Task) -> None:
        if self._inflight.get(key) is task:
            del self._inflight[key]

    async def _lookup(self, key: str, artist: str, album: str) -> str:
        if not await self.budget.acquire(self.token_timeout):
            logger.debug("No lookup budget for %s; using default artwork", key)
            return DEFAULT_ARTWORK

        self.lookups += 1
        logger.info("Fetching album art: %s", key)
        try:
            url = await asyncio.wait_for(
                asyncio.to_thread(self._search, artist, album), self.lookup_timeout
            )
        except ArtworkRateLimited as e:
            logger.warning("%s", e)
            self.budget.penalize()
            return DEFAULT_ARTWORK
        except asyncio.TimeoutError:
            logger.warning("Album art lookup timed out: %s", key)
            return DEFAULT_ARTWORK
        except ArtworkLookupError as e:
            logger.warning("Album art lookup failed for %s: %s", key, e)
            return DEFAULT_ARTWORK
        except Exception:
            logger.warning("Album art lookup crashed for %s", key, exc_info=True)
            return DEFAULT_ARTWORK

        self.budget.recover()
        if not url:
            logger.debug("No album art found: %s", key)
            return DEFAULT_ARTWORK

        self.memory.put(key, url)
        self.disk.put(key, url)
        self._schedule_save()
        return url

    def _schedule_save(self) -> None:
        # Single writer: later snapshots always land after earlier ones.
        if self._writer is None or self._writer.done():
            self._writer = asyncio.ensure_future(self._write_dirty())

    async def _write_dirty(self) -> None:
        while True:
            data = self.disk.take_snapshot()
            if data is None:
                return
            if not await asyncio.to_thread(self.disk.write, data):
                return

    def pending(self) -> int:
        return len(self._inflight)

    def cancel_pending(self) -> None:
        for task in list(self._inflight.values()):
            task.cancel()
        self._inflight.clear()

    async def flush(self) -> None:
        if self._writer is not None:
            await asyncio.gather(self._writer, return_exceptions=True)

    async def close(self) -> None:
        self.cancel_pending()
        await self.flush()
        close = getattr(self._search, "close", None)
        if callable(close):
            close()
