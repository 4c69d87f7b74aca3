# presence_sync/art_cache.py
import json
import logging
import os
import threading
import time
from collections import OrderedDict
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Dict, Optional

logger = logging.getLogger(__name__)

MAX_MEMORY_ENTRIES = 500
CACHE_TTL_SECONDS = 30 * 24 * 60 * 60  # 30 days


def cache_key(artist: str, album: str) -> str:
    artist = (artist or "").strip().casefold()
    album = (album or "").strip().casefold()
    if not album:
        return artist
    return f"{artist}::{album}"


@dataclass(frozen=True)
class ArtCacheEntry:
    key: str
    url: str
    resolved_at: float

    def expired(self, now: float, ttl: float = CACHE_TTL_SECONDS) -> bool:
        return now - self.resolved_at >= ttl


class MemoryCache:
    """
    Bounded in-memory tier.

    The OrderedDict is the LRU index: the first key is the least recently
    used one. Reads and writes move a key to the end; inserts evict from the
    front until the size is back under capacity.
    """

    def __init__(
        self,
        capacity: int = MAX_MEMORY_ENTRIES,
        ttl: float = CACHE_TTL_SECONDS,
        clock: Callable[[], float] = time.time,
    ):
        if capacity < 1:
            raise ValueError("capacity must be at least 1")
        self.capacity = capacity
        self.ttl = ttl
        self._clock = clock
        self._entries: "OrderedDict[str, ArtCacheEntry]" = OrderedDict()

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, key: str) -> bool:
        return key in self._entries

    def get(self, key: str) -> Optional[ArtCacheEntry]:
        entry = self._entries.get(key)
        if entry is None:
            return None
        if entry.expired(self._clock(), self.ttl):
            del self._entries[key]
            return None
        self._entries.move_to_end(key)
        return entry

    def put(self, key: str, url: str, resolved_at: Optional[float] = None) -> ArtCacheEntry:
        entry = ArtCacheEntry(key, url, self._clock() if resolved_at is None else resolved_at)
        self._entries[key] = entry
        self._entries.move_to_end(key)
        while len(self._entries) > self.capacity:
            evicted, _ = self._entries.popitem(last=False)
            logger.debug("Evicted %s from memory art cache", evicted)
        return entry

    def keys(self):
        return list(self._entries)


class DiskCache:
    """
    Persistent tier: a JSON mapping of key -> {url, resolved_at}.

    Expired entries are dropped on load and treated as misses on lookup.
    Saves go through a temp file and os.replace so a reader never sees a
    half-written file.
    """

    def __init__(
        self,
        path: Path,
        ttl: float = CACHE_TTL_SECONDS,
        clock: Callable[[], float] = time.time,
    ):
        self.path = Path(path)
        self.ttl = ttl
        self._clock = clock
        self._entries: Dict[str, ArtCacheEntry] = {}
        self._dirty = False
        self._write_lock = threading.Lock()
        self.load()

    def __len__(self) -> int:
        return len(self._entries)

    @property
    def dirty(self) -> bool:
        return self._dirty

    def load(self) -> None:
        self._entries = {}
        try:
            data = json.loads(self.path.read_text(encoding="utf-8"))
        except FileNotFoundError:
            return
        except (OSError, ValueError) as e:
            logger.warning("Failed to parse art cache %s: %s", self.path, e)
            return

        now = self._clock()
        raw = data.get("entries", {}) if isinstance(data, dict) else {}
        for key, value in raw.items():
            try:
                entry = ArtCacheEntry(key, str(value["url"]), float(value["resolved_at"]))
            except (KeyError, TypeError, ValueError):
                continue
            if not entry.expired(now, self.ttl):
                self._entries[key] = entry
        logger.debug("Loaded %d art cache entries from %s", len(self._entries), self.path)

    def get(self, key: str) -> Optional[ArtCacheEntry]:
        entry = self._entries.get(key)
        if entry is None:
            return None
        if entry.expired(self._clock(), self.ttl):
            del self._entries[key]
            self._dirty = True
            return None
        return entry

    def put(self, key: str, url: str, resolved_at: Optional[float] = None) -> ArtCacheEntry:
        entry = ArtCacheEntry(key, url, self._clock() if resolved_at is None else resolved_at)
        self._entries[key] = entry
        self._dirty = True
        return entry

    def snapshot(self) -> dict:
        return {
            "entries": {
                key: {"url": e.url, "resolved_at": int(e.resolved_at)}
                for key, e in self._entries.items()
            }
        }

    def take_snapshot(self) -> Optional[dict]:
        """Return the data to persist and mark it as handed off, or None if clean."""
        if not self._dirty:
            return None
        self._dirty = False
        return self.snapshot()

    def save(self) -> bool:
        data = self.take_snapshot()
        if data is None:
            return True
        return self.write(data)

    def write(self, data: dict) -> bool:
        with self._write_lock:
            try:
                self.path.parent.mkdir(parents=True, exist_ok=True)
                tmp = self.path.with_name(self.path.name + ".tmp")
                tmp.write_text(json.dumps(data, indent=2), encoding="utf-8")
                os.replace(tmp, self.path)
            except OSError as e:
                self._dirty = True
                logger.warning("Failed to write art cache %s: %s", self.path, e)
                return False
        logger.debug("Art cache saved to %s", self.path)
        return True
