"""
Bounded LRU + TTL cache for generated replies.

Entries expire `ttl` seconds after insertion and are dropped lazily on
access or during an `evict()` sweep. When the cache grows past `capacity`,
the least recently accessed entries go first. All access happens on the
event loop thread, so no locking is needed.
"""

import re
import time
from collections import OrderedDict
from dataclasses import dataclass
from typing import Any, Callable, Dict, Optional

# Redundant phrasing removed before a reply is cached
REDUNDANT_PHRASES = (
    "you know",
    "i mean",
    "like i said",
    "as i mentioned",
    "to be honest",
)

_PHRASES = "|".join(re.escape(p) for p in REDUNDANT_PHRASES)
# "You know, ..." at the start of a sentence
_LEADING_RE = re.compile(r"(^|(?<=[.!?])\s+)(?:" + _PHRASES + r")\s*,\s*", re.IGNORECASE)
# "..., I mean, ..." set off by commas
_INNER_RE = re.compile(r",\s*(?:" + _PHRASES + r")\s*,", re.IGNORECASE)
# "..., to be honest." closing a sentence
_TRAILING_RE = re.compile(r",\s*(?:" + _PHRASES + r")\s*(?=[.!?]|$)", re.IGNORECASE)
_SENTENCE_START_RE = re.compile(r"(^|[.!?]\s+)([a-z])")


def compress_reply(text: str) -> str:
    """Strip filler phrases that are set off from the sentence around them."""
    compressed = _LEADING_RE.sub(r"\1", text.strip())
    compressed = _INNER_RE.sub(",", compressed)
    compressed = _TRAILING_RE.sub("", compressed)
    compressed = re.sub(r"\s{2,}", " ", compressed)
    compressed = re.sub(r"\s+([,.!?])", r"\1", compressed)
    compressed = _SENTENCE_START_RE.sub(lambda m: m.group(1) + m.group(2).upper(), compressed)
    return compressed.strip()


def make_cache_key(message: str, persona_id: str, emotional_context: str) -> str:
    """Key from normalized message, persona and emotional context."""
    normalized = " ".join(message.lower().split()).strip(" .!?,")
    return f"{normalized}|{persona_id}|{emotional_context}".lower()


@dataclass
class CachedResponse:
    key: str
    payload: Any
    created_at: float
    access_count: int = 0


@dataclass
class CacheStats:
    hits: int = 0
    misses: int = 0
    evictions: int = 0


class ResponseCache:
    """LRU cache with per-entry time-to-live."""

    def __init__(
        self,
        ttl: float = 300.0,
        capacity: int = 100,
        clock: Callable[[], float] = time.monotonic,
    ):
        if capacity < 1:
            raise ValueError("capacity must be at least 1")
        self.ttl = ttl
        self.capacity = capacity
        self._clock = clock
        self._entries: "OrderedDict[str, CachedResponse]" = OrderedDict()
        self._stats = CacheStats()

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, key: str) -> bool:
        entry = self._entries.get(key)
        return entry is not None and not self._expired(entry, self._clock())

    def _expired(self, entry: CachedResponse, now: float) -> bool:
        return now - entry.created_at > self.ttl

    def get(self, key: str) -> Optional[Any]:
        """Return the cached payload, or None on miss or expiry."""
        entry = self._entries.get(key)
        if entry is None:
            self._stats.misses += 1
            return None

        if self._expired(entry, self._clock()):
            del self._entries[key]
            self._stats.evictions += 1
            self._stats.misses += 1
            return None

        entry.access_count += 1
        self._entries.move_to_end(key)
        self._stats.hits += 1
        return entry.payload

    def put(self, key: str, payload: Any) -> None:
        """Insert or replace an entry, then enforce capacity."""
        if key in self._entries:
            del self._entries[key]
        self._entries[key] = CachedResponse(key=key, payload=payload, created_at=self._clock())
        self._trim()

    def evict(self) -> int:
        """Sweep expired entries and enforce capacity. Returns the number removed."""
        now = self._clock()
        expired = [key for key, entry in self._entries.items() if self._expired(entry, now)]
        for key in expired:
            del self._entries[key]
        self._stats.evictions += len(expired)
        return len(expired) + self._trim()

    def _trim(self) -> int:
        removed = 0
        while len(self._entries) > self.capacity:
            self._entries.popitem(last=False)
            removed += 1
        self._stats.evictions += removed
        return removed

    def clear(self) -> None:
        self._entries.clear()

    def stats(self) -> Dict[str, Any]:
        lookups = self._stats.hits + self._stats.misses
        return {
            "size": len(self._entries),
            "capacity": self.capacity,
            "ttl": self.ttl,
            "hits": self._stats.hits,
            "misses": self._stats.misses,
            "evictions": self._stats.evictions,
            "hit_rate": self._stats.hits / lookups if lookups else 0.0,
        }
