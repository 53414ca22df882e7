"""
Process-wide response cache (FIFO eviction + TTL).

Shared by every call's orchestrator for two kinds of entries:
- "completion": rendered conversation so far -> assistant reply text
- "synthesis": phrase text + voice options -> mu-law audio

All operations are synchronous, so concurrent asyncio tasks can never
interleave inside them.
"""

import re
import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, Hashable, Mapping, Optional, Tuple

import structlog

logger = structlog.get_logger(__name__)

DEFAULT_TTL_SECONDS = 300.0
DEFAULT_MAX_ENTRIES = 100

_WHITESPACE_RE = re.compile(r"\s+")

CacheKey = Tuple[str, str, Tuple[Tuple[str, Hashable], ...]]


@dataclass(frozen=True)
class CacheEntry:
    """A cached value and the moment it was inserted."""
    key: CacheKey
    value: Any
    inserted_at: float
    sequence: int


def normalize_text(text: str) -> str:
    """Strip, collapse whitespace and casefold."""
    return _WHITESPACE_RE.sub(" ", (text or "").strip()).casefold()


def _freeze(value: Any) -> Hashable:
    if isinstance(value, Mapping):
        return tuple(sorted((str(k), _freeze(v)) for k, v in value.items()))
    if isinstance(value, (list, tuple)):
        return tuple(_freeze(v) for v in value)
    if isinstance(value, set):
        return tuple(sorted(_freeze(v) for v in value))
    return value


def make_key(kind: str, text: str, options: Optional[Mapping[str, Any]] = None) -> CacheKey:
    """
    Build a cache key.

    Args:
        kind: Entry kind ("completion" or "synthesis")
        text: Input text; normalized so trivial spacing/case differences share a key
        options: Parameters that change the output (voice options, model settings)

    Returns:
        Hashable key
    """
    frozen = tuple(sorted((str(k), _freeze(v)) for k, v in (options or {}).items()))
    return (kind, normalize_text(text), frozen)


class ResponseCache:
    """
    Bounded cache with insertion-order eviction and per-entry TTL.

    Expired entries are never returned but stay resident until capacity
    pressure evicts them. Reads never refresh an entry's age.
    """

    def __init__(
        self,
        ttl_seconds: float = DEFAULT_TTL_SECONDS,
        max_entries: int = DEFAULT_MAX_ENTRIES,
        clock: Callable[[], float] = time.monotonic,
    ):
        if max_entries <= 0:
            raise ValueError("max_entries must be positive")
        self.ttl_seconds = ttl_seconds
        self.max_entries = max_entries
        self._clock = clock
        self._entries: Dict[CacheKey, CacheEntry] = {}
        self._sequence = 0
        self.hits = 0
        self.misses = 0
        self.evictions = 0

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, key: CacheKey) -> bool:
        return self.get(key) is not None

    def get(self, key: CacheKey) -> Optional[Any]:
        """Return the cached value, or None when absent or expired."""
        entry = self._entries.get(key)
        if entry is None or self._is_expired(entry):
            self.misses += 1
            return None
        self.hits += 1
        return entry.value

    def put(self, key: CacheKey, value: Any) -> None:
        """Insert or replace a value; replacing counts as a fresh insertion."""
        self._entries.pop(key, None)
        while len(self._entries) >= self.max_entries:
            oldest = next(iter(self._entries))
            del self._entries[oldest]
            self.evictions += 1
            logger.debug("Cache entry evicted", kind=oldest[0])

        self._sequence += 1
        self._entries[key] = CacheEntry(
            key=key,
            value=value,
            inserted_at=self._clock(),
            sequence=self._sequence,
        )

    def entries(self) -> list[CacheEntry]:
        """Resident entries (expired included) in insertion order."""
        return list(self._entries.values())

    def clear(self) -> None:
        self._entries.clear()

    @property
    def stats(self) -> dict:
        return {
            "entries": len(self._entries),
            "hits": self.hits,
            "misses": self.misses,
            "evictions": self.evictions,
        }

    def _is_expired(self, entry: CacheEntry) -> bool:
        return self._clock() - entry.inserted_at > self.ttl_seconds


_cache: Optional[ResponseCache] = None


def get_response_cache() -> ResponseCache:
    """Get the process-wide response cache."""
    global _cache
    if _cache is None:
        from src.dialer.config import get_config

        config = get_config()
        _cache = ResponseCache(
            ttl_seconds=config.cache_ttl_seconds,
            max_entries=config.cache_max_entries,
        )
    return _cache


def reset_response_cache() -> None:
    global _cache
    _cache = None
