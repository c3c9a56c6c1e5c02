"""
Per-session cache of analysis results keyed by comparison.

Keys are (comparison name, analysis kind, database name or None). Entries are
write-once: a computed result is never silently replaced. The cache is cleared
wholesale when a new count matrix or metadata table is loaded.
"""

from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, List, NamedTuple, Optional
import logging

logger = logging.getLogger(__name__)

DE_KIND = "de"
GSEA_KIND = "gsea"
INTERPRETATION_KIND = "interpretation"


class CacheKey(NamedTuple):
    comparison: str
    kind: str
    database: Optional[str] = None

    def __str__(self) -> str:
        parts = [self.comparison, self.kind]
        if self.database:
            parts.append(self.database)
        return "/".join(parts)


@dataclass
class CacheStats:
    hits: int = 0
    misses: int = 0


class ComparisonCache:
    """Write-once mapping from CacheKey to a computed result."""

    def __init__(self):
        self._entries: Dict[CacheKey, Any] = {}
        self.stats = CacheStats()

    def __contains__(self, key) -> bool:
        return CacheKey(*key) in self._entries

    def __len__(self) -> int:
        return len(self._entries)

    def keys(self) -> List[CacheKey]:
        return list(self._entries)

    def get(self, comparison: str, kind: str, database: Optional[str] = None, default=None):
        key = CacheKey(comparison, kind, database)
        if key in self._entries:
            self.stats.hits += 1
            logger.debug(f"Cache hit {key} (hits={self.stats.hits}, misses={self.stats.misses})")
            return self._entries[key]
        self.stats.misses += 1
        logger.debug(f"Cache miss {key} (hits={self.stats.hits}, misses={self.stats.misses})")
        return default

    def put(self, comparison: str, kind: str, value: Any, database: Optional[str] = None) -> None:
        """
        Store a result.

        Raises:
            ValueError: if the key already holds a result
        """
        key = CacheKey(comparison, kind, database)
        if key in self._entries:
            raise ValueError(f"Cache entry {key} already exists; clear it before recomputing")
        self._entries[key] = value

    def get_or_compute(
        self,
        comparison: str,
        kind: str,
        factory: Callable[[], Any],
        database: Optional[str] = None,
    ) -> Any:
        """Return the cached result, computing and storing it on a miss."""
        key = CacheKey(comparison, kind, database)
        if key in self._entries:
            self.stats.hits += 1
            logger.debug(f"Cache hit {key}")
            return self._entries[key]
        self.stats.misses += 1
        logger.debug(f"Cache miss {key}, computing")
        value = factory()
        self._entries[key] = value
        return value

    async def get_or_compute_async(
        self,
        comparison: str,
        kind: str,
        factory: Callable[[], Awaitable[Any]],
        database: Optional[str] = None,
    ) -> Any:
        """Async variant of get_or_compute; a failed factory leaves no entry."""
        key = CacheKey(comparison, kind, database)
        if key in self._entries:
            self.stats.hits += 1
            logger.debug(f"Cache hit {key}")
            return self._entries[key]
        self.stats.misses += 1
        logger.debug(f"Cache miss {key}, computing")
        value = await factory()
        # Another task may have filled the slot while we were suspended
        if key in self._entries:
            return self._entries[key]
        self._entries[key] = value
        return value

    def invalidate_comparison(self, comparison: str) -> int:
        """Drop every entry of one comparison. Returns the number removed."""
        doomed = [k for k in self._entries if k.comparison == comparison]
        for key in doomed:
            del self._entries[key]
        if doomed:
            logger.info(f"Invalidated {len(doomed)} cache entries for {comparison}")
        return len(doomed)

    def clear(self) -> None:
        if self._entries:
            logger.info(f"Clearing {len(self._entries)} cached results")
        self._entries.clear()
        self.stats = CacheStats()
