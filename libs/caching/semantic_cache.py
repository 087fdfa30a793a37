"""
In-memory semantic response cache.

Short-circuits generation for near-duplicate queries:
- Cosine similarity between query embeddings (hit when above threshold)
- LRU capacity bound and TTL expiry, enforced independently
- Hits refresh recency and renew the entry's TTL

The embedding function is injected, so the cache is model-agnostic.
"""

import asyncio
import hashlib
import time
from collections import OrderedDict
from dataclasses import dataclass
from typing import Awaitable, Callable, List, Optional, Sequence, Tuple

import numpy as np
import structlog

logger = structlog.get_logger(__name__)

EmbedFn = Callable[[str], Awaitable[Sequence[float]]]


@dataclass
class CacheStats:
    """Cache statistics for monitoring."""

    total_requests: int = 0
    hits: int = 0
    misses: int = 0
    evictions: int = 0
    expirations: int = 0

    @property
    def hit_rate(self) -> float:
        """Calculate overall cache hit rate."""
        if self.total_requests == 0:
            return 0.0
        return self.hits / self.total_requests


@dataclass
class CacheEntry:
    query: str
    embedding_vector: np.ndarray
    response_text: str
    created_at: float
    refreshed_at: float
    hit_count: int = 0


@dataclass(frozen=True)
class CacheMatch:
    response_text: str
    similarity: float
    hit_count: int
    original_query: str


def cosine_similarity(vec1: np.ndarray, vec2: np.ndarray) -> float:
    """Cosine similarity, 0.0 for mismatched or zero vectors."""
    if vec1.shape != vec2.shape:
        return 0.0
    norm_product = np.linalg.norm(vec1) * np.linalg.norm(vec2)
    if norm_product == 0:
        return 0.0
    return float(np.dot(vec1, vec2) / norm_product)


class SemanticCache:
    """
    Capacity-bounded semantic cache keyed by normalised query.

    Usage:
        cache = SemanticCache(embed=embedder.embed)
        response, hit = await cache.lookup(query)
        if not hit:
            response = await generate(query)
            await cache.store(query, response)
    """

    def __init__(
        self,
        embed: EmbedFn,
        capacity: int = 1000,
        ttl_seconds: float = 3600,
        similarity_threshold: float = 0.85,
        clock: Callable[[], float] = time.monotonic,
    ):
        if capacity <= 0:
            raise ValueError("capacity must be positive")
        self._embed = embed
        self.capacity = capacity
        self.ttl_seconds = ttl_seconds
        self.similarity_threshold = similarity_threshold
        self._clock = clock
        self._entries: "OrderedDict[str, CacheEntry]" = OrderedDict()
        self._lock = asyncio.Lock()
        self._stats = CacheStats()

    @staticmethod
    def _key(query: str) -> str:
        normalized = " ".join(query.lower().strip().split())
        return hashlib.sha256(normalized.encode("utf-8")).hexdigest()[:32]

    def _expired(self, entry: CacheEntry, now: float) -> bool:
        return now - entry.refreshed_at > self.ttl_seconds

    def _purge_expired(self, now: float) -> None:
        expired = [k for k, e in self._entries.items() if self._expired(e, now)]
        for key in expired:
            del self._entries[key]
        self._stats.expirations += len(expired)

    async def lookup(self, query: str) -> Tuple[Optional[str], bool]:
        """Return ``(response, True)`` for a near-duplicate, else ``(None, False)``."""
        match = await self.match(query)
        if match is None:
            return None, False
        return match.response_text, True

    async def match(self, query: str) -> Optional[CacheMatch]:
        """Find the most similar live entry above the threshold."""
        vector = np.asarray(await self._embed(query), dtype=float)

        async with self._lock:
            self._stats.total_requests += 1
            now = self._clock()
            self._purge_expired(now)

            best_key: Optional[str] = None
            best_similarity = self.similarity_threshold
            for key, entry in self._entries.items():
                similarity = cosine_similarity(vector, entry.embedding_vector)
                if similarity > best_similarity:
                    best_key, best_similarity = key, similarity

            if best_key is None:
                self._stats.misses += 1
                logger.debug("Semantic cache miss", query_preview=query[:50])
                return None

            entry = self._entries[best_key]
            entry.hit_count += 1
            entry.refreshed_at = now
            self._entries.move_to_end(best_key)
            self._stats.hits += 1
            match = CacheMatch(
                response_text=entry.response_text,
                similarity=best_similarity,
                hit_count=entry.hit_count,
                original_query=entry.query,
            )

        logger.info(
            "Semantic cache hit",
            similarity=round(match.similarity, 3),
            hit_count=match.hit_count,
            query_preview=query[:50],
            original_query=match.original_query[:50],
        )
        return match

    async def store(self, query: str, response: str) -> None:
        """Cache ``response`` for ``query``, evicting LRU entries past capacity."""
        if not response:
            return
        vector = np.asarray(await self._embed(query), dtype=float)
        key = self._key(query)

        async with self._lock:
            now = self._clock()
            self._purge_expired(now)
            self._entries[key] = CacheEntry(
                query=query,
                embedding_vector=vector,
                response_text=response,
                created_at=now,
                refreshed_at=now,
            )
            self._entries.move_to_end(key)
            while len(self._entries) > self.capacity:
                evicted_key, _ = self._entries.popitem(last=False)
                self._stats.evictions += 1
                logger.debug("Semantic cache eviction", cache_key=evicted_key)
            size = len(self._entries)

        logger.info("Response cached", cache_size=size, query_preview=query[:50])

    async def clear(self) -> int:
        async with self._lock:
            count = len(self._entries)
            self._entries.clear()
        logger.info("Semantic cache cleared", deleted=count)
        return count

    def entries(self) -> List[CacheEntry]:
        """Snapshot of live entries, least recently used first."""
        return list(self._entries.values())

    def get_stats(self) -> CacheStats:
        """Get cache statistics."""
        return self._stats

    def __len__(self) -> int:
        return len(self._entries)
