"""Retrieval adapter interface and an in-memory implementation.

The orchestrator consumes ``search(query, k)`` and ``embed(text)``; adapters
that serve cached evidence may also expose ``cache_signal(query)`` so the gate
can judge freshness.
"""

from __future__ import annotations

import asyncio
import time
from typing import Dict, List, Optional, Protocol, Sequence

import numpy as np
import structlog
from pydantic import BaseModel, Field

from agentcore.schemas.grounding import CacheSignals, GroundingSource
from agentcore.tools.embeddings import Embedder, HashingEmbedder

logger = structlog.get_logger(__name__)


class RetrievedChunk(BaseModel):
    """One search hit returned by a retrieval adapter."""

    content: str
    source_id: str
    source_type: str = "document"
    similarity: float = Field(ge=0.0, le=1.0)
    timestamp: Optional[float] = None

    def to_source(self) -> GroundingSource:
        return GroundingSource(
            source_type=self.source_type,
            source_id=self.source_id,
            similarity=self.similarity,
            timestamp=self.timestamp,
        )


class RetrievalAdapter(Protocol):
    async def search(self, query: str, k: int) -> List[RetrievedChunk]: ...

    async def embed(self, text: str) -> Sequence[float]: ...


def _normalize(query: str) -> str:
    return " ".join(query.lower().split())


class InMemoryRetrievalAdapter:
    """
    Cosine search over documents registered in process.

    Usage:
        adapter = InMemoryRetrievalAdapter()
        await adapter.add_document("doc-1", "Refunds are issued within 14 days.")
        hits = await adapter.search("how long do refunds take", k=5)
    """

    def __init__(self, embedder: Optional[Embedder] = None, min_similarity: float = 0.3):
        self.embedder = embedder or HashingEmbedder()
        self.min_similarity = min_similarity
        self._lock = asyncio.Lock()
        self._ids: List[str] = []
        self._contents: Dict[str, str] = {}
        self._types: Dict[str, str] = {}
        self._timestamps: Dict[str, Optional[float]] = {}
        self._vectors: Dict[str, np.ndarray] = {}
        self._cache_signals: Dict[str, CacheSignals] = {}

    async def add_document(
        self,
        source_id: str,
        content: str,
        source_type: str = "document",
        timestamp: Optional[float] = None,
    ) -> None:
        vector = np.asarray(await self.embedder.embed(content), dtype=np.float64)
        async with self._lock:
            if source_id not in self._contents:
                self._ids.append(source_id)
            self._contents[source_id] = content
            self._types[source_id] = source_type
            self._timestamps[source_id] = timestamp if timestamp is not None else time.time()
            self._vectors[source_id] = vector

    async def embed(self, text: str) -> Sequence[float]:
        return await self.embedder.embed(text)

    async def search(self, query: str, k: int = 8) -> List[RetrievedChunk]:
        async with self._lock:
            ids = list(self._ids)
            if not ids:
                return []
            matrix = np.vstack([self._vectors[i] for i in ids])

        query_vec = np.asarray(await self.embedder.embed(query), dtype=np.float64)
        query_norm = np.linalg.norm(query_vec)
        row_norms = np.linalg.norm(matrix, axis=1)
        if query_norm == 0:
            return []
        denom = np.where(row_norms == 0, 1.0, row_norms) * query_norm
        scores = np.clip(matrix @ query_vec / denom, 0.0, 1.0)

        order = np.argsort(-scores)[:k]
        hits = [
            RetrievedChunk(
                content=self._contents[ids[i]],
                source_id=ids[i],
                source_type=self._types[ids[i]],
                similarity=float(scores[i]),
                timestamp=self._timestamps[ids[i]],
            )
            for i in order
            if scores[i] >= self.min_similarity
        ]
        logger.debug("In-memory retrieval", query_preview=query[:80], hits=len(hits), k=k)
        return hits

    def mark_cached(self, query: str, signal: CacheSignals) -> None:
        """Record that evidence for ``query`` is being served from a cache."""
        self._cache_signals[_normalize(query)] = signal

    async def cache_signal(self, query: str) -> Optional[CacheSignals]:
        return self._cache_signals.get(_normalize(query))

    def __len__(self) -> int:
        return len(self._ids)
