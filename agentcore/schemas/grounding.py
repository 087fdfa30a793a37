"""Grounding value objects exchanged between the orchestrator and the gate.

``GroundingContext`` is built fresh for every evaluation; ``GroundingDecision``
is immutable once created and may be cached for the stickiness window.
"""

from __future__ import annotations

import time
from enum import Enum
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field, model_validator


class QueryType(str, Enum):
    FACTUAL = "FACTUAL"
    ACTION = "ACTION"
    OPINION = "OPINION"
    MIXED = "MIXED"


class DecisionType(str, Enum):
    GENERATE = "GENERATE"
    ASK_CLARIFY = "ASK_CLARIFY"
    SEARCH_MORE = "SEARCH_MORE"
    REFUSE = "REFUSE"


class DomainRisk(str, Enum):
    FINANCE = "FINANCE"
    SECURITY = "SECURITY"
    LEGAL = "LEGAL"
    HEALTHCARE = "HEALTHCARE"
    GENERAL = "GENERAL"


class AgentType(str, Enum):
    MASTER = "MASTER"
    OPTIMIZER = "OPTIMIZER"


class GroundingSource(BaseModel):
    """One retrieved source as seen by the gate."""

    source_type: str = Field(description="Kind of source (document, web, memory, ...)")
    source_id: str = Field(description="Stable source identifier")
    similarity: float = Field(ge=0.0, le=1.0)
    timestamp: Optional[float] = Field(default=None, description="Epoch seconds the content was produced")


class RetrievalSignals(BaseModel):
    """Aggregate retrieval evidence for one query."""

    hit_count: int = Field(default=0, ge=0)
    max_similarity: float = Field(default=0.0, ge=0.0, le=1.0)
    mean_similarity: float = Field(default=0.0, ge=0.0, le=1.0)
    sources: List[GroundingSource] = Field(default_factory=list)

    @classmethod
    def from_sources(cls, sources: List[GroundingSource]) -> "RetrievalSignals":
        if not sources:
            return cls()
        similarities = [s.similarity for s in sources]
        return cls(
            hit_count=len(sources),
            max_similarity=max(similarities),
            mean_similarity=sum(similarities) / len(similarities),
            sources=list(sources),
        )


class IntentSignals(BaseModel):
    confidence: float = Field(ge=0.0, le=1.0)
    ambiguous: bool = False


class CacheSignals(BaseModel):
    """Freshness signal for evidence served from a cache."""

    used: bool = False
    freshness_score: Optional[float] = Field(default=None, ge=0.0, le=1.0)
    valid_until: Optional[float] = Field(default=None, description="Epoch seconds")


class GroundingContext(BaseModel):
    """Everything the gate needs to score one query."""

    query: str
    query_type: QueryType = QueryType.FACTUAL
    retrieval: RetrievalSignals = Field(default_factory=RetrievalSignals)
    intent: IntentSignals
    cache: Optional[CacheSignals] = None
    time_sensitive: bool = False
    context_drift_high: bool = False
    document_ids: Optional[List[str]] = None
    agent_type: AgentType = AgentType.MASTER

    # Loop protection carriers copied from the conversation state
    clarification_attempts: int = 0
    search_attempts: int = 0
    # Set when the gate already ran earlier in the same request
    reevaluation: bool = False

    user_id: Optional[str] = None
    conversation_id: Optional[str] = None

    def document_hits(self) -> List[GroundingSource]:
        """Sources whose id matches a user-supplied document id."""
        if not self.document_ids:
            return []
        wanted = set(self.document_ids)
        return [s for s in self.retrieval.sources if s.source_id in wanted]


class GroundingMetrics(BaseModel):
    model_config = ConfigDict(frozen=True)

    retrieval_score: float = 0.0
    intent_score: float = 0.0
    freshness_score: float = 0.0
    source_diversity_score: float = 0.0
    final_score: float = 0.0


class GroundingDecision(BaseModel):
    """Outcome of one gate evaluation."""

    model_config = ConfigDict(frozen=True)

    grounding_score: float = Field(ge=0.0, le=1.0)
    decision: DecisionType
    reasons: List[str] = Field(min_length=1)
    metrics: GroundingMetrics
    timestamp: float = Field(default_factory=time.time)
    prohibit_memory_write: bool = True

    @model_validator(mode="after")
    def _derive_memory_prohibition(self) -> "GroundingDecision":
        # Anything but GENERATE must never reach long-term memory.
        if self.decision != DecisionType.GENERATE and not self.prohibit_memory_write:
            object.__setattr__(self, "prohibit_memory_write", True)
        return self

    @property
    def allows_generation(self) -> bool:
        return self.decision == DecisionType.GENERATE
