"""Conversation state schema for the orchestration state machine.

This module defines the state object that flows through every node of the
orchestrator. One instance belongs to exactly one in-flight request; nodes
never mutate it directly but return partial updates that the runner merges.
"""

from __future__ import annotations

import asyncio
import time
import uuid
from datetime import datetime
from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field

from agentcore.schemas.grounding import GroundingDecision
from libs.memory.coordinator import MemoryContext

ChatMode = Literal["fastest", "cheapest", "balanced"]
Role = Literal["system", "user", "assistant"]

# Fields the runner concatenates instead of overwriting.
APPEND_ONLY_FIELDS = ("messages", "agent_path", "optimizations_applied")
# Counters that may only grow within a request.
MONOTONIC_FIELDS = ("clarification_attempts", "search_attempts", "failure_count")


class Message(BaseModel):
    """One conversation turn."""

    model_config = ConfigDict(frozen=True)

    role: Role
    content: str


class TrendingAnalysis(BaseModel):
    """Result of the live-data classification for a query."""

    needs_real_time_data: bool = False
    confidence: float = 0.0
    category: str = "general"
    suggested_sources: List[str] = Field(default_factory=list)
    cache_ttl_seconds: int = 3600


class ScrapedPage(BaseModel):
    url: str
    title: str = ""
    text: str = ""
    fetched_at: float = Field(default_factory=time.time)


class ContentSummary(BaseModel):
    text: str
    pages: List[ScrapedPage] = Field(default_factory=list)
    extractive: bool = False


class StateMetadata(BaseModel):
    """Typed cross-node signals.

    Each known producer/consumer pair has a named field; ``extras`` is the
    side channel for diagnostics only.
    """

    model_config = ConfigDict(validate_assignment=True)

    memory: Optional[MemoryContext] = None
    prompt_complexity: Optional[str] = None
    trending: Optional[TrendingAnalysis] = None
    trending_skipped_reason: Optional[str] = None
    scraping_failed: bool = False
    scraping_stats: Optional[Dict[str, int]] = None
    content_summary: Optional[ContentSummary] = None
    cache_hit_similarity: Optional[float] = None
    strategy: Optional[str] = None
    generation_model: Optional[str] = None
    generation_halted: bool = False
    quality_score: Optional[float] = None
    quality_recommendations: List[str] = Field(default_factory=list)
    recovery_method: Optional[str] = None
    recovery_delay_ms: Optional[int] = None
    subject_confidence: Optional[float] = None
    memory_written: bool = False
    extras: Dict[str, Any] = Field(default_factory=dict)

    def merged(self, update: "StateMetadata | Dict[str, Any]") -> "StateMetadata":
        """Return a copy with the update's explicitly-set keys merged in."""
        if isinstance(update, StateMetadata):
            changes = {k: getattr(update, k) for k in update.model_fields_set}
        else:
            changes = dict(update)
        extras = changes.pop("extras", None)
        merged = self.model_copy(update=changes)
        if extras:
            merged.extras = {**self.extras, **extras}
        return merged


class ConversationState(BaseModel):
    """State threaded through every node of the orchestrator."""

    model_config = ConfigDict(validate_assignment=True, extra="forbid", arbitrary_types_allowed=True)

    trace_id: str = Field(default_factory=lambda: uuid.uuid4().hex)
    created_at: datetime = Field(default_factory=datetime.utcnow)

    # Identity (immutable for the request lifetime)
    user_id: str = Field(frozen=True)
    conversation_id: str = Field(frozen=True)

    # Append-only logs
    messages: List[Message] = Field(default_factory=list)
    agent_path: List[str] = Field(default_factory=list)
    optimizations_applied: List[str] = Field(default_factory=list)

    # Request options
    chat_mode: ChatMode = "balanced"
    cost_budget: float = 0.10
    document_ids: List[str] = Field(default_factory=list)

    # Processing scalars
    refined_prompt: Optional[str] = None
    prompt_cost: float = 0.0
    needs_web_data: bool = False
    web_sources: List[str] = Field(default_factory=list)
    scraped_pages: List[ScrapedPage] = Field(default_factory=list)
    cache_hit: bool = False
    response: Optional[str] = None
    risk_level: str = "low"

    # Grounding
    grounding_decision: Optional[GroundingDecision] = None
    prohibit_memory_write: bool = False

    # Loop protection and failure carriers
    clarification_attempts: int = Field(default=0, ge=0)
    search_attempts: int = Field(default=0, ge=0)
    failure_count: int = Field(default=0, ge=0)

    metadata: StateMetadata = Field(default_factory=StateMetadata)

    @property
    def query(self) -> str:
        """Original text of the latest user turn."""
        for message in reversed(self.messages):
            if message.role == "user":
                return message.content
        return ""

    @property
    def effective_query(self) -> str:
        """Query text the pipeline works with (refined when available)."""
        return self.refined_prompt or self.query

    @property
    def prior_user_turns(self) -> List[str]:
        users = [m.content for m in self.messages if m.role == "user"]
        return users[:-1]

    def apply_update(self, update: Dict[str, Any]) -> None:
        """Merge a node's partial update into this state."""
        for key, value in update.items():
            if key in APPEND_ONLY_FIELDS:
                setattr(self, key, [*getattr(self, key), *value])
            elif key in MONOTONIC_FIELDS:
                setattr(self, key, max(getattr(self, key), int(value)))
            elif key == "metadata":
                self.metadata = self.metadata.merged(value)
            elif key in ("user_id", "conversation_id"):
                raise ValueError(f"{key} is immutable for the lifetime of a request")
            else:
                setattr(self, key, value)


class ProcessOptions(BaseModel):
    """Per-request options accepted by ``QueryOrchestrator.process``."""

    model_config = ConfigDict(arbitrary_types_allowed=True)

    chat_mode: ChatMode = "balanced"
    cost_budget: Optional[float] = None
    previous_messages: List[Message] = Field(default_factory=list)
    document_ids: List[str] = Field(default_factory=list)

    # Loop counters carried over from earlier requests of this conversation
    clarification_attempts: int = Field(default=0, ge=0)
    search_attempts: int = Field(default=0, ge=0)

    cancel_event: Optional[asyncio.Event] = None
    deadline_seconds: Optional[float] = Field(default=None, gt=0)


class FinalResult(BaseModel):
    """What the caller gets back from one orchestrated request."""

    response: str
    terminal_node: str
    decision: Optional[GroundingDecision] = None
    agent_path: List[str] = Field(default_factory=list)
    messages: List[Message] = Field(default_factory=list)
    cache_hit: bool = False
    risk_level: str = "low"
    cost: float = 0.0
    optimizations_applied: List[str] = Field(default_factory=list)
    clarification_attempts: int = 0
    search_attempts: int = 0
    failure_count: int = 0
    prohibit_memory_write: bool = False
    memory_written: bool = False
    cancelled: bool = False
    metadata: Dict[str, Any] = Field(default_factory=dict)


def create_initial_state(
    user_id: str,
    conversation_id: str,
    query: str,
    options: Optional[ProcessOptions] = None,
    default_cost_budget: float = 0.10,
) -> ConversationState:
    """Create the state for a new request."""
    options = options or ProcessOptions()
    return ConversationState(
        user_id=user_id,
        conversation_id=conversation_id,
        messages=[*options.previous_messages, Message(role="user", content=query)],
        chat_mode=options.chat_mode,
        cost_budget=options.cost_budget if options.cost_budget is not None else default_cost_budget,
        document_ids=list(options.document_ids),
        clarification_attempts=options.clarification_attempts,
        search_attempts=options.search_attempts,
        metadata=StateMetadata(strategy=options.chat_mode),
    )
