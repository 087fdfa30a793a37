"""Builds the ``GroundingContext`` for one gate evaluation.

Combines the conversation state with retrieval output: query-type
classification, a heuristic intent estimate, time sensitivity, topic drift
and the agent class derived from the chat mode.
"""

import re
from typing import List, Optional, Sequence

from agentcore.context.topic_tracker import TopicTracker
from agentcore.schemas.agent_state import ConversationState
from agentcore.schemas.grounding import (
    AgentType,
    CacheSignals,
    GroundingContext,
    GroundingSource,
    IntentSignals,
    QueryType,
    RetrievalSignals,
)
from agentcore.tools.retrieval import RetrievedChunk
from agentcore.tools.trending_detector import TrendingDetector

OPINION_PATTERN = re.compile(
    r"\b(what\s+do\s+you\s+think|your\s+(opinion|view|take)|should\s+i|would\s+you|do\s+you\s+(prefer|like)|"
    r"which\s+is\s+better|is\s+it\s+worth|recommend|in\s+your\s+view|pros\s+and\s+cons)\b",
    re.I,
)
ACTION_PATTERN = re.compile(
    r"^\s*(please\s+)?(write|create|generate|draft|summari[sz]e|translate|convert|fix|refactor|build|calculate|"
    r"list|compose|rewrite|send|schedule|plan|design|implement)\b",
    re.I,
)
# A factual question joined to an opinion request ("... and what does it cost?")
FACTUAL_CLAUSE_PATTERN = re.compile(r"\b(and|also)\s+(what|who|when|where|how\s+(much|many|long))\b", re.I)
VAGUE_TERMS = re.compile(r"\b(something|stuff|things|whatever|anything|etc)\b", re.I)
DANGLING_REFERENCE = re.compile(r"^\s*(this|that|it|they|those|these)\b", re.I)

BASE_INTENT_CONFIDENCE = 0.9
AMBIGUITY_CUTOFF = 0.6


def classify_query_type(query: str) -> QueryType:
    opinion = bool(OPINION_PATTERN.search(query))
    action = bool(ACTION_PATTERN.search(query))
    factual_clause = bool(FACTUAL_CLAUSE_PATTERN.search(query))

    if opinion and (action or factual_clause):
        return QueryType.MIXED
    if opinion:
        return QueryType.OPINION
    if action:
        return QueryType.ACTION
    # Questions and statements alike need grounding
    return QueryType.FACTUAL


def estimate_intent(query: str, prior_turns: Sequence[str] = ()) -> IntentSignals:
    """Heuristic intent confidence; shorter and vaguer queries score lower."""
    words = query.split()
    confidence = BASE_INTENT_CONFIDENCE
    ambiguous = False

    if len(words) <= 2:
        confidence -= 0.3
    elif len(words) == 3:
        confidence -= 0.1

    if VAGUE_TERMS.search(query):
        confidence -= 0.15
        ambiguous = True

    if DANGLING_REFERENCE.search(query) and not prior_turns:
        confidence -= 0.2
        ambiguous = True

    if query.count("?") > 2:
        confidence -= 0.1

    confidence = max(0.0, min(1.0, confidence))
    return IntentSignals(confidence=round(confidence, 4), ambiguous=ambiguous or confidence < AMBIGUITY_CUTOFF)


class GroundingContextBuilder:
    """Assembles ``GroundingContext`` objects from state and retrieval output."""

    def __init__(self, trending: Optional[TrendingDetector] = None, topic_tracker: Optional[TopicTracker] = None):
        self.trending = trending or TrendingDetector()
        self.topic_tracker = topic_tracker or TopicTracker()

    def build(
        self,
        state: ConversationState,
        hits: Sequence[RetrievedChunk],
        web_sources: Sequence[GroundingSource] = (),
        cache: Optional[CacheSignals] = None,
        reevaluation: bool = False,
    ) -> GroundingContext:
        query = state.effective_query
        prior_turns = state.prior_user_turns
        topic = self.topic_tracker.assess(state.query, prior_turns)

        sources: List[GroundingSource] = [hit.to_source() for hit in hits]
        sources.extend(web_sources)

        return GroundingContext(
            query=query,
            query_type=classify_query_type(query),
            retrieval=RetrievalSignals.from_sources(sources),
            intent=estimate_intent(query, prior_turns),
            cache=cache,
            time_sensitive=self.trending.is_time_sensitive(query),
            context_drift_high=topic.drift_high,
            document_ids=list(state.document_ids) or None,
            agent_type=AgentType.OPTIMIZER if state.chat_mode == "cheapest" else AgentType.MASTER,
            clarification_attempts=state.clarification_attempts,
            search_attempts=state.search_attempts,
            reevaluation=reevaluation,
            user_id=state.user_id,
            conversation_id=state.conversation_id,
        )
