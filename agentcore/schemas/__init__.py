"""Pydantic models shared across the orchestration core."""

from agentcore.schemas.agent_state import ConversationState, FinalResult, ProcessOptions, create_initial_state
from agentcore.schemas.grounding import (
    DecisionType,
    GroundingContext,
    GroundingDecision,
    GroundingMetrics,
    QueryType,
)

__all__ = [
    "ConversationState",
    "DecisionType",
    "FinalResult",
    "GroundingContext",
    "GroundingDecision",
    "GroundingMetrics",
    "ProcessOptions",
    "QueryType",
    "create_initial_state",
]
