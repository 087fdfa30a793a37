"""Routing functions for the orchestration state machine.

Every router is deterministic and reads only the current state (plus the
operator control snapshot for the post-gate edge).
"""

from typing import Dict

import structlog

from agentcore.grounding.controls import GroundingControls
from agentcore.orchestrators.graph import NodeName, Route, fixed
from agentcore.schemas.agent_state import ConversationState
from agentcore.schemas.grounding import DecisionType
from agentcore.tools.trending_detector import TrendingDetector

logger = structlog.get_logger(__name__)


class Router:
    """Routing table bound to the controls and detectors it consults."""

    def __init__(self, controls: GroundingControls, trending: TrendingDetector, max_failures: int = 3):
        self.controls = controls
        self.trending = trending
        self.max_failures = max_failures

    def after_prompt_analyzer(self, state: ConversationState) -> NodeName:
        if self.trending.quick_check(state.effective_query):
            return NodeName.TRENDING_DETECTOR
        return NodeName.SEMANTIC_CACHE

    def after_trending_detector(self, state: ConversationState) -> NodeName:
        if state.needs_web_data and state.web_sources:
            return NodeName.WEB_SCRAPER
        return NodeName.SEMANTIC_CACHE

    def after_web_scraper(self, state: ConversationState) -> NodeName:
        if state.scraped_pages:
            return NodeName.CONTENT_SUMMARIZER
        return NodeName.GROUNDING_GATE

    def after_semantic_cache(self, state: ConversationState) -> NodeName:
        return NodeName.END if state.cache_hit else NodeName.GROUNDING_GATE

    def after_grounding_gate(self, state: ConversationState) -> NodeName:
        decision = state.grounding_decision
        if decision is None:
            logger.error("Grounding gate produced no decision, asking for clarification",
                         conversation_id=state.conversation_id)
            return NodeName.CLARIFICATION_NEEDED

        snapshot = self.controls.snapshot()
        if not snapshot.enforcing:
            logger.info(
                "Grounding decision not enforced",
                decision=getattr(decision.decision, "value", str(decision.decision)),
                shadow_mode=snapshot.flags.shadow_mode,
                blocking_enabled=snapshot.flags.blocking_enabled,
                emergency_bypass=snapshot.flags.emergency_bypass,
                conversation_id=state.conversation_id,
            )
            return NodeName.MASTER_AGENT

        if decision.decision == DecisionType.GENERATE:
            return NodeName.MASTER_AGENT
        if decision.decision == DecisionType.ASK_CLARIFY:
            return NodeName.CLARIFICATION_NEEDED
        if decision.decision == DecisionType.SEARCH_MORE:
            return NodeName.WEB_SCRAPER
        if decision.decision == DecisionType.REFUSE:
            if snapshot.flags.strict_refusal:
                return NodeName.REFUSE_SAFELY
            logger.warning(
                "Refusal not enforced without strict refusal mode, continuing to generation",
                reasons=decision.reasons,
                conversation_id=state.conversation_id,
            )
            return NodeName.MASTER_AGENT

        logger.error(
            "Unrecognised grounding decision, asking for clarification",
            decision=str(decision.decision),
            conversation_id=state.conversation_id,
        )
        return NodeName.CLARIFICATION_NEEDED

    def after_master_agent(self, state: ConversationState) -> NodeName:
        if state.failure_count >= self.max_failures or not state.response:
            return NodeName.FAILURE_RECOVERY
        if state.metadata.generation_halted:
            return NodeName.END
        if state.chat_mode == "fastest":
            return NodeName.MEMORY_WRITER
        return NodeName.COST_OPTIMIZER

    def routes(self) -> Dict[NodeName, Route]:
        return {
            NodeName.MEMORY_READER: fixed(NodeName.PROMPT_ANALYZER),
            NodeName.PROMPT_ANALYZER: Route(
                targets=(NodeName.TRENDING_DETECTOR, NodeName.SEMANTIC_CACHE),
                choose=self.after_prompt_analyzer,
            ),
            NodeName.TRENDING_DETECTOR: Route(
                targets=(NodeName.WEB_SCRAPER, NodeName.SEMANTIC_CACHE),
                choose=self.after_trending_detector,
            ),
            NodeName.WEB_SCRAPER: Route(
                targets=(NodeName.CONTENT_SUMMARIZER, NodeName.GROUNDING_GATE),
                choose=self.after_web_scraper,
            ),
            NodeName.CONTENT_SUMMARIZER: fixed(NodeName.GROUNDING_GATE),
            NodeName.SEMANTIC_CACHE: Route(
                targets=(NodeName.END, NodeName.GROUNDING_GATE),
                choose=self.after_semantic_cache,
            ),
            NodeName.GROUNDING_GATE: Route(
                targets=(
                    NodeName.MASTER_AGENT,
                    NodeName.CLARIFICATION_NEEDED,
                    NodeName.WEB_SCRAPER,
                    NodeName.REFUSE_SAFELY,
                ),
                choose=self.after_grounding_gate,
            ),
            NodeName.MASTER_AGENT: Route(
                targets=(NodeName.FAILURE_RECOVERY, NodeName.END, NodeName.MEMORY_WRITER, NodeName.COST_OPTIMIZER),
                choose=self.after_master_agent,
            ),
            NodeName.COST_OPTIMIZER: fixed(NodeName.QUALITY_ANALYST),
            NodeName.QUALITY_ANALYST: fixed(NodeName.MEMORY_WRITER),
            NodeName.MEMORY_WRITER: fixed(NodeName.END),
        }
