"""
Tests for the grounding confidence gate.

Tests verify:
- Ordered decision rules (drift, refuse, intent, optimizer, freshness, documents)
- Hard factual gate and the OPINION exemption
- Loop protection
- Domain risk adjustment
- Fail-safe on evaluation errors
- Decision stickiness and analytics events
"""

from typing import List, Optional
from unittest.mock import patch

import pytest

from agentcore.grounding.confidence_gate import (
    GroundingConfidenceGate,
    apply_domain_risk,
    detect_domain,
    score_freshness,
    score_retrieval,
    score_source_diversity,
    stickiness_key,
)
from agentcore.grounding.controls import GroundingControls, GroundingThresholds
from agentcore.schemas.grounding import (
    AgentType,
    CacheSignals,
    DecisionType,
    DomainRisk,
    GroundingContext,
    GroundingDecision,
    GroundingMetrics,
    GroundingSource,
    IntentSignals,
    QueryType,
    RetrievalSignals,
)
from libs.caching.decision_store import InMemoryDecisionStore

GENERAL_QUERY = "How do I configure the deployment pipeline?"


def strong_retrieval() -> RetrievalSignals:
    """5 hits, max 0.92, mean 0.85, three distinct source types."""
    sources = [
        GroundingSource(source_type="document", source_id="doc-1", similarity=0.92),
        GroundingSource(source_type="document", source_id="doc-2", similarity=0.85),
        GroundingSource(source_type="web", source_id="https://example.com/a", similarity=0.83),
        GroundingSource(source_type="web", source_id="https://example.com/b", similarity=0.82),
        GroundingSource(source_type="memory", source_id="mem-1", similarity=0.83),
    ]
    return RetrievalSignals(hit_count=5, max_similarity=0.92, mean_similarity=0.85, sources=sources)


def make_context(
    query: str = GENERAL_QUERY,
    retrieval: Optional[RetrievalSignals] = None,
    intent: float = 0.9,
    ambiguous: bool = False,
    **kwargs,
) -> GroundingContext:
    return GroundingContext(
        query=query,
        retrieval=retrieval if retrieval is not None else strong_retrieval(),
        intent=IntentSignals(confidence=intent, ambiguous=ambiguous),
        conversation_id=kwargs.pop("conversation_id", "conv-1"),
        user_id="user-1",
        **kwargs,
    )


@pytest.fixture
def controls():
    return GroundingControls()


@pytest.fixture
def gate(controls):
    return GroundingConfidenceGate(controls)


class TestScenarios:
    """End-to-end gate scenarios."""

    @pytest.mark.asyncio
    async def test_strong_grounding_generates(self, gate):
        decision = await gate.evaluate(make_context())

        assert decision.decision == DecisionType.GENERATE
        assert decision.grounding_score > 0.8
        assert decision.prohibit_memory_write is False
        assert decision.allows_generation

    @pytest.mark.asyncio
    async def test_zero_hits_factual_refuses(self, gate):
        context = make_context(retrieval=RetrievalSignals(), query_type=QueryType.FACTUAL)

        decision = await gate.evaluate(context)

        assert decision.decision == DecisionType.REFUSE
        assert "No relevant information found" in decision.reasons
        assert decision.prohibit_memory_write is True

    @pytest.mark.asyncio
    @pytest.mark.parametrize("query_type", [QueryType.FACTUAL, QueryType.ACTION, QueryType.MIXED])
    async def test_hard_gate_applies_to_every_non_opinion_type(self, gate, query_type):
        decision = await gate.evaluate(make_context(retrieval=RetrievalSignals(), query_type=query_type))

        assert decision.decision == DecisionType.REFUSE

    @pytest.mark.asyncio
    async def test_opinion_with_zero_hits_is_scored(self, gate):
        context = make_context(
            query="What do you think about tabs versus spaces?",
            retrieval=RetrievalSignals(),
            query_type=QueryType.OPINION,
        )

        decision = await gate.evaluate(context)

        assert "No relevant information found" not in decision.reasons
        assert decision.metrics.intent_score == pytest.approx(0.9)
        assert decision.grounding_score > 0.0

    @pytest.mark.asyncio
    async def test_stale_cache_for_time_sensitive_query_searches_more(self, gate):
        context = make_context(
            query="What are the latest release notes today?",
            time_sensitive=True,
            cache=CacheSignals(used=True, freshness_score=0.3),
        )

        decision = await gate.evaluate(context)

        assert decision.metrics.freshness_score == pytest.approx(0.3)
        assert decision.decision == DecisionType.SEARCH_MORE
        assert decision.prohibit_memory_write is True

    @pytest.mark.asyncio
    async def test_finance_domain_tightens_refuse_threshold(self, controls, gate):
        """A composite of 0.5 passes for general queries but not for FINANCE."""
        controls.update_weights(retrieval=0.5, intent=0.5, freshness=0.0, diversity=0.0)
        weak = RetrievalSignals(
            hit_count=2,
            max_similarity=0.5,
            mean_similarity=0.45,
            sources=[
                GroundingSource(source_type="document", source_id="doc-1", similarity=0.5),
                GroundingSource(source_type="document", source_id="doc-2", similarity=0.4),
            ],
        )

        finance = await gate.evaluate(
            make_context(query="What is my billing invoice total?", retrieval=weak, intent=0.8)
        )
        general = await gate.evaluate(
            make_context(query="What is the deployment status of the staging cluster?", retrieval=weak, intent=0.8)
        )

        assert finance.grounding_score == pytest.approx(0.5)
        assert finance.decision == DecisionType.REFUSE
        assert general.grounding_score == pytest.approx(0.5)
        assert general.decision == DecisionType.GENERATE


class TestDecisionRules:
    """Rule ordering in ``determine_decision``."""

    def metrics(self, final: float, retrieval: float = 0.9, freshness: float = 1.0) -> GroundingMetrics:
        return GroundingMetrics(
            retrieval_score=retrieval,
            intent_score=0.9,
            freshness_score=freshness,
            source_diversity_score=1.0,
            final_score=final,
        )

    def test_context_drift_with_uncertain_intent_asks_clarify(self, gate):
        context = make_context(context_drift_high=True, intent=0.72)

        decision, reasons = gate.determine_decision(context, self.metrics(0.9), GroundingThresholds())

        assert decision == DecisionType.ASK_CLARIFY
        assert "Detected topic shift with uncertain intent" in reasons

    def test_context_drift_with_confident_intent_is_ignored(self, gate):
        context = make_context(context_drift_high=True, intent=0.9)

        decision, _ = gate.determine_decision(context, self.metrics(0.9), GroundingThresholds())

        assert decision == DecisionType.GENERATE

    def test_low_intent_asks_clarify(self, gate):
        decision, reasons = gate.determine_decision(
            make_context(intent=0.6), self.metrics(0.7), GroundingThresholds()
        )

        assert decision == DecisionType.ASK_CLARIFY
        assert "Query may be ambiguous or unclear" in reasons

    def test_optimizer_requires_stronger_retrieval(self, gate):
        context = make_context(agent_type=AgentType.OPTIMIZER)

        decision, _ = gate.determine_decision(context, self.metrics(0.8, retrieval=0.65), GroundingThresholds())

        assert decision == DecisionType.ASK_CLARIFY

    def test_refuse_threshold_checked_before_intent(self, gate):
        decision, _ = gate.determine_decision(make_context(intent=0.2), self.metrics(0.3), GroundingThresholds())

        assert decision == DecisionType.REFUSE

    def test_domain_adjusted_threshold_refuses_half_score(self, gate):
        thresholds = apply_domain_risk(GroundingThresholds(), DomainRisk.FINANCE)

        decision, _ = gate.determine_decision(make_context(), self.metrics(0.5), thresholds)
        general, _ = gate.determine_decision(make_context(), self.metrics(0.5), GroundingThresholds())

        assert thresholds.refuse == pytest.approx(0.55)
        assert decision == DecisionType.REFUSE
        assert general == DecisionType.GENERATE


class TestDocumentGrounding:
    @pytest.mark.asyncio
    async def test_documents_not_retrieved_refuses(self, gate):
        context = make_context(document_ids=["contract-2024"])

        decision = await gate.evaluate(context)

        assert decision.decision == DecisionType.REFUSE
        assert "User supplied documents but none were retrieved" in decision.reasons

    @pytest.mark.asyncio
    async def test_documents_retrieved_generates(self, gate):
        context = make_context(document_ids=["doc-1"])

        decision = await gate.evaluate(context)

        assert decision.decision == DecisionType.GENERATE


class TestLoopProtection:
    @pytest.mark.asyncio
    async def test_clarification_limit_refuses_regardless_of_evidence(self, gate):
        decision = await gate.evaluate(make_context(clarification_attempts=2))

        assert decision.decision == DecisionType.REFUSE
        assert "Maximum clarification attempts (2) reached" in decision.reasons

    @pytest.mark.asyncio
    async def test_search_limit_refuses(self, gate):
        decision = await gate.evaluate(make_context(search_attempts=2))

        assert decision.decision == DecisionType.REFUSE
        assert "Maximum search attempts (2) reached" in decision.reasons

    @pytest.mark.asyncio
    async def test_below_limit_evaluates_normally(self, gate):
        decision = await gate.evaluate(make_context(clarification_attempts=1, search_attempts=1))

        assert decision.decision == DecisionType.GENERATE


class TestFailSafe:
    @pytest.mark.asyncio
    async def test_scoring_error_fails_safe_to_clarify(self, gate):
        with patch.object(gate, "score", side_effect=RuntimeError("boom")):
            decision = await gate.evaluate(make_context())

        assert decision.decision == DecisionType.ASK_CLARIFY
        assert decision.prohibit_memory_write is True
        assert "Unable to verify sufficient grounding" in decision.reasons
        assert all("boom" not in reason for reason in decision.reasons)

    @pytest.mark.asyncio
    @pytest.mark.parametrize("error", [ValueError("bad"), KeyError("missing"), ZeroDivisionError()])
    async def test_no_exception_ever_generates(self, gate, error):
        with patch.object(gate, "determine_decision", side_effect=error):
            decision = await gate.evaluate(make_context())

        assert decision.decision != DecisionType.GENERATE

    @pytest.mark.asyncio
    async def test_broken_store_reads_as_miss(self, controls):
        class BrokenStore:
            async def get(self, key):
                raise ConnectionError("store down")

            async def set(self, key, payload, ttl_seconds):
                raise ConnectionError("store down")

        gate = GroundingConfidenceGate(controls, store=BrokenStore())

        decision = await gate.evaluate(make_context())

        assert decision.decision == DecisionType.GENERATE


class TestEmergencyBypass:
    @pytest.mark.asyncio
    async def test_bypass_generates_without_scoring(self, controls, gate):
        controls.set_flags(emergency_bypass=True)

        decision = await gate.evaluate(make_context(retrieval=RetrievalSignals()))

        assert decision.decision == DecisionType.GENERATE
        assert decision.grounding_score == 1.0
        assert decision.reasons == ["Emergency bypass enabled"]


class TestStickiness:
    @pytest.mark.asyncio
    async def test_repeat_evaluation_returns_identical_decision(self, controls):
        gate = GroundingConfidenceGate(controls, store=InMemoryDecisionStore())

        first = await gate.evaluate(make_context())
        second = await gate.evaluate(
            make_context(retrieval=RetrievalSignals(), query="  how do I configure the DEPLOYMENT pipeline? ")
        )

        assert second.model_dump() == first.model_dump()
        assert second.model_dump_json() == first.model_dump_json()

    @pytest.mark.asyncio
    async def test_other_conversation_is_not_sticky(self, controls):
        gate = GroundingConfidenceGate(controls, store=InMemoryDecisionStore())

        await gate.evaluate(make_context())
        other = await gate.evaluate(make_context(retrieval=RetrievalSignals(), conversation_id="conv-2"))

        assert other.decision == DecisionType.REFUSE

    @pytest.mark.asyncio
    async def test_search_retry_bypasses_sticky_decision(self, controls):
        gate = GroundingConfidenceGate(controls, store=InMemoryDecisionStore())
        stale = make_context(time_sensitive=True, cache=CacheSignals(used=True, freshness_score=0.3))

        first = await gate.evaluate(stale)
        retried = await gate.evaluate(make_context(search_attempts=1, reevaluation=True))

        assert first.decision == DecisionType.SEARCH_MORE
        assert retried.decision == DecisionType.GENERATE

    @pytest.mark.asyncio
    async def test_carried_attempt_counters_keep_decision_sticky(self, controls):
        gate = GroundingConfidenceGate(controls, store=InMemoryDecisionStore())

        refused = await gate.evaluate(make_context(retrieval=RetrievalSignals()))
        retried = await gate.evaluate(make_context(search_attempts=1))

        assert refused.decision == DecisionType.REFUSE
        assert retried.model_dump() == refused.model_dump()

    def test_stickiness_key_normalizes_query(self):
        assert stickiness_key("conv-1", "Hello  World") == stickiness_key("conv-1", " hello world ")
        assert stickiness_key("conv-1", "hello") != stickiness_key("conv-2", "hello")
        assert stickiness_key(None, "hello") == stickiness_key(None, "hello")


class TestEvents:
    @pytest.mark.asyncio
    async def test_listener_receives_evaluated_event(self, gate):
        events: List[tuple] = []
        gate.subscribe(lambda name, payload: events.append((name, payload)))

        decision = await gate.evaluate(make_context())

        assert len(events) == 1
        name, payload = events[0]
        assert name == "grounding_evaluated"
        assert payload["decision"] is decision

    @pytest.mark.asyncio
    async def test_failing_listener_does_not_change_decision(self, gate):
        def broken(name, payload):
            raise RuntimeError("analytics down")

        gate.subscribe(broken)

        decision = await gate.evaluate(make_context())

        assert decision.decision == DecisionType.GENERATE


class TestSubScores:
    def test_retrieval_score_bands(self):
        assert score_retrieval(make_context(retrieval=RetrievalSignals())) == 0.0

        weak = RetrievalSignals.from_sources([GroundingSource(source_type="document", source_id="a", similarity=0.5)])
        assert score_retrieval(make_context(retrieval=weak)) == 0.2

        single = RetrievalSignals.from_sources([GroundingSource(source_type="document", source_id="a", similarity=0.8)])
        assert score_retrieval(make_context(retrieval=single)) == pytest.approx(0.64)

        assert score_retrieval(make_context()) == pytest.approx(0.95)

    def test_single_hit_penalty_follows_hit_count(self):
        # Aggregates may list fewer sources than were hit
        summarised = RetrievalSignals(
            hit_count=2,
            max_similarity=0.8,
            mean_similarity=0.8,
            sources=[GroundingSource(source_type="document", source_id="a", similarity=0.8)],
        )

        assert score_retrieval(make_context(retrieval=summarised)) == pytest.approx(0.8)

    def test_document_hit_bonus(self):
        plain = score_retrieval(make_context())
        boosted = score_retrieval(make_context(document_ids=["doc-2"]))

        assert boosted == pytest.approx(min(1.0, plain + 0.05))

    def test_freshness_rules(self):
        assert score_freshness(make_context()) == 1.0
        assert score_freshness(make_context(time_sensitive=True)) == 1.0
        assert score_freshness(make_context(time_sensitive=True, cache=CacheSignals(used=True, freshness_score=0.7))) == 0.7
        assert score_freshness(make_context(time_sensitive=True, cache=CacheSignals(used=True, valid_until=200.0)), now=100.0) == 1.0
        assert score_freshness(make_context(time_sensitive=True, cache=CacheSignals(used=True, valid_until=50.0)), now=100.0) == 0.2
        assert score_freshness(make_context(time_sensitive=True, cache=CacheSignals(used=True))) == 0.3

    def test_freshness_stale_sources(self):
        now = 10_000.0
        sources = [
            GroundingSource(source_type="web", source_id="a", similarity=0.9, timestamp=now - 600),
            GroundingSource(source_type="web", source_id="b", similarity=0.9, timestamp=now - 900),
            GroundingSource(source_type="web", source_id="c", similarity=0.9, timestamp=now - 10),
        ]
        context = make_context(
            retrieval=RetrievalSignals.from_sources(sources),
            time_sensitive=True,
            cache=CacheSignals(used=True),
        )

        assert score_freshness(context, now=now) == 0.4

    def test_source_diversity(self):
        assert score_source_diversity(make_context()) == 1.0
        assert score_source_diversity(make_context(retrieval=RetrievalSignals())) == 0.2

        two_types = RetrievalSignals.from_sources(
            [
                GroundingSource(source_type="document", source_id="a", similarity=0.9),
                GroundingSource(source_type="web", source_id="b", similarity=0.9),
            ]
        )
        assert score_source_diversity(make_context(retrieval=two_types)) == 0.8


class TestDomainRisk:
    @pytest.mark.parametrize(
        "query,domain",
        [
            ("What is my billing invoice total?", DomainRisk.FINANCE),
            ("How do I reset my password?", DomainRisk.SECURITY),
            ("Does this violate GDPR?", DomainRisk.LEGAL),
            ("What medication interacts with ibuprofen?", DomainRisk.HEALTHCARE),
            (GENERAL_QUERY, DomainRisk.GENERAL),
        ],
    )
    def test_detect_domain(self, query, domain):
        assert detect_domain(query) == domain

    def test_intent_bump_is_capped(self):
        thresholds = GroundingThresholds(intent_minimum=0.83)

        adjusted = apply_domain_risk(thresholds, DomainRisk.SECURITY)

        assert adjusted.intent_minimum == 0.85
        assert apply_domain_risk(thresholds, DomainRisk.GENERAL) is thresholds


class TestDecisionModel:
    def test_non_generate_forces_memory_prohibition(self):
        decision = GroundingDecision(
            grounding_score=0.5,
            decision=DecisionType.ASK_CLARIFY,
            reasons=["unclear"],
            metrics=GroundingMetrics(),
            prohibit_memory_write=False,
        )

        assert decision.prohibit_memory_write is True

    def test_reasons_required(self):
        with pytest.raises(ValueError):
            GroundingDecision(grounding_score=0.5, decision=DecisionType.GENERATE, reasons=[], metrics=GroundingMetrics())
