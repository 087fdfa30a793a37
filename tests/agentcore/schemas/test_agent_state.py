"""
Test suite for the conversation state schema.

Tests verify:
- Initial state built from request options
- Update merge rules (append-only logs, monotonic counters, metadata merge)
- Identity fields cannot change mid-request
- Grounding decisions force memory prohibition for non-GENERATE outcomes
"""

import pytest
from pydantic import ValidationError

from agentcore.schemas.agent_state import (
    Message,
    ProcessOptions,
    StateMetadata,
    create_initial_state,
)
from agentcore.schemas.grounding import DecisionType, GroundingDecision, GroundingMetrics


def make_state(**options):
    return create_initial_state("user-1", "conv-1", "How do I rotate the deploy keys?", ProcessOptions(**options))


class TestCreateInitialState:
    def test_defaults(self):
        state = make_state()

        assert state.query == "How do I rotate the deploy keys?"
        assert state.effective_query == state.query
        assert state.chat_mode == "balanced"
        assert state.cost_budget == 0.10
        assert state.agent_path == []
        assert state.failure_count == 0
        assert state.metadata.strategy == "balanced"
        assert len(state.trace_id) == 32

    def test_options_carried_over(self):
        history = [Message(role="user", content="Which vault?"), Message(role="assistant", content="Staging.")]

        state = make_state(
            chat_mode="cheapest",
            cost_budget=0.5,
            previous_messages=history,
            document_ids=["runbook-7"],
            clarification_attempts=1,
        )

        assert state.messages[:2] == history
        assert state.prior_user_turns == ["Which vault?"]
        assert state.cost_budget == 0.5
        assert state.document_ids == ["runbook-7"]
        assert state.clarification_attempts == 1

    def test_default_budget_from_caller(self):
        state = create_initial_state("u", "c", "q", default_cost_budget=0.02)

        assert state.cost_budget == 0.02

    def test_refined_prompt_becomes_effective_query(self):
        state = make_state()
        state.apply_update({"refined_prompt": "rotate deploy keys"})

        assert state.effective_query == "rotate deploy keys"
        assert state.query == "How do I rotate the deploy keys?"


class TestApplyUpdate:
    def test_append_only_fields_concatenate(self):
        state = make_state()
        state.apply_update({"agent_path": ["memory_reader"], "optimizations_applied": ["semantic_cache"]})
        state.apply_update({"agent_path": ["prompt_analyzer"]})

        assert state.agent_path == ["memory_reader", "prompt_analyzer"]
        assert state.optimizations_applied == ["semantic_cache"]

    def test_counters_never_decrease(self):
        state = make_state()
        state.apply_update({"failure_count": 2, "search_attempts": 1})
        state.apply_update({"failure_count": 1, "search_attempts": 0})

        assert state.failure_count == 2
        assert state.search_attempts == 1

    def test_identity_is_immutable(self):
        state = make_state()

        with pytest.raises(ValueError, match="user_id"):
            state.apply_update({"user_id": "someone-else"})

    def test_metadata_merges_set_keys_only(self):
        state = make_state()
        state.apply_update({"metadata": {"quality_score": 8.0, "extras": {"a": 1}}})
        state.apply_update({"metadata": {"memory_written": True, "extras": {"b": 2}}})

        assert state.metadata.quality_score == 8.0
        assert state.metadata.memory_written is True
        assert state.metadata.strategy == "balanced"
        assert state.metadata.extras == {"a": 1, "b": 2}

    def test_metadata_model_update(self):
        state = make_state()
        state.apply_update({"metadata": StateMetadata(scraping_failed=True)})

        assert state.metadata.scraping_failed is True
        assert state.metadata.strategy == "balanced"

    def test_invalid_value_rejected(self):
        state = make_state()

        with pytest.raises(ValidationError):
            state.apply_update({"chat_mode": "turbo"})


class TestGroundingDecision:
    @pytest.mark.parametrize("kind", [DecisionType.ASK_CLARIFY, DecisionType.SEARCH_MORE, DecisionType.REFUSE])
    def test_non_generate_always_prohibits_memory(self, kind):
        decision = GroundingDecision(
            grounding_score=0.5,
            decision=kind,
            reasons=["test"],
            metrics=GroundingMetrics(),
            prohibit_memory_write=False,
        )

        assert decision.prohibit_memory_write is True
        assert decision.allows_generation is False

    def test_reasons_required(self):
        with pytest.raises(ValidationError):
            GroundingDecision(grounding_score=0.5, decision=DecisionType.GENERATE, reasons=[], metrics=GroundingMetrics())

    def test_score_bounded(self):
        with pytest.raises(ValidationError):
            GroundingDecision(grounding_score=1.5, decision=DecisionType.GENERATE, reasons=["x"], metrics=GroundingMetrics())
