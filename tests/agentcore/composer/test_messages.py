"""Tests for user-facing texts and prompt assembly."""

from agentcore.composer.messages import (
    CLARIFY_NEXT_STEPS,
    GENERIC_REASON,
    REFUSE_NEXT_STEPS,
    build_clarification_message,
    build_generation_messages,
    build_quality_messages,
    build_refusal_message,
    user_facing_reasons,
)
from agentcore.schemas.agent_state import ContentSummary, Message, ScrapedPage
from agentcore.schemas.grounding import DecisionType, GroundingDecision, GroundingMetrics
from libs.memory.coordinator import MemoryContext


def decision(kind: DecisionType, reasons):
    return GroundingDecision(grounding_score=0.3, decision=kind, reasons=reasons, metrics=GroundingMetrics())


class TestUserFacingReasons:
    def test_internal_details_are_dropped(self):
        phrases = user_facing_reasons(
            ["Grounding score 0.31 below minimum 0.45", "Found 1 sources with max similarity 0.52"]
        )

        assert phrases == ["The evidence I found isn't strong enough to answer confidently."]
        assert not any("0.31" in p for p in phrases)

    def test_duplicates_collapse(self):
        phrases = user_facing_reasons(
            ["User supplied documents but none were retrieved", "Unable to ground response in provided documents"]
        )

        assert phrases == ["None of the documents you provided appear to cover this question."]

    def test_unknown_reasons_fall_back_to_generic(self):
        assert user_facing_reasons(["Internal evaluation error"]) == [GENERIC_REASON]
        assert user_facing_reasons([]) == [GENERIC_REASON]


class TestClarificationAndRefusal:
    def test_clarification_message(self):
        message = build_clarification_message(
            decision(
                DecisionType.ASK_CLARIFY,
                ["Intent confidence 0.55 below threshold 0.70", "Query may be ambiguous or unclear"],
            )
        )

        assert message.startswith("I want to make sure I give you an accurate answer.")
        assert "- Your question could be read in more than one way." in message
        assert "0.55" not in message
        assert CLARIFY_NEXT_STEPS[0] in message

    def test_refusal_message(self):
        message = build_refusal_message(
            decision(DecisionType.REFUSE, ["Maximum search attempts (2) reached", "Unable to retrieve fresh data"])
        )

        assert message.startswith("I'm not able to answer this reliably right now.")
        assert "I wasn't able to retrieve up-to-date information" in message
        assert all(step in message for step in REFUSE_NEXT_STEPS)

    def test_missing_decision_still_readable(self):
        message = build_refusal_message(None)

        assert GENERIC_REASON in message
        assert REFUSE_NEXT_STEPS[0] in message


class TestGenerationMessages:
    def test_layout(self):
        history = [
            Message(role="system", content="old system prompt"),
            Message(role="user", content="earlier question"),
            Message(role="assistant", content="earlier answer"),
        ]

        messages = build_generation_messages("fastest", history, "new question")

        assert [m.role for m in messages] == ["system", "user", "assistant", "user"]
        assert "optimized for speed" in messages[0].content
        assert "old system prompt" not in messages[0].content
        assert messages[-1].content == "new question"

    def test_unknown_mode_uses_balanced(self):
        messages = build_generation_messages("turbo", [], "q")

        assert "balances response quality" in messages[0].content

    def test_memory_and_summary_included(self):
        memory = MemoryContext(preferences={"tone": "brief"}, insights=["deploy keys"])
        summary = ContentSummary(text="Repo A leads.", pages=[ScrapedPage(url="https://github.com/trending")])

        system = build_generation_messages("balanced", [], "q", memory=memory, summary=summary)[0].content

        assert "User preferences: tone: brief" in system
        assert "Topics the user has asked about before: deploy keys" in system
        assert "sources: https://github.com/trending" in system
        assert "Repo A leads." in system

    def test_scraping_failure_note(self):
        system = build_generation_messages("balanced", [], "q", scraping_failed=True)[0].content

        assert "could not be retrieved" in system


def test_quality_messages():
    messages = build_quality_messages("q", "answer", [])

    assert len(messages) == 1
    assert "Applied optimizations: none" in messages[0].content
    assert "Response: answer" in messages[0].content
