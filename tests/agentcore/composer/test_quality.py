"""Tests for quality parsing, risk assessment and cost accounting."""

import pytest

from agentcore.composer.quality import (
    DEFAULT_RECOMMENDATIONS,
    assess_risk_level,
    calculate_total_cost,
    extract_quality_metrics,
)


class TestExtractQualityMetrics:
    def test_json_payload(self):
        metrics = extract_quality_metrics('Here you go: {"qualityScore": 9.2, "recommendations": ["Cite sources"]}')

        assert metrics.score == 9.2
        assert metrics.recommendations == ["Cite sources"]

    def test_snake_case_key(self):
        assert extract_quality_metrics('{"quality_score": "6"}').score == 6.0

    def test_unparseable_score_uses_default(self):
        assert extract_quality_metrics('{"qualityScore": "excellent"}').score == 7.5

    def test_text_score(self):
        metrics = extract_quality_metrics("Overall score: 4.5 because the answer is vague.")

        assert metrics.score == 4.5
        assert metrics.recommendations == DEFAULT_RECOMMENDATIONS

    def test_nothing_recognisable(self):
        assert extract_quality_metrics("Looks fine to me.").score == 7.5

    def test_empty_analysis(self):
        metrics = extract_quality_metrics("")

        assert metrics.score == 7.0
        assert metrics.recommendations == ["Response quality could not be assessed"]


@pytest.mark.parametrize(
    "score,optimizations,expected",
    [
        (9.0, [], "low"),
        (9.0, ["failure_recovery"], "high"),
        (5.5, [], "high"),
        (7.0, [], "medium"),
        (9.0, ["semantic_cache", "prompt_refinement", "budget_exceeded"], "medium"),
    ],
)
def test_assess_risk_level(score, optimizations, expected):
    assert assess_risk_level(score, optimizations) == expected


def test_total_cost_sums_node_costs():
    path = ["memory_reader", "master_agent", "quality_analyst", "cost_optimizer"]

    assert calculate_total_cost(0.01, path) == pytest.approx(0.01 + 0.0001 + 0.001 + 0.001 + 0.0005)
