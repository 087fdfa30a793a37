"""Post-generation quality scoring, risk assessment and cost accounting."""

import json
import re
from dataclasses import dataclass, field
from typing import List, Sequence

DEFAULT_QUALITY_SCORE = 7.5
DEFAULT_RECOMMENDATIONS = ["Improve response clarity", "Add more specific examples"]

# Per-visit cost estimate by node; anything unlisted costs the minimum
NODE_COSTS = {
    "master_agent": 0.001,
    "cost_optimizer": 0.0005,
    "failure_recovery": 0.0005,
    "quality_analyst": 0.001,
}
MINIMAL_NODE_COST = 0.0001

_JSON_OBJECT = re.compile(r"\{[\s\S]*\}")
_SCORE_TEXT = re.compile(r"(?:score|rating)\s*:\s*(\d+(?:\.\d+)?)", re.I)


@dataclass
class QualityMetrics:
    score: float
    recommendations: List[str] = field(default_factory=list)


def extract_quality_metrics(analysis: str) -> QualityMetrics:
    """Parse the analyst's output: JSON object first, then ``score: N`` text."""
    if not analysis:
        return QualityMetrics(score=7.0, recommendations=["Response quality could not be assessed"])

    match = _JSON_OBJECT.search(analysis)
    if match:
        try:
            parsed = json.loads(match.group(0))
        except json.JSONDecodeError:
            parsed = None
        if isinstance(parsed, dict):
            score = parsed.get("qualityScore", parsed.get("quality_score", DEFAULT_QUALITY_SCORE))
            recommendations = parsed.get("recommendations") or []
            try:
                score = float(score)
            except (TypeError, ValueError):
                score = DEFAULT_QUALITY_SCORE
            return QualityMetrics(score=score, recommendations=[str(r) for r in recommendations])

    score_match = _SCORE_TEXT.search(analysis)
    score = float(score_match.group(1)) if score_match else DEFAULT_QUALITY_SCORE
    return QualityMetrics(score=score, recommendations=list(DEFAULT_RECOMMENDATIONS))


def assess_risk_level(quality_score: float, optimizations: Sequence[str]) -> str:
    if quality_score < 6 or "failure_recovery" in optimizations:
        return "high"
    if quality_score < 8 or len(optimizations) > 2:
        return "medium"
    return "low"


def calculate_total_cost(prompt_cost: float, agent_path: Sequence[str]) -> float:
    return prompt_cost + sum(NODE_COSTS.get(node, MINIMAL_NODE_COST) for node in agent_path)
