"""Conversation topic tracking.

Keyword overlap between the current query and recent user turns gives two
signals: ``subject_confidence`` (how clearly the conversation's subject is
established, consulted before writing memory) and ``drift_high`` (the query
moved to an unrelated topic, consulted by the grounding gate).
"""

import re
from dataclasses import dataclass, field
from typing import List, Sequence, Set

import structlog

logger = structlog.get_logger(__name__)

STOPWORDS = frozenset(
    """
    a about after again all also am an and any are as at be because been before being between both but by
    can could did do does doing down during each few for from further had has have having he her here hers
    him his how i if in into is it its just me more most my no nor not now of off on once only or other our
    out over own same she should so some such than that the their them then there these they this those
    through to too under until up very was we were what when where which while who whom why will with would
    you your yours tell give show explain know need want like get make please thanks thank hello hi hey
    """.split()
)

_TOKEN = re.compile(r"[a-z0-9][a-z0-9_\-]*")


def extract_keywords(text: str) -> Set[str]:
    return {t for t in _TOKEN.findall(text.lower()) if len(t) >= 3 and t not in STOPWORDS}


@dataclass
class TopicAssessment:
    subject_confidence: float
    drift_high: bool
    overlap: float
    keywords: List[str] = field(default_factory=list)


class TopicTracker:
    """
    Default context tracker.

    Args:
        drift_threshold: Overlap ratio below which a keyword-rich query counts as drift
        window: Number of recent user turns compared against
    """

    def __init__(self, drift_threshold: float = 0.2, window: int = 3):
        self.drift_threshold = drift_threshold
        self.window = window

    def assess(self, query: str, prior_turns: Sequence[str]) -> TopicAssessment:
        current = extract_keywords(query)
        base = min(1.0, 0.3 + 0.25 * len(current))

        recent = list(prior_turns)[-self.window:] if self.window > 0 else []
        prior: Set[str] = set()
        for turn in recent:
            prior |= extract_keywords(turn)

        if not prior:
            return TopicAssessment(subject_confidence=round(base, 4), drift_high=False, overlap=0.0,
                                   keywords=sorted(current))

        if not current:
            # Short follow-up ("why?", "and then?") inherits the established topic
            return TopicAssessment(subject_confidence=0.6, drift_high=False, overlap=1.0, keywords=[])

        overlap = len(current & prior) / len(current)
        drift_high = len(current) >= 2 and overlap < self.drift_threshold
        if drift_high:
            confidence = base * 0.5
        else:
            confidence = min(1.0, base + 0.2 * overlap)

        if drift_high:
            logger.info("Topic drift detected", overlap=round(overlap, 3), keywords=sorted(current)[:10])

        return TopicAssessment(
            subject_confidence=round(confidence, 4),
            drift_high=drift_high,
            overlap=round(overlap, 4),
            keywords=sorted(current),
        )
