"""Live-data detection for incoming queries.

Pattern based: a cheap ``quick_check`` used by the router, and a fuller
``analyze`` that scores the query, assigns a category and suggests sources to
scrape along with a cache lifetime for the scraped content.
"""

import re
from typing import Dict, List, Tuple

import structlog

from agentcore.schemas.agent_state import TrendingAnalysis

logger = structlog.get_logger(__name__)

NEEDS_REAL_TIME_THRESHOLD = 0.3

# (pattern, weight) pairs; the weighted sum is capped at 1.0
REAL_TIME_PATTERNS: List[Tuple[re.Pattern, float]] = [
    (re.compile(r"\b(trending|popular|viral|top\s+\d+)\b", re.I), 0.4),
    (re.compile(r"what'?s\s+(hot|new|trending|popular)", re.I), 0.4),
    (re.compile(r"\blatest\s+(news|updates?|releases?|version)\b", re.I), 0.4),
    (re.compile(r"\b(today|right\s+now|currently|current|recent|this\s+week|tonight)\b", re.I), 0.5),
    (re.compile(r"\b(live|real[- ]?time|up[- ]?to[- ]?date)\b", re.I), 0.5),
    (re.compile(r"\b(price|prices|deal|deals|discount|sale)\b", re.I), 0.3),
    (re.compile(r"\b(how\s+much\s+(is|does)|cheapest\s+\w+\s+(on|at))\b", re.I), 0.3),
    (re.compile(r"\b(weather|forecast|temperature)\b", re.I), 0.3),
    (re.compile(r"\b(news|headlines|announcement|announced)\b", re.I), 0.3),
    (re.compile(r"\b(reddit|hacker\s+news|product\s+hunt|twitter)\b", re.I), 0.2),
    (re.compile(r"\bgithub\s+trending\b", re.I), 0.2),
    (re.compile(r"\b(score|scores|standings)\b", re.I), 0.2),
]

TIME_SENSITIVE_PATTERN = re.compile(
    r"\b(today|now|current|currently|latest|recent|recently|this\s+(week|month|year)|live|real[- ]?time|"
    r"breaking|price|prices|weather|forecast|news|trending|stock)\b",
    re.I,
)

# Ordered: first matching category wins
CATEGORY_PATTERNS: List[Tuple[str, re.Pattern]] = [
    ("ai_pricing", re.compile(r"\b(ai|model|token|openai|anthropic|gpt)\s+pricing\b|\btoken\s+costs?\b", re.I)),
    ("ai_news", re.compile(r"\b(ai\s+news|latest\s+ai|ai\s+updates)\b", re.I)),
    ("trending", re.compile(r"\b(trending|popular|viral|top\s+\d+)\b", re.I)),
    ("pricing", re.compile(r"\b(price|prices|deal|deals|discount|sale|cheapest)\b", re.I)),
    ("weather", re.compile(r"\b(weather|forecast|temperature)\b", re.I)),
    ("news", re.compile(r"\b(news|headlines|announcement|announced)\b", re.I)),
    ("social", re.compile(r"\b(reddit|twitter|hacker\s+news|discussion)\b", re.I)),
]

SOURCE_MAPPING: Dict[str, List[str]] = {
    "ai_pricing": [
        "https://openai.com/api/pricing/",
        "https://www.anthropic.com/pricing",
        "https://aws.amazon.com/bedrock/pricing/",
    ],
    "ai_news": [
        "https://techcrunch.com/category/artificial-intelligence/",
        "https://www.theverge.com/ai-artificial-intelligence",
    ],
    "trending": [
        "https://news.ycombinator.com/",
        "https://github.com/trending",
        "https://www.producthunt.com/",
    ],
    "pricing": [
        "https://www.amazon.com/",
        "https://www.ebay.com/",
    ],
    "weather": [
        "https://www.weather.gov/",
        "https://www.accuweather.com/",
    ],
    "news": [
        "https://techcrunch.com/",
        "https://www.theverge.com/",
        "https://arstechnica.com/",
    ],
    "social": [
        "https://www.reddit.com/",
        "https://news.ycombinator.com/",
    ],
    "general": [
        "https://www.wikipedia.org/",
        "https://news.ycombinator.com/",
    ],
}

# Seconds scraped content stays usable, by category
CACHE_TTL_SECONDS: Dict[str, int] = {
    "trending": 1800,
    "pricing": 3600,
    "ai_pricing": 3600,
    "news": 900,
    "ai_news": 900,
    "weather": 1800,
    "social": 600,
}
DEFAULT_CACHE_TTL_SECONDS = 3600


class TrendingDetector:
    """Classifies whether a query needs fresh external data."""

    def __init__(self, threshold: float = NEEDS_REAL_TIME_THRESHOLD):
        self.threshold = threshold

    def quick_check(self, query: str) -> bool:
        """Cheap routing heuristic: any live-data pattern matches."""
        return any(pattern.search(query) for pattern, _ in REAL_TIME_PATTERNS)

    def is_time_sensitive(self, query: str) -> bool:
        return bool(TIME_SENSITIVE_PATTERN.search(query))

    def pattern_score(self, query: str) -> float:
        score = sum(weight for pattern, weight in REAL_TIME_PATTERNS if pattern.search(query))
        return min(score, 1.0)

    def categorize(self, query: str) -> str:
        for category, pattern in CATEGORY_PATTERNS:
            if pattern.search(query):
                return category
        return "general"

    def sources_for(self, query: str) -> List[str]:
        """Suggested sources for the query's category, whether or not it looks live."""
        return list(SOURCE_MAPPING.get(self.categorize(query), SOURCE_MAPPING["general"]))

    def analyze(self, query: str) -> TrendingAnalysis:
        confidence = self.pattern_score(query)
        needs_real_time = confidence > self.threshold
        category = self.categorize(query)
        sources = self.sources_for(query) if needs_real_time else []

        analysis = TrendingAnalysis(
            needs_real_time_data=needs_real_time,
            confidence=round(confidence, 4),
            category=category,
            suggested_sources=sources,
            cache_ttl_seconds=CACHE_TTL_SECONDS.get(category, DEFAULT_CACHE_TTL_SECONDS),
        )

        logger.info(
            "Trending analysis completed",
            needs_real_time_data=analysis.needs_real_time_data,
            confidence=analysis.confidence,
            category=category,
            sources_count=len(sources),
        )
        return analysis
