"""Prompt cost and complexity estimation plus lightweight prompt refinement."""

import re
from typing import Literal

Complexity = Literal["low", "medium", "high"]

TOKENS_PER_WORD = 1.3
COST_PER_TOKEN = 0.000008
MAX_REFINED_CHARS = 1000

HIGH_COMPLEXITY_WORDS = 500
MEDIUM_COMPLEXITY_WORDS = 100
MAX_SIMPLE_QUESTIONS = 2

_POLITENESS = re.compile(r"\b(please|kindly|could you)\b", re.I)
_FILLER = re.compile(r"\b(um|uh|well|you know)\b", re.I)
_CODE = re.compile(r"```|\bcode\b", re.I)
_SPACE_BEFORE_PUNCT = re.compile(r"\s+([,.;:?!])")
_LEADING_PUNCT = re.compile(r"^[,;:\s]+")


def word_count(text: str) -> int:
    return len(text.split())


def estimate_prompt_cost(prompt: str) -> float:
    """Rough dollar cost of sending ``prompt`` (word-based token estimate)."""
    return word_count(prompt) * TOKENS_PER_WORD * COST_PER_TOKEN


def analyze_complexity(prompt: str) -> Complexity:
    words = word_count(prompt)
    has_code = bool(_CODE.search(prompt))
    many_questions = prompt.count("?") > MAX_SIMPLE_QUESTIONS

    if words > HIGH_COMPLEXITY_WORDS or has_code or many_questions:
        return "high"
    if words > MEDIUM_COMPLEXITY_WORDS:
        return "medium"
    return "low"


def refine_prompt(prompt: str) -> str:
    """Strip politeness and filler tokens, normalise whitespace, cap length.

    Falls back to the whitespace-normalised original if stripping would leave
    nothing behind.
    """
    normalized = " ".join(prompt.split())
    refined = _FILLER.sub("", _POLITENESS.sub("", normalized))
    refined = " ".join(refined.split())
    refined = _LEADING_PUNCT.sub("", _SPACE_BEFORE_PUNCT.sub(r"\1", refined))
    if not refined:
        refined = normalized
    return refined[:MAX_REFINED_CHARS]


def needs_refinement(prompt: str, cost_budget: float) -> bool:
    return estimate_prompt_cost(prompt) > cost_budget or analyze_complexity(prompt) == "high"
