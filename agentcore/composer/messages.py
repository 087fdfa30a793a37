"""User-facing texts and prompt assembly for the agent nodes.

Clarification and refusal messages are built from a decision's reasons, but
only through a fixed phrasebook: reasons without a user-safe phrasing (scores,
internal errors) are dropped, so nothing internal leaks into user text.
"""

from typing import Dict, List, Optional, Sequence, Tuple

from agentcore.schemas.agent_state import ContentSummary, Message
from agentcore.schemas.grounding import GroundingDecision
from libs.memory.coordinator import MemoryContext

APOLOGY_MESSAGE = "I apologize, but I'm experiencing technical difficulties. Please try again later."

STRATEGY_PROMPTS: Dict[str, str] = {
    "fastest": (
        "You are an AI assistant optimized for speed. Provide concise, direct answers "
        "without unnecessary elaboration."
    ),
    "cheapest": (
        "You are an AI assistant optimized for cost efficiency. Provide helpful but concise "
        "responses using minimal tokens."
    ),
    "balanced": (
        "You are an AI assistant that balances response quality with efficiency. Provide "
        "thorough but focused answers."
    ),
}

SCRAPING_FAILED_NOTE = (
    "Live web data for this question could not be retrieved. Answer from general knowledge, "
    "say that the information may not be current, and suggest checking official sources."
)

RECOVERY_PROMPT = (
    "The previous attempts to answer this question failed. Give a short, helpful answer "
    "to the user's latest message."
)

QUALITY_PROMPT = """Analyze the quality of this assistant response and provide a quality score (1-10) and recommendations.

Question: {query}

Response: {response}

Applied optimizations: {optimizations}

Respond in JSON with: qualityScore, strengths, weaknesses, recommendations"""

SUMMARY_PROMPT = """Analyze the following web content and provide a direct, concise answer to the user's query.

User Query: {query}

Scraped Content:
{content}

Focus on the most relevant information only. Keep it concise and to the point."""

# (substring of a decision reason, user-safe explanation); first match per reason wins
REASON_PHRASES: List[Tuple[str, str]] = [
    ("Maximum clarification attempts", "We haven't been able to pin down what you're looking for."),
    ("Maximum search attempts", "I wasn't able to retrieve up-to-date information after several attempts."),
    ("No relevant information found", "I couldn't find reliable information about this in the available sources."),
    ("documents", "None of the documents you provided appear to cover this question."),
    ("topic shift", "It looks like the conversation has moved on to a new topic."),
    ("ambiguous", "Your question could be read in more than one way."),
    ("Cost optimizer", "This answer mode needs more specific context to respond reliably."),
    ("stale", "The information I have on this may be out of date."),
    ("below minimum", "The evidence I found isn't strong enough to answer confidently."),
    ("Unable to verify sufficient grounding", "I couldn't verify that I have enough information to answer accurately."),
]

GENERIC_REASON = "I don't have enough reliable information to answer this accurately."

CLARIFY_NEXT_STEPS = [
    "Could you rephrase your question or add a bit more detail about what you need?",
    "If it relates to a specific document, product or time period, please mention it.",
]

REFUSE_NEXT_STEPS = [
    "Try rephrasing with more specific details.",
    "You can also share a document that covers this topic and I'll answer from it.",
]


def user_facing_reasons(reasons: Sequence[str]) -> List[str]:
    """Map decision reasons to user-safe explanations, deduplicated, never empty."""
    phrases: List[str] = []
    for reason in reasons:
        lowered = reason.lower()
        for marker, phrase in REASON_PHRASES:
            if marker.lower() in lowered:
                if phrase not in phrases:
                    phrases.append(phrase)
                break
    return phrases or [GENERIC_REASON]


def _compose(opening: str, reasons: List[str], next_steps: List[str]) -> str:
    lines = [opening, ""]
    lines.extend(f"- {reason}" for reason in reasons)
    lines.append("")
    lines.extend(next_steps)
    return "\n".join(lines)


def build_clarification_message(decision: Optional[GroundingDecision]) -> str:
    reasons = user_facing_reasons(decision.reasons if decision else [])
    return _compose("I want to make sure I give you an accurate answer.", reasons, CLARIFY_NEXT_STEPS)


def build_refusal_message(decision: Optional[GroundingDecision]) -> str:
    reasons = user_facing_reasons(decision.reasons if decision else [])
    return _compose("I'm not able to answer this reliably right now.", reasons, REFUSE_NEXT_STEPS)


def strategy_prompt(chat_mode: str) -> str:
    return STRATEGY_PROMPTS.get(chat_mode, STRATEGY_PROMPTS["balanced"])


def memory_prompt(memory: Optional[MemoryContext]) -> Optional[str]:
    if memory is None or memory.is_empty:
        return None
    parts = []
    if memory.preferences:
        prefs = ", ".join(f"{k}: {v}" for k, v in sorted(memory.preferences.items()))
        parts.append(f"User preferences: {prefs}")
    if memory.insights:
        parts.append(f"Topics the user has asked about before: {', '.join(memory.insights)}")
    return "\n".join(parts)


def build_generation_messages(
    chat_mode: str,
    history: Sequence[Message],
    query: str,
    memory: Optional[MemoryContext] = None,
    summary: Optional[ContentSummary] = None,
    scraping_failed: bool = False,
) -> List[Message]:
    """System context followed by prior turns and the (possibly refined) query."""
    system_parts = [strategy_prompt(chat_mode)]
    memory_text = memory_prompt(memory)
    if memory_text:
        system_parts.append(memory_text)
    if summary is not None:
        sources = ", ".join(page.url for page in summary.pages)
        system_parts.append(f"Live web content relevant to the question (sources: {sources}):\n{summary.text}")
    elif scraping_failed:
        system_parts.append(SCRAPING_FAILED_NOTE)

    return [
        Message(role="system", content="\n\n".join(system_parts)),
        *[m for m in history if m.role != "system"],
        Message(role="user", content=query),
    ]


def build_quality_messages(query: str, response: str, optimizations: Sequence[str]) -> List[Message]:
    prompt = QUALITY_PROMPT.format(
        query=query,
        response=response,
        optimizations=", ".join(optimizations) or "none",
    )
    return [Message(role="user", content=prompt)]


def build_summary_messages(query: str, sources: Sequence[Tuple[str, str]], max_chars_per_source: int = 2000) -> List[Message]:
    content = "\n---\n".join(
        f"Source {i}: {url}\nContent: {text[:max_chars_per_source]}"
        for i, (url, text) in enumerate(sources, start=1)
    )
    return [Message(role="user", content=SUMMARY_PROMPT.format(query=query, content=content))]
