"""Condenses scraped pages into a short context block for generation."""

import re
from typing import List, Sequence

import structlog

from agentcore.composer.messages import build_summary_messages
from agentcore.llm.generation import MODEL_HINT_FALLBACK, GenerationBackend
from agentcore.schemas.agent_state import ContentSummary, ScrapedPage

logger = structlog.get_logger(__name__)

EXTRACTIVE_SENTENCES_PER_SOURCE = 3
_SENTENCE_SPLIT = re.compile(r"(?<=[.!?])\s+")


def extractive_summary(pages: Sequence[ScrapedPage], sentences_per_source: int = EXTRACTIVE_SENTENCES_PER_SOURCE) -> str:
    """Leading sentences of each page, labelled by source."""
    blocks = []
    for page in pages:
        sentences = [s for s in _SENTENCE_SPLIT.split(page.text.strip()) if s]
        lead = " ".join(sentences[:sentences_per_source])
        if lead:
            label = page.title or page.url
            blocks.append(f"{label}: {lead}")
    return "\n".join(blocks)


class ContentSummarizer:
    """Summarises pages through the fallback model, extractively on failure."""

    def __init__(self, backend: GenerationBackend, max_chars_per_source: int = 2000):
        self.backend = backend
        self.max_chars_per_source = max_chars_per_source

    async def summarize(self, query: str, pages: Sequence[ScrapedPage]) -> ContentSummary:
        usable: List[ScrapedPage] = [p for p in pages if p.text]
        if not usable:
            return ContentSummary(text="", pages=[], extractive=True)

        messages = build_summary_messages(
            query,
            [(p.url, p.text) for p in usable],
            max_chars_per_source=self.max_chars_per_source,
        )
        try:
            text = await self.backend.generate(messages, model_hint=MODEL_HINT_FALLBACK)
            return ContentSummary(text=text, pages=usable, extractive=False)
        except Exception as e:
            logger.warning(
                "Summary generation failed, using extractive summary",
                error=str(e),
                error_type=type(e).__name__,
                sources=len(usable),
            )
            return ContentSummary(text=extractive_summary(usable), pages=usable, extractive=True)
