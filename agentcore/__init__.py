"""Groundgate orchestration core.

This package contains the grounded response pipeline:
- grounding: Confidence gate, operator controls, context assembly
- orchestrators: State machine, routing, failure recovery, query orchestrator
- tools: Trending detection, web scraping, summarization, retrieval, embeddings
- composer: Prompt analysis, quality metrics, user-facing message texts
- schemas: Conversation state and grounding models
"""

# Avoid importing the orchestrator here: it pulls in the model backends.
__all__ = []
