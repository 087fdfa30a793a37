"""Generation backends."""

from agentcore.llm.generation import ChatOpenAIBackend, GenerationBackend

__all__ = ["ChatOpenAIBackend", "GenerationBackend"]
