"""
Memory service for the orchestration core.

Provides:
- User preferences and insight tags
- Conversation exchange history (sliding window)
- Prohibited-write short-circuit for ungrounded exchanges
"""

from libs.memory.coordinator import Exchange, MemoryContext, MemoryCoordinator, MemoryService

__all__ = ["Exchange", "MemoryContext", "MemoryCoordinator", "MemoryService"]
