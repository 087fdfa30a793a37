"""
Caching utilities for the orchestration core.

This package provides:
- Redis client management
- Semantic response caching (embedding similarity, LRU + TTL)
- Decision stickiness stores
"""

from libs.caching.decision_store import DecisionStore, InMemoryDecisionStore, RedisDecisionStore
from libs.caching.redis_client import get_redis_client
from libs.caching.semantic_cache import SemanticCache

__all__ = [
    "DecisionStore",
    "InMemoryDecisionStore",
    "RedisDecisionStore",
    "SemanticCache",
    "get_redis_client",
]
