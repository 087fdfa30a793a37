"""
Short-TTL store backing grounding decision stickiness.

Values are opaque JSON payloads; the gate owns (de)serialisation. Any store
failure reads as a miss so evaluation falls back to a fresh decision.
"""

import asyncio
import time
from typing import Dict, Optional, Protocol, Tuple

import structlog

logger = structlog.get_logger(__name__)


class DecisionStore(Protocol):
    async def get(self, key: str) -> Optional[str]: ...

    async def set(self, key: str, payload: str, ttl_seconds: int) -> None: ...


class RedisDecisionStore:
    """Durable stickiness store on top of an async Redis client."""

    def __init__(self, redis_client, key_prefix: str = "gcl:decision:"):
        self.redis = redis_client
        self.key_prefix = key_prefix

    async def get(self, key: str) -> Optional[str]:
        try:
            return await self.redis.get(self.key_prefix + key)
        except Exception as e:
            logger.warning("Failed to read cached decision", error=str(e))
            return None

    async def set(self, key: str, payload: str, ttl_seconds: int) -> None:
        try:
            await self.redis.setex(self.key_prefix + key, ttl_seconds, payload)
        except Exception as e:
            logger.warning("Failed to cache decision", error=str(e))


class InMemoryDecisionStore:
    """Process-local store for development and tests."""

    def __init__(self, clock=time.monotonic):
        self._clock = clock
        self._entries: Dict[str, Tuple[str, float]] = {}
        self._lock = asyncio.Lock()

    async def get(self, key: str) -> Optional[str]:
        async with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                return None
            payload, expires_at = entry
            if self._clock() >= expires_at:
                del self._entries[key]
                return None
            return payload

    async def set(self, key: str, payload: str, ttl_seconds: int) -> None:
        async with self._lock:
            self._entries[key] = (payload, self._clock() + ttl_seconds)

    def __len__(self) -> int:
        return len(self._entries)
