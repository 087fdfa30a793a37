"""
Memory service for user preferences and conversation exchanges.

Combines:
- Per-user preferences (Redis hash) and insight tags (capped list)
- Per-conversation exchange history (sliding window, 24h TTL)
- A hard ``prohibited`` short-circuit on writes

Reads degrade to an empty context; writes report success as a bool.
"""

import json
from datetime import datetime
from typing import Dict, List, Optional, Protocol

import structlog
from pydantic import BaseModel, Field

logger = structlog.get_logger(__name__)

EXCHANGE_TTL_SECONDS = 86400


class MemoryContext(BaseModel):
    """User memory loaded before processing a query."""

    preferences: Dict[str, str] = Field(default_factory=dict)
    insights: List[str] = Field(default_factory=list)

    @property
    def is_empty(self) -> bool:
        return not self.preferences and not self.insights


class Exchange(BaseModel):
    """One persisted query/response pair."""

    user_id: str
    query: str
    response: str
    created_at: datetime = Field(default_factory=datetime.utcnow)


class MemoryService(Protocol):
    async def read(self, user_id: str) -> MemoryContext: ...

    async def write(
        self,
        conversation_id: str,
        exchange: Exchange,
        tags: List[str],
        prohibited: bool = False,
    ) -> bool: ...


class MemoryCoordinator:
    """
    Redis-backed memory service.

    Usage:
        memory = MemoryCoordinator(redis_client)
        context = await memory.read(user_id)
        await memory.write(conversation_id, exchange, tags=["billing"], prohibited=False)
    """

    def __init__(self, redis_client, max_exchanges: int = 10, max_insights: int = 50):
        """
        Initialize memory coordinator.

        Args:
            redis_client: Async Redis client
            max_exchanges: Exchanges kept per conversation (sliding window)
            max_insights: Insight tags kept per user
        """
        self.redis = redis_client
        self.max_exchanges = max_exchanges
        self.max_insights = max_insights

    @staticmethod
    def _preferences_key(user_id: str) -> str:
        return f"user:{user_id}:preferences"

    @staticmethod
    def _insights_key(user_id: str) -> str:
        return f"user:{user_id}:insights"

    @staticmethod
    def _exchanges_key(conversation_id: str) -> str:
        return f"conversation:{conversation_id}:exchanges"

    async def read(self, user_id: str) -> MemoryContext:
        """Load preferences and recent insights for ``user_id``."""
        if self.redis is None:
            return MemoryContext()
        try:
            preferences = await self.redis.hgetall(self._preferences_key(user_id))
            insights = await self.redis.lrange(self._insights_key(user_id), 0, 9)
            return MemoryContext(preferences=preferences or {}, insights=list(insights or []))
        except Exception as e:
            logger.error("Failed to read user memory", user_id=user_id, error=str(e))
            return MemoryContext()

    async def write(
        self,
        conversation_id: str,
        exchange: Exchange,
        tags: List[str],
        prohibited: bool = False,
    ) -> bool:
        """Persist an exchange unless ``prohibited`` is set."""
        if prohibited:
            logger.info(
                "Memory write prohibited, skipping",
                conversation_id=conversation_id,
            )
            return False
        if self.redis is None:
            return False

        exchanges_key = self._exchanges_key(conversation_id)
        payload = json.dumps(
            {
                "user_id": exchange.user_id,
                "query": exchange.query,
                "response": exchange.response,
                "tags": tags,
                "created_at": exchange.created_at.isoformat(),
            }
        )

        try:
            await self.redis.lpush(exchanges_key, payload)
            await self.redis.ltrim(exchanges_key, 0, self.max_exchanges - 1)
            await self.redis.expire(exchanges_key, EXCHANGE_TTL_SECONDS)

            if tags:
                insights_key = self._insights_key(exchange.user_id)
                await self.redis.lpush(insights_key, *tags)
                await self.redis.ltrim(insights_key, 0, self.max_insights - 1)
        except Exception as e:
            logger.error("Failed to write memory", conversation_id=conversation_id, error=str(e))
            return False

        logger.debug(
            "Exchange written to memory",
            conversation_id=conversation_id,
            tags=tags,
            response_length=len(exchange.response),
        )
        return True

    async def get_exchanges(self, conversation_id: str, limit: Optional[int] = None) -> List[Exchange]:
        """Recent exchanges for a conversation, oldest first."""
        if self.redis is None:
            return []
        end = (limit - 1) if limit else -1
        raw = await self.redis.lrange(self._exchanges_key(conversation_id), 0, end)
        exchanges = []
        for item in raw:
            data = json.loads(item)
            exchanges.append(
                Exchange(
                    user_id=data["user_id"],
                    query=data["query"],
                    response=data["response"],
                    created_at=datetime.fromisoformat(data["created_at"]),
                )
            )
        return list(reversed(exchanges))

    async def set_preference(self, user_id: str, key: str, value: str) -> None:
        await self.redis.hset(self._preferences_key(user_id), key, value)
