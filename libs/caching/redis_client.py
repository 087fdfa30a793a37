"""
Redis client manager for the decision stickiness store and memory service.

Provides:
- Async Redis client with connection pooling
- Singleton pattern for resource efficiency
- Graceful degradation (None when Redis is unavailable)
- fakeredis in the test environment
"""

from typing import Optional

import redis.asyncio as redis
import structlog

from libs.common.settings import Settings, get_settings

logger = structlog.get_logger(__name__)

# Global Redis client instance (singleton)
_redis_client: Optional[redis.Redis] = None
_connection_failed = False  # Circuit breaker for repeated failures


def _redact(url: str) -> str:
    """Strip credentials from a Redis URL for logging."""
    return url.split("@")[-1] if "@" in url else url.split("//")[-1]


async def get_redis_client(
    settings: Optional[Settings] = None,
    use_fake: Optional[bool] = None,
) -> Optional[redis.Redis]:
    """
    Get or create the shared async Redis client.

    Args:
        settings: Settings to read the Redis URL from (defaults to cached settings)
        use_fake: If True, use fakeredis. If None, auto-detect from app_env.

    Returns:
        Redis client instance or None if no connection could be made
    """
    global _redis_client, _connection_failed

    settings = settings or get_settings()

    if use_fake is None:
        use_fake = settings.is_test

    # fakeredis ships with the test extra only
    if use_fake:
        try:
            from fakeredis import aioredis as fakeredis

            if _redis_client is None:
                _redis_client = fakeredis.FakeRedis(decode_responses=True)
                logger.info("Using fakeredis for testing")
            return _redis_client
        except ImportError:
            logger.warning("fakeredis not installed, falling back to real Redis")
            use_fake = False

    if _connection_failed:
        logger.warning("Redis connection previously failed, skipping reconnect attempt")
        return None

    if _redis_client is not None:
        try:
            await _redis_client.ping()
            return _redis_client
        except Exception as e:
            logger.warning("Existing Redis connection failed, reconnecting", error=str(e))
            _redis_client = None

    if not settings.redis_url:
        logger.warning(
            "Redis URL not configured, stickiness and memory persistence disabled",
            hint="Set GROUNDGATE_REDIS_URL to enable",
        )
        _connection_failed = True
        return None

    try:
        _redis_client = redis.from_url(
            settings.redis_url,
            encoding="utf-8",
            decode_responses=True,
            max_connections=20,
            socket_timeout=settings.external_call_timeout,
            socket_connect_timeout=5,
            retry_on_timeout=True,
        )
        await _redis_client.ping()

        logger.info(
            "Redis client initialized successfully",
            url=_redact(settings.redis_url),
            max_connections=20,
        )
        return _redis_client

    except redis.ConnectionError as e:
        logger.error(
            "Redis connection failed",
            error=str(e),
            redis_url=_redact(settings.redis_url),
            hint="Check GROUNDGATE_REDIS_URL and ensure Redis server is running",
        )
        _connection_failed = True
        _redis_client = None
        return None

    except Exception as e:
        logger.error(
            "Unexpected error initializing Redis",
            error=str(e),
            error_type=type(e).__name__,
        )
        _connection_failed = True
        _redis_client = None
        return None


async def close_redis_client() -> None:
    """Close Redis client connection."""
    global _redis_client

    if _redis_client is not None:
        try:
            await _redis_client.aclose()
            logger.info("Redis client closed")
        except Exception as e:
            logger.warning("Error closing Redis client", error=str(e))
        finally:
            _redis_client = None


async def reset_redis_client() -> None:
    """Reset Redis client state (for tests or after connection failures)."""
    global _redis_client, _connection_failed

    await close_redis_client()
    _connection_failed = False

    logger.info("Redis client reset")
