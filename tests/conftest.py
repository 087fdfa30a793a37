"""
Pytest configuration and fixtures for groundgate tests.

Provides shared fixtures for:
- Fake Redis client (fakeredis)
- Test settings
- Stub collaborators (generation backend, memory service)
"""

from typing import List, Optional, Sequence

import pytest

from agentcore.schemas.agent_state import Message
from libs.common.settings import Settings, get_settings
from libs.memory.coordinator import Exchange, MemoryContext


class StubBackend:
    """Generation backend returning scripted replies per model hint.

    A reply that is an exception instance is raised instead of returned.
    """

    def __init__(self, primary=None, fallback=None):
        self.replies = {
            "primary": list(primary or ["Generated answer."]),
            "fallback": list(fallback or ['{"qualityScore": 8.5, "recommendations": []}']),
        }
        self.calls: List[tuple] = []

    async def generate(self, messages: Sequence[Message], model_hint: str = "primary") -> str:
        self.calls.append((model_hint, list(messages)))
        queue = self.replies[model_hint]
        reply = queue.pop(0) if len(queue) > 1 else queue[0]
        if isinstance(reply, BaseException):
            raise reply
        return reply

    def hints(self) -> List[str]:
        return [hint for hint, _ in self.calls]


class RecordingMemory:
    """Memory service that records writes instead of persisting them."""

    def __init__(self, context: Optional[MemoryContext] = None, fail_reads: bool = False):
        self.context = context or MemoryContext()
        self.fail_reads = fail_reads
        self.writes: List[tuple] = []

    async def read(self, user_id: str) -> MemoryContext:
        if self.fail_reads:
            raise ConnectionError("memory backend unavailable")
        return self.context

    async def write(self, conversation_id: str, exchange: Exchange, tags: List[str], prohibited: bool = False) -> bool:
        if prohibited:
            return False
        self.writes.append((conversation_id, exchange, tags))
        return True


async def no_sleep(seconds: float) -> None:
    return None


@pytest.fixture(autouse=True)
def setup_test_env(monkeypatch):
    """Run every test in the test environment with fresh cached settings."""
    monkeypatch.setenv("GROUNDGATE_APP_ENV", "test")
    monkeypatch.delenv("GROUNDGATE_REDIS_URL", raising=False)
    get_settings.cache_clear()
    yield
    get_settings.cache_clear()


@pytest.fixture
def test_settings():
    """Settings with short timeouts and no backoff for fast tests."""
    return Settings(
        app_env="test",
        backoff_base_ms=0,
        backoff_cap_ms=0,
        generation_retry_multiplier=0,
        web_fetch_batch_delay=0,
        external_call_timeout=2.0,
        generation_timeout=2.0,
        web_fetch_timeout=2.0,
    )


@pytest.fixture
async def redis_client():
    """
    Provide a fakeredis client for testing.

    This avoids requiring an actual Redis server during tests.
    """
    from fakeredis import aioredis as fakeredis

    client = fakeredis.FakeRedis(decode_responses=True)

    yield client

    await client.flushdb()
    await client.aclose()


@pytest.fixture
def stub_backend():
    return StubBackend()


@pytest.fixture
def recording_memory():
    return RecordingMemory()
