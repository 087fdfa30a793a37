"""Failure recovery: exponential backoff, then one degraded generation.

The policy never raises. If the degraded attempt fails too, the fixed
apology is returned so every request ends with user-facing text.
"""

import asyncio
from typing import Any, Awaitable, Callable, Dict

import structlog

from agentcore.composer.messages import APOLOGY_MESSAGE, RECOVERY_PROMPT, strategy_prompt
from agentcore.llm.generation import MODEL_HINT_FALLBACK, GenerationBackend
from agentcore.schemas.agent_state import ConversationState, Message
from libs.common.settings import Settings

logger = structlog.get_logger(__name__)


def backoff_delay_ms(failure_count: int, base_ms: int = 1000, cap_ms: int = 30000) -> int:
    """``min(base * 2^failure_count, cap)`` in milliseconds."""
    return min(base_ms * (2 ** max(failure_count, 0)), cap_ms)


class FailureRecoveryPolicy:
    def __init__(
        self,
        backend: GenerationBackend,
        base_ms: int = 1000,
        cap_ms: int = 30000,
        timeout: float = 30.0,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.backend = backend
        self.base_ms = base_ms
        self.cap_ms = cap_ms
        self.timeout = timeout
        self._sleep = sleep

    @classmethod
    def from_settings(cls, settings: Settings, backend: GenerationBackend, sleep=asyncio.sleep) -> "FailureRecoveryPolicy":
        return cls(
            backend=backend,
            base_ms=settings.backoff_base_ms,
            cap_ms=settings.backoff_cap_ms,
            timeout=settings.generation_timeout,
            sleep=sleep,
        )

    async def recover(self, state: ConversationState) -> Dict[str, Any]:
        """Partial state update carrying the recovered (or apology) response."""
        delay_ms = backoff_delay_ms(state.failure_count, self.base_ms, self.cap_ms)
        logger.warning(
            "Failure recovery activated",
            failure_count=state.failure_count,
            delay_ms=delay_ms,
            conversation_id=state.conversation_id,
        )
        await self._sleep(delay_ms / 1000)

        messages = [
            Message(role="system", content=f"{strategy_prompt(state.chat_mode)}\n\n{RECOVERY_PROMPT}"),
            Message(role="user", content=state.effective_query),
        ]
        try:
            text = await asyncio.wait_for(
                self.backend.generate(messages, model_hint=MODEL_HINT_FALLBACK),
                timeout=self.timeout,
            )
            if not text or not text.strip():
                raise ValueError("empty recovery response")
        except Exception as e:
            logger.error(
                "Failure recovery generation failed, returning apology",
                error=str(e),
                error_type=type(e).__name__,
                conversation_id=state.conversation_id,
            )
            return {
                "response": APOLOGY_MESSAGE,
                "failure_count": state.failure_count + 1,
                "prohibit_memory_write": True,
                "risk_level": "high",
                "metadata": {"recovery_method": "apology", "recovery_delay_ms": delay_ms},
            }

        return {
            "response": text,
            "optimizations_applied": ["failure_recovery"],
            "prohibit_memory_write": True,
            "risk_level": "high",
            "metadata": {
                "recovery_method": "fallback_model",
                "recovery_delay_ms": delay_ms,
                "generation_model": MODEL_HINT_FALLBACK,
            },
        }
