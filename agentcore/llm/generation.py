"""Generation backend used by the orchestrator's agent nodes.

The orchestrator treats generation as one opaque call,
``generate(messages, model_hint) -> text``. ``ChatOpenAIBackend`` implements
it on top of LangChain's ``ChatOpenAI``, mapping the ``primary`` and
``fallback`` hints to configured model names.
"""

from typing import Dict, List, Optional, Protocol, Sequence

import structlog
from langchain_core.messages import AIMessage, BaseMessage, HumanMessage, SystemMessage
from langchain_openai import ChatOpenAI

from agentcore.errors import GenerationError
from agentcore.schemas.agent_state import Message
from libs.common.settings import Settings

logger = structlog.get_logger(__name__)

MODEL_HINT_PRIMARY = "primary"
MODEL_HINT_FALLBACK = "fallback"


class GenerationBackend(Protocol):
    async def generate(self, messages: Sequence[Message], model_hint: str = MODEL_HINT_PRIMARY) -> str: ...


def to_langchain_messages(messages: Sequence[Message]) -> List[BaseMessage]:
    """Convert conversation turns to LangChain chat messages."""
    converted: List[BaseMessage] = []
    for message in messages:
        if message.role == "system":
            converted.append(SystemMessage(content=message.content))
        elif message.role == "assistant":
            converted.append(AIMessage(content=message.content))
        else:
            converted.append(HumanMessage(content=message.content))
    return converted


def message_text(result: BaseMessage) -> str:
    content = result.content
    if isinstance(content, str):
        return content
    parts = []
    for item in content:
        if isinstance(item, str):
            parts.append(item)
        elif isinstance(item, dict) and isinstance(item.get("text"), str):
            parts.append(item["text"])
    return "".join(parts)


class ChatOpenAIBackend:
    """Generation backend over ``langchain_openai.ChatOpenAI``.

    Chat models are created lazily per model hint and reused. Retries are left
    to the caller so failures are counted where routing can see them.
    """

    def __init__(
        self,
        primary_model: str = "gpt-4o",
        fallback_model: str = "gpt-4o-mini",
        api_key: Optional[str] = None,
        temperature: float = 0.1,
        max_tokens: int = 1500,
        timeout: float = 30.0,
    ):
        self.models = {MODEL_HINT_PRIMARY: primary_model, MODEL_HINT_FALLBACK: fallback_model}
        self.api_key = api_key
        self.temperature = temperature
        self.max_tokens = max_tokens
        self.timeout = timeout
        self._llms: Dict[str, ChatOpenAI] = {}

    @classmethod
    def from_settings(cls, settings: Settings) -> "ChatOpenAIBackend":
        return cls(
            primary_model=settings.primary_model,
            fallback_model=settings.fallback_model,
            api_key=settings.openai_api_key,
            timeout=settings.generation_timeout,
        )

    def model_name(self, model_hint: str) -> str:
        # Unknown hints use the primary model
        return self.models.get(model_hint, self.models[MODEL_HINT_PRIMARY])

    def _llm(self, model_hint: str) -> ChatOpenAI:
        model = self.model_name(model_hint)
        llm = self._llms.get(model)
        if llm is None:
            kwargs = {
                "model": model,
                "temperature": self.temperature,
                "max_tokens": self.max_tokens,
                "timeout": self.timeout,
                "max_retries": 0,
            }
            if self.api_key:
                kwargs["api_key"] = self.api_key
            llm = ChatOpenAI(**kwargs)
            self._llms[model] = llm
        return llm

    async def generate(self, messages: Sequence[Message], model_hint: str = MODEL_HINT_PRIMARY) -> str:
        model = self.model_name(model_hint)
        try:
            result = await self._llm(model_hint).ainvoke(to_langchain_messages(messages))
        except Exception as e:
            logger.error("Generation call failed", model=model, error=str(e), error_type=type(e).__name__)
            raise GenerationError(f"generation failed on {model}") from e

        text = message_text(result).strip()
        if not text:
            raise GenerationError(f"empty generation from {model}")

        logger.debug("Generation completed", model=model, response_length=len(text))
        return text
