"""Embedding providers behind one async ``embed(text)`` contract.

``HashingEmbedder`` is deterministic and offline (hashed bag of words), used
for local runs and tests. ``OpenAIEmbeddingClient`` calls the OpenAI
embeddings endpoint over httpx with tenacity retries.
"""

from typing import List, Optional, Protocol, Sequence

import httpx
import numpy as np
import structlog
from tenacity import retry, stop_after_attempt, wait_exponential

from libs.common.settings import Settings

logger = structlog.get_logger(__name__)

HASHING_DIMENSIONS = 384
OPENAI_EMBEDDINGS_URL = "https://api.openai.com/v1/embeddings"
MAX_EMBED_CHARS = 8000


class Embedder(Protocol):
    async def embed(self, text: str) -> Sequence[float]: ...


def _string_hash(token: str) -> int:
    """32-bit rolling string hash, stable across processes."""
    value = 0
    for char in token:
        value = (value * 31 + ord(char)) & 0xFFFFFFFF
    return value


class HashingEmbedder:
    """Hashed bag-of-words embedding, L2-normalised.

    Earlier words weigh more (``1 / (position + 1)``), so near-identical
    queries map to near-identical vectors.
    """

    def __init__(self, dimensions: int = HASHING_DIMENSIONS):
        self.dimensions = dimensions

    def embed_sync(self, text: str) -> List[float]:
        vector = np.zeros(self.dimensions, dtype=np.float64)
        for index, word in enumerate(text.lower().split()):
            vector[_string_hash(word) % self.dimensions] += 1.0 / (index + 1)
        norm = np.linalg.norm(vector)
        if norm > 0:
            vector = vector / norm
        return vector.tolist()

    async def embed(self, text: str) -> List[float]:
        return self.embed_sync(text)


class OpenAIEmbeddingClient:
    """OpenAI embeddings over httpx."""

    def __init__(
        self,
        api_key: Optional[str],
        model: str = "text-embedding-3-small",
        timeout: float = 10.0,
        client: Optional[httpx.AsyncClient] = None,
    ):
        self.api_key = api_key
        self.model = model
        self.timeout = timeout
        self.client = client

    @classmethod
    def from_settings(cls, settings: Settings) -> "OpenAIEmbeddingClient":
        return cls(
            api_key=settings.openai_api_key,
            model=settings.embedding_model,
            timeout=settings.external_call_timeout,
        )

    @retry(stop=stop_after_attempt(3), wait=wait_exponential(multiplier=1, min=1, max=10), reraise=True)
    async def embed(self, text: str) -> List[float]:
        """Get embedding for text using the OpenAI API."""
        if not self.api_key:
            raise RuntimeError("OpenAI API key not configured")

        payload = {"model": self.model, "input": text[:MAX_EMBED_CHARS], "encoding_format": "float"}
        headers = {"Authorization": f"Bearer {self.api_key}", "Content-Type": "application/json"}

        if self.client is not None:
            response = await self.client.post(OPENAI_EMBEDDINGS_URL, headers=headers, json=payload, timeout=self.timeout)
        else:
            async with httpx.AsyncClient(timeout=httpx.Timeout(self.timeout)) as client:
                response = await client.post(OPENAI_EMBEDDINGS_URL, headers=headers, json=payload)

        if response.status_code != 200:
            logger.error("OpenAI embedding failed", status=response.status_code, response=response.text[:200])
            response.raise_for_status()

        embedding = response.json()["data"][0]["embedding"]
        logger.debug("Embedding generated", model=self.model, input_length=len(text), embedding_dim=len(embedding))
        return embedding
