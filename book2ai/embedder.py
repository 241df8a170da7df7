"""
Query embedder: turns free text into embedding vectors via the OpenAI API.
"""

import logging
from typing import List, Optional

import openai

from . import settings
from .llm import UPSTREAM_EXCEPTIONS, get_client, upstream_error

logger = logging.getLogger(__name__)


class QueryEmbedder:
    """Embeds questions (and curated Q&A questions) with the pack's embedding model."""

    def __init__(self, client: Optional[openai.AsyncOpenAI] = None, model: str = None, batch_size: int = None):
        self._client = client
        self.model = model or settings.EMBED_MODEL
        self.batch_size = batch_size or settings.EMBED_BATCH_SIZE

    @property
    def client(self) -> openai.AsyncOpenAI:
        return self._client or get_client()

    async def embed(self, texts: List[str], model: str = None) -> List[List[float]]:
        """
        Embed a list of texts, one vector per input in the same order.

        Inputs are sent in batches of at most ``batch_size`` to stay within
        upstream request limits. ``model`` overrides the embedder's default,
        so queries can match the model a pack was embedded with.

        Raises:
            UpstreamError: If any batch call fails
        """
        vectors: List[List[float]] = []
        for start in range(0, len(texts), self.batch_size):
            batch = texts[start:start + self.batch_size]
            try:
                response = await self.client.embeddings.create(model=model or self.model, input=batch)
            except UPSTREAM_EXCEPTIONS as e:
                logger.error(f"Embedding call failed for batch at {start}: {e}")
                raise upstream_error("Embeddings", e) from e
            vectors.extend(item.embedding for item in response.data)
        return vectors

    async def embed_query(self, text: str, model: str = None) -> List[float]:
        """Embed a single question."""
        return (await self.embed([text], model=model))[0]
