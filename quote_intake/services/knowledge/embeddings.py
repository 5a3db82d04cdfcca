# --------------------------- quote_intake/services/knowledge/embeddings.py ----------------------------
"""
Quote Intake · Embedding Service

OVERVIEW:
Turns text into vectors for the knowledge base. Identical text is served from
a TTL cache; everything else goes to OpenAI through the ``llm`` rate limiter.

BUSINESS LOGIC:
- Empty text is rejected before any API call
- Batches are split into chunks of at most EMBEDDING_BATCH_SIZE texts
- Vectors with an unexpected dimension count are treated as a provider failure

DEPENDENCIES:
- Environment variables: OPENAI_API_KEY, EMBEDDING_MODEL
- langchain_openai.OpenAIEmbeddings
"""

import logging
from typing import Any, List, Optional

from dotenv import load_dotenv
from langchain_openai import OpenAIEmbeddings

from quote_intake.config import settings
from quote_intake.errors import ExternalDependencyError, ValidationError
from quote_intake.services.cache import TTLCache
from quote_intake.services.rate_limiter import RateLimiter

load_dotenv()

logger = logging.getLogger(__name__)


class EmbeddingService:
    """
    Cached, rate-limited embedding generation.

    ARGS:
        limiter: RateLimiter for the ``llm`` tier
        embeddings: pre-built LangChain embeddings model, mainly for tests
        cache: TTLCache for exact-text hits
        dimensions: expected vector length, None to skip the check
    """

    def __init__(self, limiter: RateLimiter, embeddings: Any = None, cache: Optional[TTLCache] = None,
                 model: Optional[str] = None, dimensions: Optional[int] = settings.EMBEDDING_DIMENSIONS,
                 batch_size: int = settings.EMBEDDING_BATCH_SIZE):
        self.limiter = limiter
        self.model = model or settings.EMBEDDING_MODEL
        self.dimensions = dimensions
        self.batch_size = batch_size
        self.cache = cache or TTLCache(settings.EMBEDDING_CACHE_TTL_SECONDS, name="embeddings")
        self._embeddings = embeddings

    @property
    def embeddings(self) -> OpenAIEmbeddings:
        if self._embeddings is None:
            self._embeddings = OpenAIEmbeddings(model=self.model)
        return self._embeddings

    def _check(self, vector: List[float]) -> List[float]:
        if self.dimensions and len(vector) != self.dimensions:
            raise ExternalDependencyError(
                "embeddings", f"expected {self.dimensions} dimensions, got {len(vector)}"
            )
        return list(vector)

    async def embed(self, text: str, priority: int = 5) -> List[float]:
        """
        Embed one text.

        RAISES:
            ValidationError: the text is empty
            ExternalDependencyError: the embedding call failed
        """
        if not text or not text.strip():
            raise ValidationError("text cannot be empty", field="text")

        cached = self.cache.get(text)
        if cached is not None:
            logger.debug("Using cached embedding")
            return cached

        try:
            vector = await self.limiter.schedule(lambda: self.embeddings.aembed_query(text), priority=priority)
        except Exception as e:
            logger.error(f"Embedding generation failed: {e}")
            raise ExternalDependencyError("embeddings", "embedding generation failed", cause=e)

        vector = self._check(vector)
        self.cache.set(text, vector)
        return vector

    async def embed_many(self, texts: List[str], priority: int = 5) -> List[List[float]]:
        """Embed several texts, calling the API only for the ones not in cache."""
        if any(not t or not t.strip() for t in texts):
            raise ValidationError("texts cannot contain empty entries", field="texts")

        results: List[Optional[List[float]]] = [self.cache.get(t) for t in texts]
        pending = [i for i, vector in enumerate(results) if vector is None]
        logger.debug(f"Batch: {len(texts)} texts, {len(pending)} need embedding")

        for start in range(0, len(pending), self.batch_size):
            chunk = pending[start:start + self.batch_size]
            chunk_texts = [texts[i] for i in chunk]
            try:
                vectors = await self.limiter.schedule(
                    lambda: self.embeddings.aembed_documents(chunk_texts), priority=priority
                )
            except Exception as e:
                logger.error(f"Batch embedding failed: {e}")
                raise ExternalDependencyError("embeddings", "batch embedding failed", cause=e)
            for index, vector in zip(chunk, vectors):
                results[index] = self._check(vector)
                self.cache.set(texts[index], results[index])

        return results
