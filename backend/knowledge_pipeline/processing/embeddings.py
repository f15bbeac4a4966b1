"""
Embedding Service  —  Batch Embeddings with Retry
══════════════════════════════════════════════════

  • One API call per EMBEDDING_BATCH_SIZE texts (default 100)
  • Exponential back-off on transient errors (rate limits, 5xx, network)
  • Authentication / invalid-request errors fail immediately

OpenAI embedding model selection:
  text-embedding-3-small  → 1536 dims  (default, cost-efficient)
  text-embedding-3-large  → 3072 dims  (higher accuracy)
"""

from __future__ import annotations

import asyncio
import logging
import time
from typing import Any

from langchain_openai import OpenAIEmbeddings

from knowledge_pipeline.core.config import settings

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Configuration
# ---------------------------------------------------------------------------

EMBEDDING_BATCH_SIZE = 100    # texts per API call
MAX_RETRIES          = 3      # per-batch retry limit
RETRY_BASE_DELAY     = 2.0    # seconds: doubles each retry
RETRY_MAX_DELAY      = 60.0   # cap

_NON_RETRYABLE = ("AuthenticationError", "PermissionDeniedError", "BadRequestError")


def get_embedding_model() -> OpenAIEmbeddings:
    """Return the configured OpenAI embedding model."""
    return OpenAIEmbeddings(
        model=settings.embedding_model,
        api_key=settings.openai_api_key,
        dimensions=settings.embedding_dimensions,
    )


class EmbeddingService:
    """
    Thin async wrapper over a LangChain embeddings model.
    `model` may be any object exposing aembed_documents / aembed_query.
    """

    def __init__(self, model: Any | None = None, sleep=asyncio.sleep) -> None:
        self._model = model
        self._sleep = sleep

    @property
    def model(self) -> Any:
        if self._model is None:
            self._model = get_embedding_model()
        return self._model

    async def embed_documents(self, texts: list[str]) -> list[list[float]]:
        """Embed texts in order; raises once a batch exhausts its retries."""
        if not texts:
            return []

        t0 = time.monotonic()
        vectors: list[list[float]] = []
        for start in range(0, len(texts), EMBEDDING_BATCH_SIZE):
            batch = texts[start : start + EMBEDDING_BATCH_SIZE]
            vectors.extend(await self._embed_batch(batch, start // EMBEDDING_BATCH_SIZE))

        logger.info(
            "Embedded | texts=%d model=%s elapsed_ms=%.0f",
            len(texts), settings.embedding_model, (time.monotonic() - t0) * 1000,
        )
        return vectors

    async def embed_query(self, text: str) -> list[float]:
        return await self.model.aembed_query(text)

    async def _embed_batch(self, batch: list[str], batch_idx: int) -> list[list[float]]:
        last_error: Exception | None = None
        for attempt in range(MAX_RETRIES + 1):
            if attempt > 0:
                delay = min(RETRY_BASE_DELAY * (2 ** (attempt - 1)), RETRY_MAX_DELAY)
                logger.warning(
                    "Embedding retry | batch=%d attempt=%d delay=%.1fs error=%s",
                    batch_idx, attempt, delay, last_error,
                )
                await self._sleep(delay)
            try:
                vectors = await self.model.aembed_documents(batch)
            except Exception as exc:
                if type(exc).__name__ in _NON_RETRYABLE:
                    logger.error("Non-retryable embedding error batch=%d: %s", batch_idx, exc)
                    raise
                last_error = exc
                continue
            if len(vectors) != len(batch):
                raise ValueError(
                    f"Embedding batch {batch_idx} returned {len(vectors)} vectors for {len(batch)} texts"
                )
            return vectors

        raise last_error or RuntimeError(f"Embedding batch {batch_idx} failed after {MAX_RETRIES} retries")
