"""
Vector Store — Abstract Base

Every concrete backend (Pinecone, in-memory) implements three primitive
calls: `_upsert_batch`, `_query` and `_delete_where`. The public
operations built on top of them are shared by all backends:

  upsert(records)
    ┌────────────────────────────────────────────────────────────────┐
    │ for each batch of ≤ batch_size records:                        │
    │   1. _upsert_batch(batch)        retry ×2, fixed 500 ms delay   │
    │   2. still failing → per-record fallback, each retry ×2        │
    │   3. pause 100 ms before the next batch                        │
    └────────────────────────────────────────────────────────────────┘
    Never raises for backend errors; returns UpsertOutcome listing the
    stored and failed ids.

  query(vector, bot_id, top_k)
    Always filtered by bot_id. Backend errors become a QueryOutcome in
    the UNAVAILABLE state instead of an exception.

  delete_by_document(document_id) / delete_by_bot(bot_id)
    Metadata-filtered bulk delete. Failures raise VectorStoreError.

Bot isolation contract (enforced here, not by backends):
  - Every query filter is ANDed with {"bot_id": {"$eq": <bot_id>}}.
  - Caller-supplied filters cannot remove the bot constraint.
"""

from __future__ import annotations

import asyncio
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Awaitable, Callable

from knowledge_pipeline.core.config import settings

logger = logging.getLogger(__name__)

REQUIRED_METADATA = ("bot_id", "document_id", "chunk_id", "text", "file_name", "file_type")


class VectorStoreError(Exception):
    """Raised when a delete cannot be confirmed by the backend."""


# ---------------------------------------------------------------------------
# Shared data types
# ---------------------------------------------------------------------------

@dataclass
class VectorRecord:
    """A single embedding record to upsert into the vector store."""
    id:        str              # equal to the chunk id
    vector:    list[float]
    metadata:  dict             # filterable payload stored alongside the vector
    # Required fields inside metadata:
    # - bot_id, document_id, chunk_id: str
    # - text: str               (raw chunk text: returned in results)
    # - file_name, file_type: str

    @classmethod
    def for_chunk(
        cls,
        chunk_id:    str,
        vector:      list[float],
        bot_id:      str,
        document_id: str,
        text:        str,
        file_name:   str,
        file_type:   str,
    ) -> "VectorRecord":
        return cls(
            id=chunk_id,
            vector=vector,
            metadata={
                "bot_id":      bot_id,
                "document_id": document_id,
                "chunk_id":    chunk_id,
                "text":        text,
                "file_name":   file_name,
                "file_type":   file_type,
            },
        )


@dataclass
class QueryResult:
    """One result returned from a similarity search."""
    id:         str
    score:      float
    metadata:   dict
    text:       str = field(default="")   # convenience alias for metadata["text"]

    def __post_init__(self) -> None:
        if not self.text and "text" in self.metadata:
            self.text = self.metadata["text"]


class QueryStatus(str, Enum):
    OK          = "ok"
    NO_MATCHES  = "no_matches"
    UNAVAILABLE = "unavailable"


@dataclass
class QueryOutcome:
    """
    Result of a bot-scoped similarity search.
    Distinguishes "nothing relevant" from "backend unreachable" so callers
    can keep answering without retrieval context yet still log the outage.
    """
    status:  QueryStatus
    matches: list[QueryResult] = field(default_factory=list)
    error:   str | None = None

    @property
    def degraded(self) -> bool:
        return self.status is QueryStatus.UNAVAILABLE

    @classmethod
    def from_matches(cls, matches: list[QueryResult]) -> "QueryOutcome":
        return cls(QueryStatus.OK if matches else QueryStatus.NO_MATCHES, matches)

    @classmethod
    def unavailable(cls, error: Exception) -> "QueryOutcome":
        return cls(QueryStatus.UNAVAILABLE, [], f"{type(error).__name__}: {error}")


@dataclass
class UpsertOutcome:
    stored_ids: list[str] = field(default_factory=list)
    failed_ids: list[str] = field(default_factory=list)

    @property
    def success(self) -> bool:
        return not self.failed_ids

    @property
    def stored_count(self) -> int:
        return len(self.stored_ids)


# ---------------------------------------------------------------------------
# Abstract interface
# ---------------------------------------------------------------------------

class VectorStoreBase(ABC):
    """
    Bot-scoped vector store with a resilient upsert cascade.

    Retry knobs default to settings; tests pass a no-op `sleep`.
    """

    def __init__(
        self,
        batch_size:     int | None = None,
        retry_attempts: int | None = None,
        retry_delay:    float | None = None,
        batch_pause:    float | None = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        self._batch_size     = batch_size or settings.vector_upsert_batch_size
        self._retry_attempts = (
            settings.vector_retry_attempts if retry_attempts is None else retry_attempts
        )
        self._retry_delay = (
            settings.vector_retry_delay_ms / 1000 if retry_delay is None else retry_delay
        )
        self._batch_pause = (
            settings.vector_batch_pause_ms / 1000 if batch_pause is None else batch_pause
        )
        self._sleep = sleep

    # ------------------------------------------------------------------
    # Backend primitives
    # ------------------------------------------------------------------

    @abstractmethod
    async def _upsert_batch(self, records: list[VectorRecord]) -> None:
        """Write records in one network call. Raise on any failure."""

    @abstractmethod
    async def _query(self, vector: list[float], top_k: int, filter: dict) -> list[QueryResult]:
        """Similarity search restricted by a metadata filter."""

    @abstractmethod
    async def _delete_where(self, filter: dict) -> None:
        """Delete every record matching a metadata filter."""

    async def count(self, bot_id: str | None = None) -> int:
        """Optional stats hook; backends that cannot count return -1."""
        return -1

    # ------------------------------------------------------------------
    # Filters
    # ------------------------------------------------------------------

    @staticmethod
    def _bot_filter(bot_id: str, extra: dict | None = None) -> dict:
        """
        Metadata filter that ALWAYS scopes to one bot.
        Caller-supplied filters are ANDed in.
        """
        base = {"bot_id": {"$eq": str(bot_id)}}
        if extra:
            return {"$and": [base, extra]}
        return base

    # ------------------------------------------------------------------
    # Upsert cascade
    # ------------------------------------------------------------------

    async def _with_retry(self, label: str, call: Callable[[], Awaitable[None]]) -> bool:
        """Run `call` with the fixed-delay retry budget. True on success."""
        for attempt in range(self._retry_attempts + 1):
            try:
                await call()
                return True
            except Exception as exc:
                if attempt >= self._retry_attempts:
                    logger.error(
                        "Vector %s failed after %d attempts: %s",
                        label, attempt + 1, exc,
                    )
                    return False
                logger.warning(
                    "Vector %s failed, retrying | attempt=%d delay=%.2fs error=%s",
                    label, attempt + 1, self._retry_delay, exc,
                )
                await self._sleep(self._retry_delay)
        return False

    async def upsert(self, records: list[VectorRecord]) -> UpsertOutcome:
        """
        Batched upsert with retry and per-record fallback.
        Returns the ids that were and were not stored; never raises for
        backend errors.
        """
        outcome = UpsertOutcome()
        if not records:
            return outcome

        batches = [
            records[i : i + self._batch_size]
            for i in range(0, len(records), self._batch_size)
        ]

        for batch_idx, batch in enumerate(batches):
            label = f"upsert batch {batch_idx + 1}/{len(batches)}"
            ok = await self._with_retry(label, lambda b=batch: self._upsert_batch(b))

            if ok:
                outcome.stored_ids.extend(r.id for r in batch)
            else:
                logger.warning(
                    "Falling back to per-record upsert | batch=%d size=%d",
                    batch_idx + 1, len(batch),
                )
                for rec in batch:
                    stored = await self._with_retry(
                        f"upsert record {rec.id}",
                        lambda r=rec: self._upsert_batch([r]),
                    )
                    (outcome.stored_ids if stored else outcome.failed_ids).append(rec.id)

            if batch_idx < len(batches) - 1:
                await self._sleep(self._batch_pause)

        if outcome.failed_ids:
            logger.error(
                "Vector upsert incomplete | stored=%d failed=%d failed_ids=%s",
                len(outcome.stored_ids), len(outcome.failed_ids), outcome.failed_ids,
            )
        else:
            logger.info("Vector upsert ok | stored=%d batches=%d", len(outcome.stored_ids), len(batches))
        return outcome

    # ------------------------------------------------------------------
    # Query (degraded mode on backend failure)
    # ------------------------------------------------------------------

    async def query(
        self,
        vector: list[float],
        bot_id: str,
        top_k:  int = 5,
        filter: dict | None = None,
    ) -> QueryOutcome:
        """Nearest-neighbour search within one bot's records ONLY."""
        if not bot_id:
            raise ValueError("bot_id is required for vector queries")
        try:
            matches = await self._query(vector, top_k, self._bot_filter(str(bot_id), filter))
        except Exception as exc:
            logger.warning("Vector query degraded | bot=%s error=%s", bot_id, exc)
            return QueryOutcome.unavailable(exc)

        # Backends are trusted to filter, but never hand back foreign records
        scoped = [m for m in matches if m.metadata.get("bot_id") == str(bot_id)]
        if len(scoped) != len(matches):
            logger.error(
                "Vector query returned foreign records | bot=%s dropped=%d",
                bot_id, len(matches) - len(scoped),
            )
        logger.debug("Vector query | bot=%s top_k=%d results=%d", bot_id, top_k, len(scoped))
        return QueryOutcome.from_matches(scoped)

    # ------------------------------------------------------------------
    # Deletes (propagate failures)
    # ------------------------------------------------------------------

    async def delete_by_document(self, document_id: str) -> None:
        """Delete ALL records of one document; used before reprocessing."""
        await self._delete({"document_id": {"$eq": str(document_id)}}, f"doc={document_id}")

    async def delete_by_bot(self, bot_id: str) -> None:
        """Delete ALL records owned by a bot."""
        await self._delete({"bot_id": {"$eq": str(bot_id)}}, f"bot={bot_id}")

    async def _delete(self, filter: dict, label: str) -> None:
        try:
            await self._delete_where(filter)
        except Exception as exc:
            logger.error("Vector delete failed | %s error=%s", label, exc)
            raise VectorStoreError(f"Vector delete failed for {label}: {exc}") from exc
        logger.info("Vector delete | %s", label)
