"""
In-process vector store for local development and tests.

Behaves like a remote backend where it matters to the pipeline:
  - a batch is written atomically; one malformed record rejects the batch
  - an index created without a dimension adopts the one its first write
    mostly agrees on and rejects other lengths from then on
  - filters support {"field": {"$eq": v}} and {"$and": [...]}
  - scores are cosine similarity
"""

from __future__ import annotations

import logging
import math
import threading
from collections import Counter
from contextvars import ContextVar
from typing import Any

from knowledge_pipeline.vectorstore.base import (
    REQUIRED_METADATA,
    QueryResult,
    UpsertOutcome,
    VectorRecord,
    VectorStoreBase,
)

logger = logging.getLogger(__name__)

# Dimension an empty index expects for the upsert in progress
_write_dimension: ContextVar[int | None] = ContextVar("write_dimension", default=None)


def _matches(metadata: dict, filter: dict) -> bool:
    if "$and" in filter:
        return all(_matches(metadata, clause) for clause in filter["$and"])
    for key, cond in filter.items():
        expected = cond.get("$eq") if isinstance(cond, dict) else cond
        if metadata.get(key) != expected:
            return False
    return True


def _cosine(a: list[float], b: list[float]) -> float:
    dot = sum(x * y for x, y in zip(a, b))
    norm = math.sqrt(sum(x * x for x in a)) * math.sqrt(sum(y * y for y in b))
    return dot / norm if norm else 0.0


class InMemoryVectorStore(VectorStoreBase):

    def __init__(self, dimension: int | None = None, **kwargs: Any) -> None:
        super().__init__(**kwargs)
        self._dimension = dimension
        self._records: dict[str, VectorRecord] = {}
        self._lock = threading.Lock()

    @staticmethod
    def _validate(rec: VectorRecord, dimension: int | None) -> None:
        missing = [k for k in REQUIRED_METADATA if k not in rec.metadata]
        if missing:
            raise ValueError(f"Record {rec.id} missing metadata {missing}")
        if not rec.vector or any(not isinstance(v, (int, float)) for v in rec.vector):
            raise ValueError(f"Record {rec.id} has an invalid vector")
        if dimension is not None and len(rec.vector) != dimension:
            raise ValueError(
                f"Record {rec.id} dimension {len(rec.vector)} != index dimension {dimension}"
            )

    async def upsert(self, records: list[VectorRecord]) -> UpsertOutcome:
        with self._lock:
            dimension = self._dimension
        if dimension is None and records:
            # An empty index adopts the length most of its first write agrees on
            lengths = Counter(len(r.vector) for r in records if r.vector)
            if lengths:
                token = _write_dimension.set(lengths.most_common(1)[0][0])
                try:
                    return await super().upsert(records)
                finally:
                    _write_dimension.reset(token)
        return await super().upsert(records)

    async def _upsert_batch(self, records: list[VectorRecord]) -> None:
        with self._lock:
            dimension = self._dimension or _write_dimension.get()
            for rec in records:
                self._validate(rec, dimension)
            for rec in records:
                self._records[rec.id] = rec
            # Fixed only once a write has gone through
            if self._dimension is None:
                self._dimension = dimension or len(records[0].vector)

    async def _query(self, vector: list[float], top_k: int, filter: dict) -> list[QueryResult]:
        with self._lock:
            candidates = [r for r in self._records.values() if _matches(r.metadata, filter)]
        scored = sorted(
            (QueryResult(id=r.id, score=_cosine(vector, r.vector), metadata=dict(r.metadata))
             for r in candidates),
            key=lambda q: q.score,
            reverse=True,
        )
        return scored[:top_k]

    async def _delete_where(self, filter: dict) -> None:
        with self._lock:
            doomed = [rid for rid, r in self._records.items() if _matches(r.metadata, filter)]
            for rid in doomed:
                del self._records[rid]
        logger.debug("Memory delete | count=%d", len(doomed))

    async def count(self, bot_id: str | None = None) -> int:
        with self._lock:
            if bot_id is None:
                return len(self._records)
            return sum(1 for r in self._records.values() if r.metadata.get("bot_id") == str(bot_id))

    def records(self) -> list[VectorRecord]:
        """Snapshot of stored records (diagnostics / tests)."""
        with self._lock:
            return list(self._records.values())
