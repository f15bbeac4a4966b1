"""
Pinecone Vector Store

Isolation model:
  One shared index. Every record carries bot_id in its metadata and every
  query/delete is filtered on it (see VectorStoreBase._bot_filter).

The Pinecone SDK is synchronous; calls are pushed to the default executor
so a slow upsert does not stall other jobs on the worker's event loop.
"""

from __future__ import annotations

import asyncio
import logging
from functools import partial
from typing import Any

from pinecone import Pinecone, ServerlessSpec
from pinecone.exceptions import PineconeException

from knowledge_pipeline.core.config import settings
from knowledge_pipeline.vectorstore.base import QueryResult, VectorRecord, VectorStoreBase, VectorStoreError

logger = logging.getLogger(__name__)

# Max ids fetched per round when deleting through the query fallback
_QUERY_DELETE_PAGE = 1000
# Rounds before the fallback gives up; bounds a delete at 50k records
_QUERY_DELETE_MAX_ROUNDS = 50


def _field(obj: Any, name: str, default: Any = None) -> Any:
    """Read a field from either an SDK model or a plain dict."""
    if isinstance(obj, dict):
        return obj.get(name, default)
    return getattr(obj, name, default)


class PineconeVectorStore(VectorStoreBase):
    """Pinecone backend. `index` may be injected (tests, pooled clients)."""

    def __init__(self, index: Any | None = None, namespace: str = "", **kwargs: Any) -> None:
        super().__init__(**kwargs)
        if index is None:
            pc = Pinecone(api_key=settings.pinecone_api_key)
            index = pc.Index(settings.pinecone_index_name)
        self._index = index
        self._namespace = namespace

    async def _run(self, fn, **kwargs: Any) -> Any:
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(None, partial(fn, **kwargs))

    # ------------------------------------------------------------------
    # Primitives
    # ------------------------------------------------------------------

    async def _upsert_batch(self, records: list[VectorRecord]) -> None:
        vectors = [
            {"id": rec.id, "values": rec.vector, "metadata": rec.metadata}
            for rec in records
        ]
        await self._run(self._index.upsert, vectors=vectors, namespace=self._namespace)
        logger.debug("Pinecone upsert | batch=%d", len(vectors))

    async def _query(self, vector: list[float], top_k: int, filter: dict) -> list[QueryResult]:
        resp = await self._run(
            self._index.query,
            vector=vector,
            top_k=min(top_k, 100),
            namespace=self._namespace,
            filter=filter,
            include_metadata=True,
            include_values=False,   # values not needed for retrieval
        )
        results = []
        for match in _field(resp, "matches", []) or []:
            meta = _field(match, "metadata", {}) or {}
            results.append(QueryResult(
                id=_field(match, "id"),
                score=float(_field(match, "score", 0.0)),
                metadata=meta,
                text=meta.get("text", ""),
            ))
        return results

    async def _delete_where(self, filter: dict) -> None:
        """
        Delete by metadata filter.
        Falls back to query-then-delete where the index type rejects
        filtered deletes.
        """
        try:
            await self._run(self._index.delete, filter=filter, namespace=self._namespace)
        except PineconeException as exc:
            logger.warning("Metadata delete unavailable, using query fallback: %s", exc)
            await self._query_delete(filter)

    async def _query_delete(self, filter: dict) -> None:
        """
        Page through matches of `filter` and delete them by id. Reads are
        eventually consistent, so ids already deleted may come back; a round
        with nothing new ends the delete.
        """
        # Any non-zero vector; a zero vector has no cosine similarity
        probe = [1.0] * settings.embedding_dimensions
        deleted: set[str] = set()
        for _ in range(_QUERY_DELETE_MAX_ROUNDS):
            resp = await self._run(
                self._index.query,
                vector=probe,
                top_k=_QUERY_DELETE_PAGE,
                namespace=self._namespace,
                filter=filter,
                include_metadata=False,
                include_values=False,
            )
            ids = [_field(m, "id") for m in _field(resp, "matches", []) or []]
            fresh = [i for i in ids if i not in deleted]
            if not fresh:
                return
            await self._run(self._index.delete, ids=fresh, namespace=self._namespace)
            deleted.update(fresh)
            logger.info("Pinecone fallback delete | count=%d total=%d", len(fresh), len(deleted))
        raise VectorStoreError(
            f"Fallback delete still finding records after {_QUERY_DELETE_MAX_ROUNDS} rounds "
            f"({len(deleted)} deleted)"
        )

    async def count(self, bot_id: str | None = None) -> int:
        stats = await self._run(self._index.describe_index_stats)
        namespaces = _field(stats, "namespaces", {}) or {}
        ns = namespaces.get(self._namespace, {})
        return int(_field(ns, "vector_count", 0))

    # ------------------------------------------------------------------
    # Class-level: index provisioning (run once at platform setup)
    # ------------------------------------------------------------------

    @classmethod
    def ensure_index(cls) -> None:
        """
        Create the shared Pinecone index if it doesn't exist.
        Called at application startup, not per-request.
        """
        pc = Pinecone(api_key=settings.pinecone_api_key)
        existing = [i.name for i in pc.list_indexes()]
        if settings.pinecone_index_name in existing:
            logger.info("Pinecone index '%s' already exists", settings.pinecone_index_name)
            return

        pc.create_index(
            name=settings.pinecone_index_name,
            dimension=settings.embedding_dimensions,
            metric="cosine",
            spec=ServerlessSpec(cloud="aws", region=settings.aws_region),
        )
        logger.info("Pinecone index '%s' created", settings.pinecone_index_name)
