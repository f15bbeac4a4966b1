"""
Document Repository

All relational reads and writes made by the worker pool, the orchestrator
and the services go through this class. Each method runs in its own short
transaction obtained from `session_scope`, so a worker never holds a
connection open across network calls to the embedding model or vector store.
"""

from __future__ import annotations

import logging
import uuid
from datetime import datetime
from typing import Any, AsyncContextManager, Callable, Sequence

from sqlalchemy import and_, delete, func, or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from knowledge_pipeline.models.documents import Chunk, Document
from knowledge_pipeline.schemas.documents import ChunkStatus, DocumentStatus

logger = logging.getLogger(__name__)

SessionScope = Callable[[], AsyncContextManager[AsyncSession]]


class DocumentRepository:
    """Async data access for documents and chunks."""

    def __init__(self, session_scope: SessionScope | None = None) -> None:
        if session_scope is None:
            from knowledge_pipeline.db.session import get_session
            session_scope = get_session
        self._scope = session_scope

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    async def get(self, document_id: uuid.UUID) -> Document | None:
        async with self._scope() as db:
            result = await db.execute(select(Document).where(Document.id == document_id))
            return result.scalars().first()

    async def status_counts(self) -> dict[str, int]:
        async with self._scope() as db:
            result = await db.execute(
                select(Document.status, func.count()).group_by(Document.status)
            )
            return {status: count for status, count in result.all()}

    async def find_stuck(self, cutoff: datetime, limit: int = 50) -> Sequence[Document]:
        """Documents in `processing` whose start time is older than `cutoff`."""
        async with self._scope() as db:
            result = await db.execute(
                select(Document)
                .where(
                    Document.status == DocumentStatus.PROCESSING.value,
                    Document.processing_started_at < cutoff,
                )
                .order_by(Document.processing_started_at)
                .limit(limit)
            )
            return result.scalars().all()

    async def find_recent_errors(self, limit: int = 10) -> Sequence[Document]:
        async with self._scope() as db:
            result = await db.execute(
                select(Document)
                .where(Document.status == DocumentStatus.ERROR.value)
                .order_by(Document.updated_at.desc())
                .limit(limit)
            )
            return result.scalars().all()

    async def find_sweep_candidates(
        self,
        stale_cutoff: datetime,
        max_retries:  int,
        limit:        int,
    ) -> Sequence[Document]:
        """
        Oldest-first documents that need processing:
          - never processed (uploaded) or queued (pending)
          - stuck in processing past the staleness cutoff
          - errored with retries left
        """
        async with self._scope() as db:
            result = await db.execute(
                select(Document)
                .where(
                    or_(
                        Document.status.in_((DocumentStatus.UPLOADED.value, DocumentStatus.PENDING.value)),
                        and_(
                            Document.status == DocumentStatus.PROCESSING.value,
                            Document.processing_started_at < stale_cutoff,
                        ),
                        and_(
                            Document.status == DocumentStatus.ERROR.value,
                            Document.retry_count < max_retries,
                        ),
                    )
                )
                .order_by(Document.created_at)
                .limit(limit)
            )
            return result.scalars().all()

    # ------------------------------------------------------------------
    # Document writes
    # ------------------------------------------------------------------

    async def update_document(self, document_id: uuid.UUID, **values: Any) -> None:
        """Apply a partial update to one document row."""
        if "status" in values and isinstance(values["status"], DocumentStatus):
            values["status"] = values["status"].value
        async with self._scope() as db:
            await db.execute(
                update(Document).where(Document.id == document_id).values(**values)
            )
        logger.debug("Document updated | doc=%s fields=%s", document_id, sorted(values))

    async def set_status(
        self,
        document_id:   uuid.UUID,
        status:        DocumentStatus,
        error_message: str | None = None,
        **extra: Any,
    ) -> None:
        await self.update_document(
            document_id, status=status, error_message=error_message, **extra,
        )

    async def delete_document(self, document_id: uuid.UUID) -> None:
        """Delete the document row; chunk rows cascade."""
        async with self._scope() as db:
            await db.execute(delete(Chunk).where(Chunk.document_id == document_id))
            await db.execute(delete(Document).where(Document.id == document_id))
        logger.info("Document deleted | doc=%s", document_id)

    # ------------------------------------------------------------------
    # Chunk writes
    # ------------------------------------------------------------------

    async def delete_chunks(self, document_id: uuid.UUID) -> None:
        async with self._scope() as db:
            await db.execute(delete(Chunk).where(Chunk.document_id == document_id))

    async def insert_chunks(self, chunks: list[Chunk]) -> None:
        async with self._scope() as db:
            db.add_all(chunks)

    async def set_chunk_status(self, chunk_ids: list[uuid.UUID], status: ChunkStatus) -> None:
        if not chunk_ids:
            return
        async with self._scope() as db:
            await db.execute(
                update(Chunk).where(Chunk.id.in_(chunk_ids)).values(status=status.value)
            )
