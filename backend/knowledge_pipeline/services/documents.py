"""
Document Service

Operations behind the HTTP layer and the periodic sweeper:

  request_processing  claim check + stale repair + enqueue
  get_status          status poll; repairs a stale `processing` document
  fetch_source        extract a webpage / video source ahead of processing
  delete_document     vectors first, then chunk rows and the document
  delete_bot_vectors  bulk vector delete for one bot
  search              bot-scoped similarity search (degraded flag on outage)
  queue_status        queue metrics + Redis reachability
  overview            operator summary with recommendations
  sweep_pending       batch re-submission used by the beat task

Stale repair:
  A document in `processing` whose start time is older than the staleness
  threshold is presumed abandoned. Any processing request or status poll
  that sees it resets it to `pending` and enqueues a new job. A live
  `processing` document is never touched; requests for it are refused
  with DocumentBusyError.
"""

from __future__ import annotations

import asyncio
import logging
import uuid
from functools import partial
from typing import Any, Callable

from knowledge_pipeline.core.config import settings
from knowledge_pipeline.db.repository import DocumentRepository
from knowledge_pipeline.models.documents import Document
from knowledge_pipeline.processing.embeddings import EmbeddingService
from knowledge_pipeline.schemas.documents import (
    DeleteResponse,
    DocumentOverviewResponse,
    DocumentStatus,
    DocumentStatusResponse,
    ProcessRequestResponse,
    QueueMetrics,
    QueueStatusResponse,
    SearchMatch,
    SearchResponse,
    SourceType,
    StuckDocument,
)
from knowledge_pipeline.scraping import ContentExtractor
from knowledge_pipeline.services.lifecycle import (
    ensure_transition,
    is_stale,
    processing_age,
    stale_threshold,
    utcnow,
)
from knowledge_pipeline.storage.s3 import S3StorageService, StorageError, extracted_text_key
from knowledge_pipeline.vectorstore.base import VectorStoreBase
from knowledge_pipeline.vectorstore.factory import get_vector_store
from knowledge_pipeline.workers.queue import JobPayload, JobQueue, JobQueueError, JobState

logger = logging.getLogger(__name__)


class DocumentNotFoundError(LookupError):
    def __init__(self, document_id: uuid.UUID) -> None:
        super().__init__(f"Document {document_id} does not exist")
        self.document_id = document_id


class DocumentBusyError(Exception):
    """The document is being processed and is not yet stale."""

    def __init__(self, document_id: uuid.UUID, minutes: int) -> None:
        super().__init__(f"Document {document_id} is already processing ({minutes} min)")
        self.document_id = document_id
        self.minutes = minutes


class SourceNotFetchableError(ValueError):
    """fetch_source was called for an uploaded file."""

    def __init__(self, file_type: str) -> None:
        super().__init__(f"{file_type} documents are read from storage, not fetched")
        self.file_type = file_type


class DocumentService:

    def __init__(
        self,
        repository:   DocumentRepository,
        queue:        JobQueue | None = None,
        vector_store: VectorStoreBase | None = None,
        embeddings:   EmbeddingService | None = None,
        storage:      S3StorageService | None = None,
        extractor_factory: Callable[[], ContentExtractor] = ContentExtractor,
    ) -> None:
        self._repo = repository
        self._queue = queue
        self._store = vector_store
        self._embeddings = embeddings
        self._storage = storage
        self._extractor_factory = extractor_factory

    # Collaborators are built on first use so read-only calls need no credentials

    @property
    def queue(self) -> JobQueue:
        if self._queue is None:
            self._queue = JobQueue()
        return self._queue

    @property
    def vector_store(self) -> VectorStoreBase:
        if self._store is None:
            self._store = get_vector_store()
        return self._store

    @property
    def embeddings(self) -> EmbeddingService:
        if self._embeddings is None:
            self._embeddings = EmbeddingService()
        return self._embeddings

    @property
    def storage(self) -> S3StorageService:
        if self._storage is None:
            self._storage = S3StorageService()
        return self._storage

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    @staticmethod
    async def _blocking(fn, *args: Any, **kwargs: Any) -> Any:
        """Run a blocking Redis / broker call off the event loop."""
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(None, partial(fn, *args, **kwargs))

    async def _require(self, document_id: uuid.UUID) -> Document:
        doc = await self._repo.get(document_id)
        if doc is None:
            raise DocumentNotFoundError(document_id)
        return doc

    async def _enqueue(self, doc: Document) -> str:
        payload = JobPayload(
            document_id=str(doc.id),
            bot_id=str(doc.bot_id),
            user_id=str(doc.user_id) if doc.user_id else None,
            file_path=doc.file_path,
            file_type=doc.file_type,
            file_name=doc.file_name,
        )
        return await self._blocking(self.queue.enqueue, payload)

    async def _reset_to_pending(self, doc: Document, **extra: Any) -> None:
        ensure_transition(doc.status, DocumentStatus.PENDING)
        await self._repo.set_status(doc.id, DocumentStatus.PENDING, **extra)

    # ------------------------------------------------------------------
    # Processing requests
    # ------------------------------------------------------------------

    async def request_processing(
        self,
        document_id:   uuid.UUID,
        force:         bool = False,
        reset_retries: bool = True,
    ) -> ProcessRequestResponse:
        """
        Queue a document for processing.

        completed          → no-op unless `force` (explicit reprocessing)
        processing, live   → DocumentBusyError
        processing, stale  → reset to pending, enqueue, was_stale=True
        fetched            → enqueue; the status marks text already in storage
        anything else      → moved to pending, then enqueued
        """
        doc = await self._require(document_id)
        status = DocumentStatus(doc.status)
        was_stale = False
        retries = {"retry_count": 0} if reset_retries else {}

        if status is DocumentStatus.COMPLETED and not force:
            return ProcessRequestResponse(
                document_id=doc.id,
                status=status,
                message="Document already processed.",
            )

        if status is DocumentStatus.PROCESSING:
            if not is_stale(status, doc.processing_started_at):
                age = processing_age(doc.processing_started_at)
                raise DocumentBusyError(doc.id, int(age.total_seconds() // 60) if age else 0)
            was_stale = True
            logger.warning(
                "Resetting stale document | doc=%s started=%s", doc.id, doc.processing_started_at,
            )

        if status in (DocumentStatus.FETCHED, DocumentStatus.PENDING):
            if retries:
                await self._repo.update_document(doc.id, **retries)
        else:
            # Leaves `uploaded` so the sweeper does not publish a second job
            await self._reset_to_pending(doc, error_message=None, **retries)
            status = DocumentStatus.PENDING

        job_id = await self._enqueue(doc)
        return ProcessRequestResponse(
            document_id=doc.id,
            status=status,
            job_id=job_id,
            message=(
                "Stale processing run reset; document re-queued."
                if was_stale else "Document queued for processing."
            ),
            was_stale=was_stale,
        )

    async def get_status(self, document_id: uuid.UUID) -> DocumentStatusResponse:
        doc = await self._require(document_id)
        was_stale = False

        if is_stale(doc.status, doc.processing_started_at):
            was_stale = True
            logger.warning("Stale document found on status check | doc=%s", doc.id)
            await self._reset_to_pending(doc, error_message=None)
            try:
                await self._enqueue(doc)
            except JobQueueError as exc:
                # Left pending; the next processing request enqueues it
                logger.error("Re-enqueue after stale reset failed | doc=%s error=%s", doc.id, exc)
            doc = await self._require(document_id)

        progress = 0
        if doc.status == DocumentStatus.COMPLETED.value:
            progress = 100
        elif doc.status in (DocumentStatus.PENDING.value, DocumentStatus.PROCESSING.value):
            try:
                record = await self._blocking(self.queue.store.latest_for_document, str(doc.id))
            except Exception as exc:
                logger.warning("Job progress unavailable | doc=%s error=%s", doc.id, exc)
                record = None
            progress = record.progress if record else 0

        return DocumentStatusResponse(
            document_id=doc.id,
            status=DocumentStatus(doc.status),
            progress=progress,
            chunk_count=doc.chunk_count or 0,
            retry_count=doc.retry_count or 0,
            error_message=doc.error_message,
            processing_started_at=doc.processing_started_at,
            processing_completed_at=doc.processing_completed_at,
            processing_metadata=doc.processing_metadata or {},
            was_stale=was_stale,
        )

    # ------------------------------------------------------------------
    # Remote sources
    # ------------------------------------------------------------------

    async def fetch_source(self, document_id: uuid.UUID) -> DocumentStatusResponse:
        """
        Extract a webpage / video source and store its text so the worker
        can skip the network fetch. Extraction failures set `error`.
        """
        doc = await self._require(document_id)
        source = SourceType(doc.file_type)
        if not source.is_remote:
            raise SourceNotFetchableError(source.value)
        if doc.status != DocumentStatus.FETCHED.value:
            ensure_transition(doc.status, DocumentStatus.FETCHED)

        async with self._extractor_factory() as extractor:
            result = await extractor.extract(doc.file_path, source.value)

        if result.error:
            logger.warning("Source fetch failed | doc=%s error=%s", doc.id, result.error)
            await self._repo.set_status(doc.id, DocumentStatus.ERROR, error_message=result.error)
            return await self.get_status(document_id)

        body = result.text.encode("utf-8")
        await self.storage.put_object(
            extracted_text_key(str(doc.bot_id), str(doc.id)), body, "text/plain; charset=utf-8",
        )
        await self._repo.set_status(
            doc.id,
            DocumentStatus.FETCHED,
            file_size=len(body),
            processing_metadata={
                "title":      result.title,
                "excerpt":    result.excerpt,
                "source_url": result.source_url,
            },
        )
        logger.info("Source fetched | doc=%s chars=%d title=%s", doc.id, len(result.text), result.title)
        return await self.get_status(document_id)

    # ------------------------------------------------------------------
    # Deletion
    # ------------------------------------------------------------------

    async def delete_document(self, document_id: uuid.UUID) -> DeleteResponse:
        """VectorStoreError propagates and leaves the rows in place."""
        doc = await self._require(document_id)
        await self.vector_store.delete_by_document(str(doc.id))
        await self._repo.delete_document(doc.id)

        if SourceType(doc.file_type).is_remote:
            try:
                await self.storage.delete_object(extracted_text_key(str(doc.bot_id), str(doc.id)))
            except StorageError as exc:
                logger.warning("Extracted text not removed | doc=%s error=%s", doc.id, exc)

        return DeleteResponse(document_id=doc.id, bot_id=doc.bot_id)

    async def delete_bot_vectors(self, bot_id: uuid.UUID) -> DeleteResponse:
        await self.vector_store.delete_by_bot(str(bot_id))
        return DeleteResponse(bot_id=bot_id)

    # ------------------------------------------------------------------
    # Retrieval
    # ------------------------------------------------------------------

    async def search(self, bot_id: uuid.UUID, query: str, top_k: int = 5) -> SearchResponse:
        vector = await self.embeddings.embed_query(query)
        outcome = await self.vector_store.query(vector, str(bot_id), top_k=top_k)
        if outcome.degraded:
            logger.warning("Search served without retrieval | bot=%s error=%s", bot_id, outcome.error)
        return SearchResponse(
            bot_id=bot_id,
            degraded=outcome.degraded,
            matches=[
                SearchMatch(
                    id=m.id,
                    score=m.score,
                    text=m.text,
                    document_id=m.metadata.get("document_id"),
                    file_name=m.metadata.get("file_name"),
                )
                for m in outcome.matches
            ],
        )

    # ------------------------------------------------------------------
    # Operator views
    # ------------------------------------------------------------------

    async def _queue_snapshot(self) -> tuple[QueueMetrics, bool]:
        store = self.queue.store
        reachable = await self._blocking(store.ping)
        if not reachable:
            return QueueMetrics(), False
        try:
            return QueueMetrics(**await self._blocking(store.metrics)), True
        except Exception as exc:
            logger.error("Queue metrics unavailable | error=%s", exc)
            return QueueMetrics(), False

    async def queue_status(self) -> QueueStatusResponse:
        metrics, reachable = await self._queue_snapshot()
        degraded = not reachable or metrics.waiting >= settings.queue_degraded_threshold
        return QueueStatusResponse(
            status="degraded" if degraded else "healthy",
            timestamp=utcnow(),
            queue=metrics,
            redis="connected" if reachable else "disconnected",
            thresholds={
                "degraded_waiting": settings.queue_degraded_threshold,
                "backlog_warning":  settings.backlog_warning_threshold,
            },
        )

    async def overview(self) -> DocumentOverviewResponse:
        now = utcnow()
        threshold_minutes = settings.stale_processing_minutes
        counts = await self._repo.status_counts()
        stuck_rows = await self._repo.find_stuck(now - stale_threshold())
        error_rows = await self._repo.find_recent_errors()
        metrics, reachable = await self._queue_snapshot()

        stuck = []
        for doc in stuck_rows:
            age = processing_age(doc.processing_started_at, now)
            stuck.append(StuckDocument(
                document_id=doc.id,
                file_name=doc.file_name,
                processing_started_at=doc.processing_started_at,
                minutes_stuck=int(age.total_seconds() // 60) if age else 0,
            ))

        recent_errors = [
            {
                "document_id":   str(doc.id),
                "file_name":     doc.file_name,
                "error_message": doc.error_message,
                "retry_count":   doc.retry_count,
                "updated_at":    doc.updated_at.isoformat() if doc.updated_at else None,
            }
            for doc in error_rows
        ]

        recommendations: list[str] = []
        if stuck:
            recommendations.append(
                f"{len(stuck)} document(s) have been processing for more than {threshold_minutes} "
                "minutes; they are reset on the next sweep or status check."
            )
        if counts.get(DocumentStatus.ERROR.value, 0):
            recommendations.append(
                f"{counts[DocumentStatus.ERROR.value]} document(s) are in error; "
                "review the messages and request reprocessing."
            )
        if not reachable:
            recommendations.append("Job store is unreachable; check Redis connectivity.")
        elif metrics.waiting > settings.backlog_warning_threshold:
            recommendations.append(
                f"Queue backlog is high ({metrics.waiting} waiting); consider adding workers."
            )
        unprocessed = counts.get(DocumentStatus.UPLOADED.value, 0) + counts.get(DocumentStatus.PENDING.value, 0)
        if unprocessed and not metrics.active:
            recommendations.append("Unprocessed documents are waiting and no job is active; check the workers.")

        return DocumentOverviewResponse(
            timestamp=now,
            status_counts=counts,
            stuck_documents=stuck,
            recent_errors=recent_errors,
            queue=metrics,
            recommendations=recommendations,
        )

    # ------------------------------------------------------------------
    # Sweeper
    # ------------------------------------------------------------------

    async def sweep_pending(self, limit: int | None = None) -> dict[str, int]:
        """
        Re-submit documents that need work: never processed, queued without a
        job, stuck past the staleness threshold, or errored with retries left.
        Oldest first.

        A document whose latest job is still waiting or active already has
        work in flight (including a job sitting out its retry delay) and is
        skipped. Stale `processing` rows are exempt: their job record stays
        active after the worker that held it died.
        """
        candidates = await self._repo.find_sweep_candidates(
            stale_cutoff=utcnow() - stale_threshold(),
            max_retries=settings.max_document_retries,
            limit=limit or settings.sweep_batch_size,
        )
        summary = {"found": len(candidates), "queued": 0, "skipped": 0, "failed": 0}

        for doc in candidates:
            if doc.status != DocumentStatus.PROCESSING.value and await self._has_live_job(doc):
                summary["skipped"] += 1
                continue
            try:
                await self.request_processing(doc.id, reset_retries=False)
                summary["queued"] += 1
            except DocumentBusyError:
                summary["skipped"] += 1
            except JobQueueError as exc:
                summary["failed"] += 1
                logger.error("Sweep enqueue failed | doc=%s error=%s", doc.id, exc)

        if candidates:
            logger.info(
                "Sweep complete | found=%d queued=%d skipped=%d failed=%d",
                summary["found"], summary["queued"], summary["skipped"], summary["failed"],
            )
        return summary

    async def _has_live_job(self, doc: Document) -> bool:
        try:
            record = await self._blocking(self.queue.store.latest_for_document, str(doc.id))
        except Exception as exc:
            # Unknown job state; publishing could duplicate a live job
            logger.warning("Sweep skipped document, job store unavailable | doc=%s error=%s", doc.id, exc)
            return True
        return record is not None and record.state in (JobState.WAITING, JobState.ACTIVE)
