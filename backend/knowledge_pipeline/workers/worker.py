"""
Document Worker

Drives one job through the document state machine:

   10%  acquire a pooled vector-store client
        status → processing, start time, retry_count = attempt - 1
   20%  DocumentProcessor.process(document)      (sets completed / error)
        heartbeat every `job_heartbeat_seconds` while it runs
   90%  re-read status; attach processing metadata, status untouched
  100%  JobResult(success=True, ...)

Any exception is caught here: the document is set to `error` with the
message and attempt count, and a failed JobResult is returned. Whether
the job is attempted again is the queue's decision, not the worker's.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
import os
import socket
import time
import uuid
from dataclasses import asdict, dataclass
from typing import Any, AsyncIterator, Callable, Protocol

from knowledge_pipeline.core.config import settings
from knowledge_pipeline.db.repository import DocumentRepository
from knowledge_pipeline.processing.orchestrator import DocumentRef, ProcessOutcome
from knowledge_pipeline.schemas.documents import DocumentStatus
from knowledge_pipeline.services.lifecycle import is_stale, utcnow
from knowledge_pipeline.vectorstore.base import VectorStoreBase
from knowledge_pipeline.workers.pool import ConnectionPool
from knowledge_pipeline.workers.queue import JobPayload

logger = logging.getLogger(__name__)

ProgressCallback = Callable[[int], None]
HeartbeatCallback = Callable[[], None]


class Processor(Protocol):
    async def process(self, document: DocumentRef) -> ProcessOutcome: ...


@dataclass
class JobResult:
    success:        bool
    document_id:    str
    chunks_created: int | None = None
    error:          str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {k: v for k, v in asdict(self).items() if v is not None}


def default_worker_id() -> str:
    return f"{socket.gethostname()}:{os.getpid()}"


class DocumentWorker:

    def __init__(
        self,
        repository:         DocumentRepository,
        processor_factory:  Callable[[VectorStoreBase], Processor],
        pool:               ConnectionPool[VectorStoreBase],
        worker_id:          str | None = None,
        heartbeat_interval: float | None = None,
    ) -> None:
        self._repo = repository
        self._processor_factory = processor_factory
        self._pool = pool
        self.worker_id = worker_id or default_worker_id()
        self._heartbeat_interval = heartbeat_interval or settings.job_heartbeat_seconds

    async def process(
        self,
        job_id:    str,
        payload:   JobPayload,
        attempt:   int,
        progress:  ProgressCallback | None = None,
        heartbeat: HeartbeatCallback | None = None,
    ) -> JobResult:
        """Run one attempt of a job. Never raises."""
        report = progress or (lambda _p: None)
        started = time.monotonic()
        doc_id = uuid.UUID(payload.document_id)
        logger.info("Job start | job=%s doc=%s attempt=%d", job_id, doc_id, attempt)

        try:
            report(10)
            with self._pool.lease() as vector_store:
                doc = await self._repo.get(doc_id)
                if doc is None:
                    raise LookupError(f"Document {doc_id} not found")

                if doc.status == DocumentStatus.PROCESSING.value and not is_stale(
                    doc.status, doc.processing_started_at
                ):
                    # Two live jobs for one document are tolerated; see DESIGN.md
                    logger.warning(
                        "Document already processing, continuing | doc=%s job=%s", doc_id, job_id,
                    )

                ref = DocumentRef.from_row(doc)
                await self._repo.update_document(
                    doc_id,
                    status=DocumentStatus.PROCESSING,
                    processing_started_at=utcnow(),
                    retry_count=max(0, attempt - 1),
                )

                report(20)
                processor = self._processor_factory(vector_store)
                async with self._keep_alive(heartbeat):
                    outcome = await processor.process(ref)

            report(90)
            current = await self._repo.get(doc_id)
            final_status = current.status if current is not None else None
            logger.info("Document final status | doc=%s status=%s", doc_id, final_status)

            # Source metadata written by fetch_source (title, excerpt) is kept
            previous = (current.processing_metadata or {}) if current is not None else {}
            await self._repo.update_document(
                doc_id,
                processing_completed_at=utcnow(),
                processing_metadata={
                    **previous,
                    "processing_time_ms": _elapsed_ms(started),
                    "chunks_created":     outcome.chunks_created,
                    "job_id":             job_id,
                    "worker_id":          self.worker_id,
                    "final_status":       final_status,
                },
            )

            report(100)
            logger.info(
                "Job complete | job=%s doc=%s chunks=%d elapsed_ms=%d",
                job_id, doc_id, outcome.chunks_created, _elapsed_ms(started),
            )
            return JobResult(success=True, document_id=str(doc_id), chunks_created=outcome.chunks_created)

        except Exception as exc:
            message = str(exc) or type(exc).__name__
            logger.error("Job failed | job=%s doc=%s attempt=%d error=%s", job_id, doc_id, attempt, message)
            try:
                await self._repo.update_document(
                    doc_id,
                    status=DocumentStatus.ERROR,
                    error_message=message,
                    retry_count=attempt,
                    processing_metadata={
                        "processing_time_ms": _elapsed_ms(started),
                        "job_id":             job_id,
                        "worker_id":          self.worker_id,
                        "error":              message,
                        "attempts":           attempt,
                    },
                )
            except Exception:
                logger.exception("Could not record job failure | doc=%s", doc_id)
            return JobResult(success=False, document_id=str(doc_id), error=message)

    @contextlib.asynccontextmanager
    async def _keep_alive(self, heartbeat: HeartbeatCallback | None) -> AsyncIterator[None]:
        """Beat on a timer so a long processor run is not taken for a stalled job."""
        if heartbeat is None:
            yield
            return

        async def beat_forever() -> None:
            loop = asyncio.get_running_loop()
            while True:
                await asyncio.sleep(self._heartbeat_interval)
                try:
                    await loop.run_in_executor(None, heartbeat)
                except Exception as exc:
                    logger.warning("Heartbeat failed | error=%s", exc)

        beats = asyncio.create_task(beat_forever())
        try:
            yield
        finally:
            beats.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await beats


def _elapsed_ms(started: float) -> int:
    return int((time.monotonic() - started) * 1000)
