"""
Celery Tasks — Document Processing

Task: process_document
  One attempt of a document job (see DocumentWorker). A failed attempt is
  retried with exponential backoff (2 s, 4 s) until the attempt ceiling;
  then the job is recorded as failed and a `failed` event is published.

Task: sweep_pending_documents
  Beat task (every 60 s). Re-submits up to 10 documents that are
  uploaded or pending, stuck in processing, or errored with retries left,
  skipping any whose latest job is still waiting or active.

Task: health_check
  Liveness probe for the worker fleet.

Lifecycle bookkeeping (JobStore + event stream) hangs off the Celery task
hooks in DocumentTask, so every attempt, retry, success and final failure
is recorded whichever code path the task took.
"""

from __future__ import annotations

import asyncio
import concurrent.futures
import logging
from dataclasses import dataclass
from functools import lru_cache
from typing import Any

from celery import Task
from celery.signals import worker_process_init, worker_process_shutdown, worker_ready, worker_shutdown

from knowledge_pipeline.core.config import settings
from knowledge_pipeline.vectorstore.base import VectorStoreBase
from knowledge_pipeline.vectorstore.factory import get_vector_store
from knowledge_pipeline.workers.celery_app import celery_app
from knowledge_pipeline.workers.events import EventStream, QueueEvent, get_event_stream
from knowledge_pipeline.workers.health import EventLogger, HealthMonitor
from knowledge_pipeline.workers.pool import ConnectionPool
from knowledge_pipeline.workers.queue import JobPayload, JobStore, backoff_delay, get_job_store
from knowledge_pipeline.workers.worker import DocumentWorker

logger = logging.getLogger(__name__)


class JobFailedError(Exception):
    """A worker attempt reported failure; raised so Celery applies the retry policy."""


# ---------------------------------------------------------------------------
# Async task helper
# Run async coroutines inside Celery's synchronous task context.
# ---------------------------------------------------------------------------

def run_async(coro):
    """Execute an async coroutine from a synchronous Celery task."""
    try:
        asyncio.get_running_loop()
    except RuntimeError:
        return asyncio.run(_disposing_engine(coro))
    # Called from inside a running loop (eager mode under an async caller)
    with concurrent.futures.ThreadPoolExecutor(max_workers=1) as pool:
        return pool.submit(asyncio.run, _disposing_engine(coro)).result()


async def _disposing_engine(coro):
    # asyncpg connections belong to the loop that opened them; each task runs its own loop
    from knowledge_pipeline.db.session import engine
    try:
        return await coro
    finally:
        await engine.dispose()


# ---------------------------------------------------------------------------
# Per-process runtime
# ---------------------------------------------------------------------------

@dataclass
class WorkerRuntime:
    store:        JobStore
    events:       EventStream
    pool:         ConnectionPool[VectorStoreBase]
    monitor:      HealthMonitor
    event_logger: EventLogger


@lru_cache(maxsize=1)
def get_runtime() -> WorkerRuntime:
    store = get_job_store()
    events = get_event_stream()
    pool: ConnectionPool[VectorStoreBase] = ConnectionPool(get_vector_store)
    return WorkerRuntime(
        store=store,
        events=events,
        pool=pool,
        monitor=HealthMonitor(store, pool, events),
        event_logger=EventLogger(events),
    )


def build_worker(runtime: WorkerRuntime) -> DocumentWorker:
    from knowledge_pipeline.db.repository import DocumentRepository
    from knowledge_pipeline.processing.orchestrator import DocumentProcessor

    repository = DocumentRepository()
    return DocumentWorker(
        repository=repository,
        processor_factory=lambda store: DocumentProcessor(repository, store),
        pool=runtime.pool,
    )


# ---------------------------------------------------------------------------
# Base task: job bookkeeping on Celery's lifecycle hooks
# ---------------------------------------------------------------------------

class DocumentTask(Task):

    def on_success(self, retval, task_id, args, kwargs):
        runtime = get_runtime()
        runtime.store.mark_completed(task_id, retval)
        runtime.events.publish(QueueEvent.completed(task_id, kwargs.get("document_id", ""), retval))

    def on_retry(self, exc, task_id, args, kwargs, einfo):
        logger.warning(
            "Job retry scheduled | job=%s doc=%s attempt=%d error=%s",
            task_id, kwargs.get("document_id"), self.request.retries + 1, exc,
        )
        get_runtime().store.mark_retrying(task_id, str(exc))

    def on_failure(self, exc, task_id, args, kwargs, einfo):
        runtime = get_runtime()
        runtime.store.mark_failed(task_id, str(exc))
        runtime.events.publish(QueueEvent.failed(task_id, kwargs.get("document_id", ""), str(exc)))


# ---------------------------------------------------------------------------
# Main processing task
# ---------------------------------------------------------------------------

@celery_app.task(
    name="knowledge_pipeline.workers.tasks.process_document",
    base=DocumentTask,
    bind=True,
    max_retries=settings.job_max_attempts - 1,
    acks_late=True,
    reject_on_worker_lost=True,
    soft_time_limit=270,
    time_limit=330,
)
def process_document(
    self: Task,
    *,
    document_id: str,
    bot_id:      str,
    user_id:     str | None,
    file_path:   str,
    file_type:   str,
    file_name:   str,
) -> dict[str, Any]:
    payload = JobPayload(
        document_id=document_id,
        bot_id=bot_id,
        user_id=user_id,
        file_path=file_path,
        file_type=file_type,
        file_name=file_name,
    )
    job_id = self.request.id
    attempt = self.request.retries + 1
    runtime = get_runtime()
    runtime.store.mark_active(job_id, attempt)

    def report(progress: int) -> None:
        runtime.store.heartbeat(job_id, progress)
        runtime.events.publish(QueueEvent.progressed(job_id, document_id, progress))

    def beat() -> None:
        runtime.store.heartbeat(job_id)

    result = run_async(build_worker(runtime).process(job_id, payload, attempt, report, beat))
    if not result.success:
        # Raises JobFailedError itself once max_retries is exhausted
        raise self.retry(
            exc=JobFailedError(result.error or "Unknown error"),
            countdown=backoff_delay(self.request.retries),
        )
    return result.to_dict()


# ---------------------------------------------------------------------------
# Sweeper: runs every 60 seconds via Celery Beat
# ---------------------------------------------------------------------------

@celery_app.task(
    name="knowledge_pipeline.workers.tasks.sweep_pending_documents",
    acks_late=True,
    soft_time_limit=55,
    time_limit=60,
)
def sweep_pending_documents() -> dict[str, int]:
    return run_async(_sweep_pending_documents_async())


async def _sweep_pending_documents_async() -> dict[str, int]:
    from knowledge_pipeline.db.repository import DocumentRepository
    from knowledge_pipeline.services.documents import DocumentService

    return await DocumentService(DocumentRepository()).sweep_pending()


# ---------------------------------------------------------------------------
# Health check task
# ---------------------------------------------------------------------------

@celery_app.task(name="knowledge_pipeline.workers.tasks.health_check")
def health_check() -> dict[str, Any]:
    runtime = get_runtime()
    return {
        "status": "ok" if runtime.store.ping() else "degraded",
        "worker": "healthy",
        "pool":   runtime.pool.stats(),
    }


# ---------------------------------------------------------------------------
# Worker process lifecycle
# ---------------------------------------------------------------------------

def _forks_job_processes(consumer: Any) -> bool:
    from celery.concurrency.prefork import TaskPool
    return isinstance(getattr(consumer, "pool", None), TaskPool)


@worker_ready.connect
def on_worker_ready(sender=None, **_):
    runtime = get_runtime()
    logger.info("Document worker ready | concurrency=%d", settings.document_worker_concurrency)
    if _forks_job_processes(sender):
        # Jobs and their pools live in the children; this process only watches for stalls
        runtime.monitor = HealthMonitor(runtime.store, None, runtime.events)
    runtime.monitor.start()
    runtime.event_logger.start()


@worker_process_init.connect
def on_worker_process_init(**_):
    # A forked child must not share the parent's clients
    get_runtime.cache_clear()
    runtime = get_runtime()
    runtime.monitor = HealthMonitor(runtime.store, runtime.pool, runtime.events, watch_stalls=False)
    runtime.monitor.start()


@worker_process_shutdown.connect
def on_worker_process_shutdown(**_):
    runtime = get_runtime()
    runtime.monitor.stop()
    runtime.pool.clear()
    runtime.events.close()
    runtime.store.close()


@worker_shutdown.connect
def on_worker_shutdown(**_):
    # Celery stops consuming before this fires; unacked jobs are redelivered
    logger.info("Document worker shutting down")
    runtime = get_runtime()
    runtime.monitor.stop()
    runtime.event_logger.stop()
    runtime.pool.clear()
    runtime.events.close()
    runtime.store.close()
