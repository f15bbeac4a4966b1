"""
Document Processing Queue

Jobs travel through Celery (broker = RabbitMQ, queue `documents.ingest`).
Celery owns delivery, acknowledgement and redelivery; this module adds
what the broker does not keep for us:

  JobPayload   the job's data, passed as JSON task kwargs
  JobPriority  two tiers: pdf jobs ahead of everything else
  JobStore     per-job bookkeeping in Redis (state, progress, attempts,
               heartbeats) plus queue metrics and stall detection
  JobQueue     enqueue(payload, priority) -> job id

Retry policy (applied by the Celery task):
  attempts   3 in total
  backoff    exponential, 2 s → 4 s
  retention  last 100 completed / 500 failed job records

Redis layout (prefix `document-processing:`):
  job:<id>          hash   state, progress, attempts, document_id, error, ...
  doc:<doc_id>      string latest job id for the document
  waiting           int    jobs enqueued or scheduled for retry
  active            zset   job id → last heartbeat (epoch seconds)
  completed/failed  list   newest first, trimmed to the retention limits
"""

from __future__ import annotations

import json
import logging
import threading
import time
import uuid
from abc import ABC, abstractmethod
from collections import deque
from dataclasses import asdict, dataclass
from enum import IntEnum
from typing import Any

import redis

from knowledge_pipeline.core.config import settings
from knowledge_pipeline.schemas.documents import SourceType

logger = logging.getLogger(__name__)

KEY_PREFIX = "document-processing"
JOB_RECORD_TTL_SECONDS = 7 * 24 * 3600


class JobQueueError(Exception):
    """The broker rejected or could not receive a job."""


class JobPriority(IntEnum):
    # AMQP semantics: larger value is consumed first (queue x-max-priority=10)
    NORMAL = 0
    HIGH   = 9

    @classmethod
    def for_file_type(cls, file_type: str) -> "JobPriority":
        """PDFs are the largest, slowest sources; start them first."""
        return cls.HIGH if file_type == SourceType.PDF.value else cls.NORMAL


class JobState:
    WAITING   = "waiting"
    ACTIVE    = "active"
    COMPLETED = "completed"
    FAILED    = "failed"


@dataclass
class JobPayload:
    document_id: str
    bot_id:      str
    user_id:     str | None
    file_path:   str
    file_type:   str
    file_name:   str

    def to_task_kwargs(self) -> dict[str, Any]:
        return asdict(self)


@dataclass
class JobRecord:
    job_id:      str
    document_id: str
    state:       str
    progress:    int = 0
    attempts:    int = 0
    error:       str | None = None
    result:      dict[str, Any] | None = None
    enqueued_at: float | None = None
    finished_at: float | None = None


def backoff_delay(retries: int) -> float:
    """Seconds to wait before the next attempt; `retries` counts prior retries."""
    return settings.job_backoff_initial_seconds * (2 ** retries)


# ---------------------------------------------------------------------------
# Bookkeeping store
# ---------------------------------------------------------------------------

class JobStore(ABC):
    """State of every job the queue has seen, independent of the broker."""

    def __init__(self, keep_completed: int | None = None, keep_failed: int | None = None) -> None:
        self._keep_completed = keep_completed or settings.job_keep_completed
        self._keep_failed = keep_failed or settings.job_keep_failed

    @abstractmethod
    def record_enqueued(self, job_id: str, payload: JobPayload, priority: JobPriority) -> None: ...

    @abstractmethod
    def mark_active(self, job_id: str, attempt: int) -> None: ...

    @abstractmethod
    def heartbeat(self, job_id: str, progress: int | None = None) -> None: ...

    @abstractmethod
    def mark_retrying(self, job_id: str, error: str) -> None: ...

    @abstractmethod
    def mark_completed(self, job_id: str, result: dict[str, Any]) -> None: ...

    @abstractmethod
    def mark_failed(self, job_id: str, error: str) -> None: ...

    @abstractmethod
    def get(self, job_id: str) -> JobRecord | None: ...

    @abstractmethod
    def latest_for_document(self, document_id: str) -> JobRecord | None: ...

    @abstractmethod
    def metrics(self) -> dict[str, int]:
        """{waiting, active, completed, failed}"""

    @abstractmethod
    def find_stalled(self, older_than_seconds: float | None = None) -> list[JobRecord]:
        """Active jobs whose last heartbeat is older than the threshold."""

    @abstractmethod
    def ping(self) -> bool: ...

    def close(self) -> None:
        pass

    def _stall_cutoff(self, older_than_seconds: float | None) -> float:
        threshold = settings.job_stalled_after_seconds if older_than_seconds is None else older_than_seconds
        return time.time() - threshold


class RedisJobStore(JobStore):

    def __init__(self, client: redis.Redis | None = None, **kwargs: Any) -> None:
        super().__init__(**kwargs)
        self._r = client or redis.Redis.from_url(
            settings.redis_url, socket_timeout=3, decode_responses=True,
        )

    # ------------------------------------------------------------------
    # Keys
    # ------------------------------------------------------------------

    @staticmethod
    def _key(*parts: str) -> str:
        return ":".join((KEY_PREFIX, *parts))

    def _job(self, job_id: str) -> str:
        return self._key("job", job_id)

    # ------------------------------------------------------------------
    # Transitions
    # ------------------------------------------------------------------

    def record_enqueued(self, job_id: str, payload: JobPayload, priority: JobPriority) -> None:
        pipe = self._r.pipeline()
        pipe.hset(self._job(job_id), mapping={
            "document_id": payload.document_id,
            "state":       JobState.WAITING,
            "progress":    0,
            "attempts":    0,
            "priority":    int(priority),
            "enqueued_at": time.time(),
        })
        pipe.expire(self._job(job_id), JOB_RECORD_TTL_SECONDS)
        pipe.set(self._key("doc", payload.document_id), job_id, ex=JOB_RECORD_TTL_SECONDS)
        pipe.incr(self._key("waiting"))
        pipe.execute()

    def mark_active(self, job_id: str, attempt: int) -> None:
        previous = self._r.hget(self._job(job_id), "state")
        pipe = self._r.pipeline()
        if previous == JobState.WAITING:
            pipe.decr(self._key("waiting"))
        pipe.hset(self._job(job_id), mapping={"state": JobState.ACTIVE, "attempts": attempt})
        pipe.zadd(self._key("active"), {job_id: time.time()})
        pipe.execute()

    def heartbeat(self, job_id: str, progress: int | None = None) -> None:
        pipe = self._r.pipeline()
        if progress is not None:
            pipe.hset(self._job(job_id), "progress", progress)
        pipe.zadd(self._key("active"), {job_id: time.time()}, xx=True)
        pipe.execute()

    def mark_retrying(self, job_id: str, error: str) -> None:
        pipe = self._r.pipeline()
        pipe.hset(self._job(job_id), mapping={"state": JobState.WAITING, "error": error, "progress": 0})
        pipe.zrem(self._key("active"), job_id)
        pipe.incr(self._key("waiting"))
        pipe.execute()

    def mark_completed(self, job_id: str, result: dict[str, Any]) -> None:
        self._finish(job_id, JobState.COMPLETED, self._keep_completed, {
            "progress": 100, "result": json.dumps(result),
        })

    def mark_failed(self, job_id: str, error: str) -> None:
        self._finish(job_id, JobState.FAILED, self._keep_failed, {"error": error})

    def _finish(self, job_id: str, state: str, keep: int, fields: dict[str, Any]) -> None:
        list_key = self._key(state)
        previous = self._r.hget(self._job(job_id), "state")
        pipe = self._r.pipeline()
        if previous == JobState.WAITING:
            pipe.decr(self._key("waiting"))
        pipe.hset(self._job(job_id), mapping={"state": state, "finished_at": time.time(), **fields})
        pipe.zrem(self._key("active"), job_id)
        pipe.lpush(list_key, job_id)
        pipe.lrange(list_key, keep, -1)
        pipe.ltrim(list_key, 0, keep - 1)
        evicted = pipe.execute()[-2]
        if evicted:
            self._r.delete(*(self._job(j) for j in evicted))

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def get(self, job_id: str) -> JobRecord | None:
        data = self._r.hgetall(self._job(job_id))
        if not data:
            return None
        return JobRecord(
            job_id=job_id,
            document_id=data.get("document_id", ""),
            state=data.get("state", JobState.WAITING),
            progress=int(data.get("progress", 0)),
            attempts=int(data.get("attempts", 0)),
            error=data.get("error"),
            result=json.loads(data["result"]) if data.get("result") else None,
            enqueued_at=float(data["enqueued_at"]) if data.get("enqueued_at") else None,
            finished_at=float(data["finished_at"]) if data.get("finished_at") else None,
        )

    def latest_for_document(self, document_id: str) -> JobRecord | None:
        job_id = self._r.get(self._key("doc", document_id))
        return self.get(job_id) if job_id else None

    def metrics(self) -> dict[str, int]:
        pipe = self._r.pipeline()
        pipe.get(self._key("waiting"))
        pipe.zcard(self._key("active"))
        pipe.llen(self._key(JobState.COMPLETED))
        pipe.llen(self._key(JobState.FAILED))
        waiting, active, completed, failed = pipe.execute()
        return {
            "waiting":   max(0, int(waiting or 0)),
            "active":    int(active),
            "completed": int(completed),
            "failed":    int(failed),
        }

    def find_stalled(self, older_than_seconds: float | None = None) -> list[JobRecord]:
        cutoff = self._stall_cutoff(older_than_seconds)
        job_ids = self._r.zrangebyscore(self._key("active"), "-inf", cutoff)
        return [rec for rec in (self.get(j) for j in job_ids) if rec is not None]

    def ping(self) -> bool:
        try:
            return bool(self._r.ping())
        except redis.RedisError as exc:
            logger.error("Redis ping failed | error=%s", exc)
            return False

    def close(self) -> None:
        self._r.close()


class InMemoryJobStore(JobStore):
    """Process-local store with the same retention rules (dev + tests)."""

    def __init__(self, **kwargs: Any) -> None:
        super().__init__(**kwargs)
        self._lock = threading.Lock()
        self._jobs: dict[str, JobRecord] = {}
        self._by_document: dict[str, str] = {}
        self._heartbeats: dict[str, float] = {}
        self._completed: deque[str] = deque()
        self._failed: deque[str] = deque()

    def record_enqueued(self, job_id: str, payload: JobPayload, priority: JobPriority) -> None:
        with self._lock:
            self._jobs[job_id] = JobRecord(
                job_id=job_id,
                document_id=payload.document_id,
                state=JobState.WAITING,
                enqueued_at=time.time(),
            )
            self._by_document[payload.document_id] = job_id

    def mark_active(self, job_id: str, attempt: int) -> None:
        with self._lock:
            rec = self._jobs.setdefault(job_id, JobRecord(job_id, "", JobState.WAITING))
            rec.state = JobState.ACTIVE
            rec.attempts = attempt
            self._heartbeats[job_id] = time.time()

    def heartbeat(self, job_id: str, progress: int | None = None) -> None:
        with self._lock:
            rec = self._jobs.get(job_id)
            if rec and progress is not None:
                rec.progress = progress
            if job_id in self._heartbeats:
                self._heartbeats[job_id] = time.time()

    def mark_retrying(self, job_id: str, error: str) -> None:
        with self._lock:
            rec = self._jobs.get(job_id)
            if rec:
                rec.state, rec.error, rec.progress = JobState.WAITING, error, 0
            self._heartbeats.pop(job_id, None)

    def mark_completed(self, job_id: str, result: dict[str, Any]) -> None:
        self._finish(job_id, JobState.COMPLETED, self._completed, self._keep_completed,
                     progress=100, result=result)

    def mark_failed(self, job_id: str, error: str) -> None:
        self._finish(job_id, JobState.FAILED, self._failed, self._keep_failed, error=error)

    def _finish(self, job_id: str, state: str, ring: deque, keep: int, **fields: Any) -> None:
        with self._lock:
            rec = self._jobs.setdefault(job_id, JobRecord(job_id, "", state))
            rec.state = state
            rec.finished_at = time.time()
            for name, value in fields.items():
                setattr(rec, name, value)
            self._heartbeats.pop(job_id, None)
            ring.appendleft(job_id)
            while len(ring) > keep:
                self._jobs.pop(ring.pop(), None)

    def get(self, job_id: str) -> JobRecord | None:
        with self._lock:
            return self._jobs.get(job_id)

    def latest_for_document(self, document_id: str) -> JobRecord | None:
        with self._lock:
            job_id = self._by_document.get(document_id)
            return self._jobs.get(job_id) if job_id else None

    def metrics(self) -> dict[str, int]:
        with self._lock:
            return {
                "waiting":   sum(1 for r in self._jobs.values() if r.state == JobState.WAITING),
                "active":    len(self._heartbeats),
                "completed": len(self._completed),
                "failed":    len(self._failed),
            }

    def find_stalled(self, older_than_seconds: float | None = None) -> list[JobRecord]:
        cutoff = self._stall_cutoff(older_than_seconds)
        with self._lock:
            return [self._jobs[j] for j, beat in self._heartbeats.items() if beat < cutoff and j in self._jobs]

    def ping(self) -> bool:
        return True


_memory_store: InMemoryJobStore | None = None


def get_job_store() -> JobStore:
    global _memory_store
    backend = settings.queue_backend.lower()
    if backend == "redis":
        return RedisJobStore()
    if backend == "memory":
        if _memory_store is None:
            _memory_store = InMemoryJobStore()
        return _memory_store
    raise ValueError(f"Unknown queue backend: '{backend}'. Valid options: 'redis', 'memory'")


# ---------------------------------------------------------------------------
# Producer
# ---------------------------------------------------------------------------

class JobQueue:
    """
    Producer side of the document queue.

    Usage:
        job_id = JobQueue().enqueue(JobPayload(...))
    """

    def __init__(self, store: JobStore | None = None) -> None:
        self._store = store or get_job_store()

    @property
    def store(self) -> JobStore:
        return self._store

    def enqueue(self, payload: JobPayload, priority: JobPriority | None = None) -> str:
        from knowledge_pipeline.workers.tasks import process_document

        priority = JobPriority.for_file_type(payload.file_type) if priority is None else priority
        job_id = str(uuid.uuid4())

        # Recorded before publishing: an eager or very fast worker may start at once
        self._store.record_enqueued(job_id, payload, priority)
        try:
            process_document.apply_async(
                kwargs=payload.to_task_kwargs(),
                task_id=job_id,
                priority=int(priority),
            )
        except Exception as exc:
            self._store.mark_failed(job_id, f"enqueue failed: {exc}")
            logger.error("Enqueue failed | doc=%s error=%s", payload.document_id, exc)
            raise JobQueueError(f"Could not enqueue document {payload.document_id}: {exc}") from exc

        logger.info(
            "Queued document | doc=%s job=%s priority=%s type=%s",
            payload.document_id, job_id, priority.name, payload.file_type,
        )
        return job_id

    def metrics(self) -> dict[str, int]:
        return self._store.metrics()
