"""
Job Lifecycle Events

The queue reports what happens to each job as a stream of QueueEvent
messages instead of registering listener callbacks:

  completed   job finished; `result` carries the JobResult dict
  failed      attempt ceiling exhausted; `error` carries the last message
  stalled     job claimed but its worker stopped heart-beating
  progress    worker advanced the progress marker (10/20/90/100)

Producers call `publish(event)`. Consumers (the health monitor, the event
logger, operator tooling) iterate `subscribe()`.

Backends:
  RedisEventStream     Redis pub/sub on settings.events_channel
  InMemoryEventStream  single-process fan-out (dev + tests)
"""

from __future__ import annotations

import json
import logging
import queue
import threading
import time
from abc import ABC, abstractmethod
from dataclasses import asdict, dataclass, field
from enum import Enum
from typing import Any, Iterator

import redis

from knowledge_pipeline.core.config import settings

logger = logging.getLogger(__name__)


class EventKind(str, Enum):
    COMPLETED = "completed"
    FAILED    = "failed"
    STALLED   = "stalled"
    PROGRESS  = "progress"


@dataclass
class QueueEvent:
    kind:        EventKind
    job_id:      str
    document_id: str
    result:      dict[str, Any] | None = None
    error:       str | None = None
    progress:    int | None = None
    timestamp:   float = field(default_factory=time.time)

    def to_json(self) -> str:
        data = asdict(self)
        data["kind"] = self.kind.value
        return json.dumps({k: v for k, v in data.items() if v is not None})

    @classmethod
    def from_json(cls, raw: str | bytes) -> "QueueEvent":
        data = json.loads(raw)
        data["kind"] = EventKind(data["kind"])
        return cls(**data)

    # ------------------------------------------------------------------
    # Factories
    # ------------------------------------------------------------------

    @classmethod
    def completed(cls, job_id: str, document_id: str, result: dict) -> "QueueEvent":
        return cls(EventKind.COMPLETED, job_id, document_id, result=result, progress=100)

    @classmethod
    def failed(cls, job_id: str, document_id: str, error: str) -> "QueueEvent":
        return cls(EventKind.FAILED, job_id, document_id, error=error)

    @classmethod
    def stalled(cls, job_id: str, document_id: str) -> "QueueEvent":
        return cls(EventKind.STALLED, job_id, document_id)

    @classmethod
    def progressed(cls, job_id: str, document_id: str, progress: int) -> "QueueEvent":
        return cls(EventKind.PROGRESS, job_id, document_id, progress=progress)


# ---------------------------------------------------------------------------
# Abstract interface
# ---------------------------------------------------------------------------

class EventStream(ABC):

    @abstractmethod
    def publish(self, event: QueueEvent) -> None:
        """Deliver an event to current subscribers. Must not raise."""

    @abstractmethod
    def subscribe(self, stop: threading.Event | None = None) -> Iterator[QueueEvent]:
        """Yield events until `stop` is set."""

    def close(self) -> None:
        pass


class RedisEventStream(EventStream):

    def __init__(self, client: redis.Redis | None = None, channel: str | None = None) -> None:
        self._client = client or redis.Redis.from_url(settings.redis_url, socket_timeout=3)
        self._channel = channel or settings.events_channel

    def publish(self, event: QueueEvent) -> None:
        try:
            self._client.publish(self._channel, event.to_json())
        except redis.RedisError as exc:
            # Losing an event never fails the job that produced it
            logger.warning("Event publish failed | kind=%s job=%s error=%s", event.kind.value, event.job_id, exc)

    def subscribe(self, stop: threading.Event | None = None) -> Iterator[QueueEvent]:
        pubsub = self._client.pubsub(ignore_subscribe_messages=True)
        pubsub.subscribe(self._channel)
        try:
            while stop is None or not stop.is_set():
                message = pubsub.get_message(timeout=1.0)
                if not message:
                    continue
                try:
                    yield QueueEvent.from_json(message["data"])
                except (ValueError, TypeError, KeyError) as exc:
                    logger.warning("Malformed queue event dropped | error=%s", exc)
        finally:
            pubsub.close()

    def close(self) -> None:
        self._client.close()


class InMemoryEventStream(EventStream):
    """Fan-out to in-process subscribers; keeps every published event in `history`."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._subscribers: list[queue.Queue] = []
        self.history: list[QueueEvent] = []

    def publish(self, event: QueueEvent) -> None:
        with self._lock:
            self.history.append(event)
            subscribers = list(self._subscribers)
        for q in subscribers:
            q.put(event)

    def subscribe(self, stop: threading.Event | None = None) -> Iterator[QueueEvent]:
        q: queue.Queue = queue.Queue()
        with self._lock:
            self._subscribers.append(q)
        try:
            while stop is None or not stop.is_set():
                try:
                    yield q.get(timeout=0.1)
                except queue.Empty:
                    continue
        finally:
            with self._lock:
                self._subscribers.remove(q)

    def of_kind(self, kind: EventKind) -> list[QueueEvent]:
        return [e for e in self.history if e.kind is kind]


# ---------------------------------------------------------------------------
# Factory
# ---------------------------------------------------------------------------

_memory_stream: InMemoryEventStream | None = None


def get_event_stream() -> EventStream:
    global _memory_stream
    backend = settings.queue_backend.lower()
    if backend == "redis":
        return RedisEventStream()
    if backend == "memory":
        if _memory_stream is None:
            _memory_stream = InMemoryEventStream()
        return _memory_stream
    raise ValueError(f"Unknown queue backend: '{backend}'. Valid options: 'redis', 'memory'")
