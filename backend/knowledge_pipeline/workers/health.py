"""
Worker health loop and event logger.

HealthMonitor samples the queue once per interval, logs the numbers,
warns on backlog and reports stalled jobs as `stalled` events.
EventLogger consumes the lifecycle event stream and writes one log line
per event. Both run as daemon threads.

Under the prefork pool jobs run in child processes, each with its own
connection pool. Every child runs a monitor over its own pool, and the
parent runs the one that watches for stalled jobs, so each stall is
reported once per worker node.
"""

from __future__ import annotations

import logging
import threading
from typing import Any

from knowledge_pipeline.core.config import settings
from knowledge_pipeline.workers.events import EventKind, EventStream, QueueEvent
from knowledge_pipeline.workers.pool import ConnectionPool
from knowledge_pipeline.workers.queue import JobStore

logger = logging.getLogger(__name__)


class HealthMonitor:

    def __init__(
        self,
        store:             JobStore,
        pool:              ConnectionPool | None,
        events:            EventStream,
        interval:          float | None = None,
        backlog_threshold: int | None = None,
        watch_stalls:      bool = True,
    ) -> None:
        self._store = store
        self._pool = pool
        self._events = events
        self._interval = interval or settings.health_interval_seconds
        self._backlog_threshold = backlog_threshold or settings.backlog_warning_threshold
        self._watch_stalls = watch_stalls
        self._reported_stalls: set[str] = set()
        self._stop = threading.Event()
        self._thread: threading.Thread | None = None

    def sample(self) -> dict[str, Any]:
        metrics: dict[str, Any] = dict(self._store.metrics())
        if self._pool is not None:
            metrics["connection_pool_size"] = len(self._pool)
        logger.info("Worker metrics | %s", " ".join(f"{k}={v}" for k, v in metrics.items()))
        if metrics["waiting"] > self._backlog_threshold:
            logger.warning(
                "High queue backlog | waiting=%d threshold=%d",
                metrics["waiting"], self._backlog_threshold,
            )
        return metrics

    def check_stalled(self) -> list[str]:
        """Publish one `stalled` event per newly stalled job; returns their ids."""
        stalled = self._store.find_stalled()
        current = {job.job_id for job in stalled}
        fresh = [job for job in stalled if job.job_id not in self._reported_stalls]
        for job in fresh:
            logger.warning("Job stalled | job=%s doc=%s", job.job_id, job.document_id)
            self._events.publish(QueueEvent.stalled(job.job_id, job.document_id))
        # Forget jobs that recovered or finished so a later stall is reported again
        self._reported_stalls = current
        return [job.job_id for job in fresh]

    def tick(self) -> None:
        try:
            self.sample()
            if self._watch_stalls:
                self.check_stalled()
        except Exception as exc:
            logger.error("Failed to get worker metrics | error=%s", exc)

    def _run(self) -> None:
        while not self._stop.wait(self._interval):
            self.tick()

    def start(self) -> None:
        if self._thread is not None:
            return
        self._stop.clear()
        self._thread = threading.Thread(target=self._run, name="health-monitor", daemon=True)
        self._thread.start()
        logger.info("Health monitor started | interval=%ss", self._interval)

    def stop(self, timeout: float = 5.0) -> None:
        self._stop.set()
        if self._thread is not None:
            self._thread.join(timeout)
            self._thread = None


class EventLogger:
    """Turns lifecycle events into log lines."""

    def __init__(self, events: EventStream) -> None:
        self._events = events
        self._stop = threading.Event()
        self._thread: threading.Thread | None = None

    @staticmethod
    def log(event: QueueEvent) -> None:
        if event.kind is EventKind.COMPLETED:
            result = event.result or {}
            logger.info(
                "Job completed | job=%s doc=%s chunks=%s",
                event.job_id, event.document_id, result.get("chunks_created"),
            )
        elif event.kind is EventKind.FAILED:
            logger.error("Job failed permanently | job=%s doc=%s error=%s", event.job_id, event.document_id, event.error)
        elif event.kind is EventKind.STALLED:
            logger.warning("Job stalled | job=%s doc=%s", event.job_id, event.document_id)
        else:
            logger.debug("Job progress | job=%s progress=%s", event.job_id, event.progress)

    def _run(self) -> None:
        for event in self._events.subscribe(self._stop):
            self.log(event)

    def start(self) -> None:
        if self._thread is not None:
            return
        self._stop.clear()
        self._thread = threading.Thread(target=self._run, name="event-logger", daemon=True)
        self._thread.start()

    def stop(self, timeout: float = 5.0) -> None:
        self._stop.set()
        if self._thread is not None:
            self._thread.join(timeout)
            self._thread = None
