"""
Celery Application Factory

Broker: RabbitMQ (amqp://) so queue priorities are honoured.
Result backend: Redis (optional — document state lives in PostgreSQL,
job bookkeeping in JobStore).

Queue topology:
  documents.ingest   — document processing jobs, x-max-priority=10
  documents.sweep    — periodic sweep of unprocessed / stuck documents
  system.health      — internal health-check tasks

Task arguments are logged by Celery. Only identifiers and storage keys
travel in payloads; document bytes are loaded inside the worker.
"""

from __future__ import annotations

import logging

from celery import Celery
from celery.signals import after_setup_logger, task_failure, task_postrun, task_prerun
from kombu import Exchange, Queue

from knowledge_pipeline.core.config import settings

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Queue and exchange definitions
# ---------------------------------------------------------------------------

DOCUMENTS_EXCHANGE = Exchange("documents", type="direct", durable=True)

TASK_QUEUES = (
    Queue(
        "documents.ingest",
        exchange=DOCUMENTS_EXCHANGE,
        routing_key="documents.ingest",
        queue_arguments={"x-max-priority": 10},
        durable=True,
    ),
    Queue(
        "documents.sweep",
        exchange=DOCUMENTS_EXCHANGE,
        routing_key="documents.sweep",
        durable=True,
    ),
    Queue(
        "system.health",
        Exchange("system", type="direct"),
        routing_key="system.health",
        durable=True,
    ),
)

TASK_ROUTES = {
    "knowledge_pipeline.workers.tasks.process_document":        {"queue": "documents.ingest"},
    "knowledge_pipeline.workers.tasks.sweep_pending_documents": {"queue": "documents.sweep"},
    "knowledge_pipeline.workers.tasks.health_check":            {"queue": "system.health"},
}

# ---------------------------------------------------------------------------
# Celery app factory
# ---------------------------------------------------------------------------

def create_celery_app() -> Celery:
    app = Celery("knowledge_pipeline")

    app.conf.update(
        # --- Broker / Backend ---
        broker_url=settings.celery_broker_url,
        result_backend=settings.celery_result_backend,

        # --- Serialization (reject non-JSON messages) ---
        task_serializer="json",
        result_serializer="json",
        accept_content=["json"],
        event_serializer="json",

        # --- Queues ---
        task_queues=TASK_QUEUES,
        task_routes=TASK_ROUTES,
        task_default_queue="documents.ingest",
        task_default_exchange="documents",
        task_default_routing_key="documents.ingest",
        task_queue_max_priority=10,
        task_default_priority=0,

        # --- Reliability ---
        task_acks_late=True,           # ack after the task finishes; a dead worker's job is redelivered
        task_reject_on_worker_lost=True,
        worker_prefetch_multiplier=1,  # one job at a time per worker process

        # --- Retries (exponential backoff is computed per task) ---
        task_max_retries=settings.job_max_attempts - 1,

        # --- Timeouts ---
        task_soft_time_limit=300,
        task_time_limit=360,

        # --- Result TTL ---
        result_expires=3600,

        # --- Timezone ---
        timezone="UTC",
        enable_utc=True,

        # --- Beat schedule ---
        beat_schedule={
            "sweep-pending-documents-every-60s": {
                "task":     "knowledge_pipeline.workers.tasks.sweep_pending_documents",
                "schedule": 60,
                "options":  {"queue": "documents.sweep"},
            },
        },

        # --- Worker ---
        worker_concurrency=settings.document_worker_concurrency,
        worker_max_tasks_per_child=200,

        # --- Local dev / tests ---
        task_always_eager=settings.task_always_eager,
        task_eager_propagates=False,
    )

    app.autodiscover_tasks(["knowledge_pipeline.workers"])

    return app


celery_app = create_celery_app()


# ---------------------------------------------------------------------------
# Celery signals: one structured line per task
# ---------------------------------------------------------------------------

@after_setup_logger.connect
def on_setup_logger(logger, loglevel, **_):
    for handler in logger.handlers:
        handler.setFormatter(logging.Formatter("%(asctime)s %(levelname)s %(name)s %(message)s"))


@task_prerun.connect
def on_task_prerun(task_id, task, args, kwargs, **_):
    logger.info(
        "Task start | task_id=%s task=%s doc=%s bot=%s",
        task_id, task.name,
        (kwargs or {}).get("document_id", "?"),
        (kwargs or {}).get("bot_id", "?"),
    )


@task_postrun.connect
def on_task_postrun(task_id, task, args, kwargs, retval, state, **_):
    logger.info(
        "Task end | task_id=%s task=%s state=%s doc=%s",
        task_id, task.name, state, (kwargs or {}).get("document_id", "?"),
    )


@task_failure.connect
def on_task_failure(task_id, exception, args, kwargs, traceback, einfo, **_):
    logger.error(
        "Task failed | task_id=%s doc=%s error=%s",
        task_id, (kwargs or {}).get("document_id", "?"), exception,
    )
