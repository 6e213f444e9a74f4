"""
Celery app for background indexing.

Broker and result backend come from CELERY_BROKER_URL / CELERY_RESULT_BACKEND
(Redis by default; any kombu transport works). Results are informational only:
processing state is tracked in uploaded_files.

Queues:
  documents.ingest       process_document, one message per uploaded record
  documents.maintenance  stale scan, full reindex, cache warm-up
  system.health          worker liveness pings

Messages carry record ids, never file bytes.
"""

from __future__ import annotations

import logging

from celery import Celery
from celery.signals import task_failure, task_postrun, task_prerun
from kombu import Exchange, Queue

from courseindex.core.config import settings

logger = logging.getLogger(__name__)

INGEST_QUEUE      = "documents.ingest"
MAINTENANCE_QUEUE = "documents.maintenance"
HEALTH_QUEUE      = "system.health"

_TASK_PREFIX = "courseindex.workers.tasks."

_documents = Exchange("documents", type="direct", durable=True)
_system    = Exchange("system", type="direct", durable=True)

TASK_QUEUES = tuple(
    Queue(name, exchange=exchange, routing_key=name, durable=True)
    for name, exchange in (
        (INGEST_QUEUE,      _documents),
        (MAINTENANCE_QUEUE, _documents),
        (HEALTH_QUEUE,      _system),
    )
)

_QUEUE_BY_TASK = {
    "process_document":     INGEST_QUEUE,
    "scan_stale_documents": MAINTENANCE_QUEUE,
    "reindex_all":          MAINTENANCE_QUEUE,
    "warm_caches":          MAINTENANCE_QUEUE,
    "health_check":         HEALTH_QUEUE,
}
TASK_ROUTES = {_TASK_PREFIX + task: {"queue": queue} for task, queue in _QUEUE_BY_TASK.items()}

BEAT_SCHEDULE = {
    "stale-documents": {
        "task":     _TASK_PREFIX + "scan_stale_documents",
        "schedule": settings.stale_scan_interval_seconds,
        "options":  {"queue": MAINTENANCE_QUEUE},
    },
    "cache-warm-up": {
        "task":     _TASK_PREFIX + "warm_caches",
        "schedule": settings.cache_warm_interval_seconds,
        "options":  {"queue": MAINTENANCE_QUEUE},
    },
}


def create_celery_app() -> Celery:
    app = Celery("courseindex")

    transport = dict(
        broker_url=settings.celery_broker_url,
        result_backend=settings.celery_result_backend,
        result_expires=3600,
        task_serializer="json",
        result_serializer="json",
        event_serializer="json",
        accept_content=["json"],
        timezone="UTC",
        enable_utc=True,
    )
    routing = dict(
        task_queues=TASK_QUEUES,
        task_routes=TASK_ROUTES,
        task_default_queue=INGEST_QUEUE,
        task_default_exchange=_documents.name,
        task_default_routing_key=INGEST_QUEUE,
    )
    # At-least-once delivery; process_document tolerates duplicates
    delivery = dict(
        task_acks_late=True,
        task_reject_on_worker_lost=True,
        worker_prefetch_multiplier=1,
        task_max_retries=3,
        task_default_retry_delay=30,
        task_soft_time_limit=settings.task_soft_time_limit,
        task_time_limit=settings.task_time_limit,
        worker_max_tasks_per_child=200,
    )
    app.conf.update(**transport, **routing, **delivery, beat_schedule=BEAT_SCHEDULE)

    app.autodiscover_tasks(["courseindex.workers"])
    return app


celery_app = create_celery_app()


def _doc_of(kwargs) -> str:
    return (kwargs or {}).get("document_id", "-")


@task_prerun.connect
def log_task_start(task_id, task, args, kwargs, **_):
    logger.info("Task start | id=%s name=%s doc=%s", task_id, task.name, _doc_of(kwargs))


@task_postrun.connect
def log_task_end(task_id, task, args, kwargs, retval, state, **_):
    logger.info("Task end | id=%s name=%s state=%s doc=%s", task_id, task.name, state, _doc_of(kwargs))


@task_failure.connect
def log_task_failure(task_id, exception, args, kwargs, traceback, einfo, **_):
    logger.error(
        "Task failed | id=%s doc=%s error=%s",
        task_id, _doc_of(kwargs), exception,
        exc_info=True,
    )
