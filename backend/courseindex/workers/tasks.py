"""
Celery Tasks — Document Processing Pipeline

Task: process_document
  Claim → load blob → extract text → upsert index document → completed | failed.
  The message carries the record id only; everything else is re-read from
  uploaded_files. See services/processing.py for the step-by-step contract.

Task: scan_stale_documents
  Scheduler task — re-publishes records stuck in 'pending' (lost broker
  message) and fails records stuck in 'processing' (crashed worker).

Task: reindex_all
  Rebuilds the search index from the system of record (completed records).

Task: warm_caches
  Pre-computes the fast-path listings and statistics.

Every task runs its coroutine on a fresh event loop, so each one opens its own
NullPool engine and backends and disposes them before returning.
"""

from __future__ import annotations

import asyncio
import logging
import uuid
from typing import Any, Awaitable, Callable, TypeVar

from celery import Task

from courseindex.core.config import settings
from courseindex.core.errors import RecordStoreError
from courseindex.db.session import create_task_session_factory
from courseindex.services.container import Services, build_services
from courseindex.workers.celery_app import celery_app

logger = logging.getLogger(__name__)

T = TypeVar("T")


# ---------------------------------------------------------------------------
# Async task helper
# Run async coroutines inside Celery's synchronous task context.
# ---------------------------------------------------------------------------

def run_async(coro):
    """Execute an async coroutine from a synchronous Celery task."""
    try:
        loop = asyncio.get_running_loop()
    except RuntimeError:
        return asyncio.run(coro)

    import concurrent.futures
    with concurrent.futures.ThreadPoolExecutor(max_workers=1) as pool:
        return pool.submit(asyncio.run, coro).result()


async def _with_services(operation: Callable[[Services], Awaitable[T]]) -> T:
    engine, session_factory = create_task_session_factory()
    services = build_services(session_factory, extract_timeout=settings.extract_timeout_seconds)
    try:
        return await operation(services)
    finally:
        await services.close()
        await engine.dispose()


# ---------------------------------------------------------------------------
# Main processing task
# ---------------------------------------------------------------------------

@celery_app.task(
    name="courseindex.workers.tasks.process_document",
    bind=True,
    max_retries=3,
    default_retry_delay=30,
    acks_late=True,
    reject_on_worker_lost=True,
    soft_time_limit=settings.task_soft_time_limit,
    time_limit=settings.task_time_limit,
)
def process_document(self: Task, *, document_id: str) -> dict[str, Any]:
    """
    Index one uploaded record.

    Redelivery is harmless: a second run fails the pending → processing
    claim and returns status=skipped. Retries (request.retries > 0) resume a
    record this task already moved to processing.
    """
    doc_id = uuid.UUID(document_id)
    # A retry may find the record still in processing from its own earlier attempt
    resume = bool(self.request.retries)

    async def operation(services: Services) -> dict[str, Any]:
        outcome = await services.processor.process(doc_id, resume=resume)
        return outcome.as_dict()

    try:
        return run_async(_with_services(operation))
    except RecordStoreError as exc:
        logger.warning(
            "Processing retry | doc=%s attempt=%d error=%s",
            document_id, self.request.retries + 1, exc,
        )
        raise self.retry(exc=exc)


# ---------------------------------------------------------------------------
# Stale-record scanner (Celery Beat)
# ---------------------------------------------------------------------------

@celery_app.task(
    name="courseindex.workers.tasks.scan_stale_documents",
    bind=False,
    acks_late=True,
    soft_time_limit=55,
    time_limit=60,
)
def scan_stale_documents() -> dict[str, int]:
    async def operation(services: Services) -> dict[str, int]:
        return await services.orchestrator.recover_stale()

    return run_async(_with_services(operation))


# ---------------------------------------------------------------------------
# Maintenance
# ---------------------------------------------------------------------------

@celery_app.task(
    name="courseindex.workers.tasks.reindex_all",
    bind=False,
    acks_late=True,
)
def reindex_all(batch_size: int = 100) -> dict[str, int]:
    async def operation(services: Services) -> dict[str, int]:
        return await services.processor.reindex_all(batch_size=batch_size)

    return run_async(_with_services(operation))


@celery_app.task(
    name="courseindex.workers.tasks.warm_caches",
    bind=False,
    soft_time_limit=55,
    time_limit=60,
)
def warm_caches() -> dict[str, int]:
    async def operation(services: Services) -> dict[str, int]:
        return await services.queries.warm()

    return run_async(_with_services(operation))


# ---------------------------------------------------------------------------
# Health check task
# ---------------------------------------------------------------------------

@celery_app.task(name="courseindex.workers.tasks.health_check")
def health_check() -> dict[str, str]:
    return {"status": "ok", "worker": "healthy"}
