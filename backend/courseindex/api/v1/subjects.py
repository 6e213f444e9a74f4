"""
Subjects, categories, statistics and admin maintenance

  GET   /api/v1/subjects                 names, or names + file counts (with_counts=true)
  GET   /api/v1/subjects/{name}          per-category counts, all four categories
  GET   /api/v1/categories               the fixed category list
  GET   /api/v1/stats                    index-wide totals
  PATCH /api/v1/admin/subjects/rename    admin; database first, then index
  POST  /api/v1/admin/reindex            admin; queues a full rebuild
"""

from __future__ import annotations

import logging

from fastapi import APIRouter, status

from courseindex.api.dependencies import AdminUser, AppServices, BypassCache
from courseindex.schemas.documents import (
    ALL_CATEGORIES,
    ErrorResponse,
    ReindexResponse,
    RenameSubjectRequest,
    RenameSubjectResponse,
    SubjectCount,
    SubjectDetailResponse,
    SystemStats,
)

logger = logging.getLogger(__name__)

router = APIRouter(tags=["Subjects"])


@router.get(
    "/subjects",
    response_model=list[SubjectCount] | list[str],
    summary="List subjects",
)
async def list_subjects(
    services:    AppServices,
    bypass:      BypassCache,
    with_counts: bool = False,
) -> list[SubjectCount] | list[str]:
    if with_counts:
        return await services.queries.subjects_with_counts(bypass=bypass)
    return await services.queries.subject_list(bypass=bypass)


@router.get(
    "/subjects/{subject_name}",
    response_model=SubjectDetailResponse,
    summary="File counts per category for one subject",
)
async def get_subject(
    subject_name: str,
    services:     AppServices,
    bypass:       BypassCache,
) -> SubjectDetailResponse:
    return await services.queries.subject_detail(subject_name, bypass=bypass)


@router.get("/categories", response_model=list[str], summary="List categories")
async def list_categories() -> list[str]:
    return list(ALL_CATEGORIES)


@router.get("/stats", response_model=SystemStats, summary="System-wide statistics")
async def get_stats(services: AppServices, bypass: BypassCache) -> SystemStats:
    return await services.queries.comprehensive_stats(bypass=bypass)


# ---------------------------------------------------------------------------
# Admin
# ---------------------------------------------------------------------------

@router.patch(
    "/admin/subjects/rename",
    response_model=RenameSubjectResponse,
    summary="Rename a subject across all its files",
    responses={400: {"model": ErrorResponse}, 403: {"model": ErrorResponse}},
)
async def rename_subject(
    body:     RenameSubjectRequest,
    admin:    AdminUser,
    services: AppServices,
) -> RenameSubjectResponse:
    logger.info("Subject rename requested | by=%s old=%r new=%r", admin.user_id, body.old_name, body.new_name)
    return await services.orchestrator.rename_subject(body.old_name, body.new_name)


@router.post(
    "/admin/reindex",
    response_model=ReindexResponse,
    status_code=status.HTTP_202_ACCEPTED,
    summary="Rebuild the search index from the database",
    responses={403: {"model": ErrorResponse}},
)
async def reindex(admin: AdminUser, services: AppServices) -> ReindexResponse:
    try:
        task_id = await services.publisher.publish_reindex_task()
    except Exception as exc:
        logger.error("Failed to publish reindex task | by=%s error=%s", admin.user_id, exc)
        return ReindexResponse(task_id=None, queued=False)
    logger.info("Reindex queued | by=%s task=%s", admin.user_id, task_id)
    return ReindexResponse(task_id=task_id, queued=True)
