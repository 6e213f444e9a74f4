"""
Course Index API

Uploads land in the system of record and the blob store synchronously; text
extraction and search-index projection happen in Celery. Every read goes
through the tag-invalidated cache in front of the index or the database.

Request path (outermost first):
  request-id middleware → GZip → CORS → router → domain exception handlers

Identity is never parsed here: the gateway in front of this service forwards
an already-authenticated X-User-ID (and optional X-User-Role).
"""

from __future__ import annotations

import logging
import time
import uuid
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.middleware.gzip import GZipMiddleware
from fastapi.responses import JSONResponse

from courseindex.api.v1.files import router as files_router
from courseindex.api.v1.search import router as search_router
from courseindex.api.v1.subjects import router as subjects_router
from courseindex.core.config import settings
from courseindex.core.errors import CourseIndexError
from courseindex.db.session import (
    check_db_health,
    create_schema,
    dispose_engine,
    get_session_factory,
)
from courseindex.schemas.documents import ErrorDetail, ErrorResponse, UploadErrors
from courseindex.services.container import Services, build_services

logger = logging.getLogger(__name__)

logging.basicConfig(
    level=logging.DEBUG if settings.debug else logging.INFO,
    format="%(asctime)s %(levelname)s %(name)s %(message)s",
)

API_PREFIX = "/api/v1"


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Refuse to start without the database; start degraded without the index."""
    logger.info(
        "Startup | env=%s search=%s cache=%s storage=%s",
        settings.app_env, settings.search_backend, settings.cache_backend, settings.storage_backend,
    )

    db = await check_db_health()
    if db["status"] != "ok":
        logger.critical("Startup aborted | database=%s", db)
        raise RuntimeError(f"System of record unreachable: {db.get('detail')}")
    if settings.db_create_schema:
        await create_schema()

    services: Services = build_services(get_session_factory())
    if not await services.projector.ensure_index():
        logger.warning("Startup degraded | search index unreachable url=%s", settings.elasticsearch_url)
    app.state.services = services

    yield

    logger.info("Shutdown | closing backends")
    await services.close()
    await dispose_engine()


def _request_id(request: Request) -> str | None:
    return getattr(request.state, "request_id", None)


def _register_error_handlers(app: FastAPI) -> None:

    @app.exception_handler(CourseIndexError)
    async def on_domain_error(request: Request, exc: CourseIndexError):
        body = exc.error.model_copy(update={"request_id": _request_id(request)})
        if exc.status_code >= 500:
            logger.error("Request failed | path=%s code=%s", request.url.path, exc.error.error_code)
        return JSONResponse(status_code=exc.status_code, content=body.model_dump(mode="json"))

    @app.exception_handler(RequestValidationError)
    async def on_invalid_request(request: Request, exc: RequestValidationError):
        body = ErrorResponse(
            error_code="VALIDATION_ERROR",
            message="One or more request fields are invalid.",
            details=[
                ErrorDetail(
                    field=".".join(str(part) for part in err["loc"]),
                    message=err["msg"],
                    code=err.get("type", "invalid"),
                )
                for err in exc.errors()
            ],
            request_id=_request_id(request),
        )
        return JSONResponse(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            content=body.model_dump(mode="json"),
        )

    @app.exception_handler(Exception)
    async def on_unexpected_error(request: Request, exc: Exception):
        request_id = _request_id(request) or str(uuid.uuid4())
        logger.exception("Unhandled error | path=%s request_id=%s", request.url.path, request_id)
        body = UploadErrors.internal_error(request_id)
        return JSONResponse(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            content=body.model_dump(mode="json"),
            headers={"X-Request-ID": request_id},
        )


def _register_probes(app: FastAPI) -> None:

    @app.get("/health", tags=["Operations"], summary="Liveness")
    async def health() -> dict:
        return {"status": "ok", "service": "courseindex-api"}

    @app.get(
        "/ready",
        tags=["Operations"],
        summary="Readiness",
        description="503 only when the database is down; index and cache outages are reported, not fatal.",
    )
    async def ready(request: Request) -> JSONResponse:
        services: Services = request.app.state.services
        db = await check_db_health(services.session_factory.kw["bind"])
        report = {
            "database":     db,
            "search_index": {"status": "ok" if await services.projector.ping() else "unavailable"},
            "cache":        {"status": "ok" if await services.cache.ping() else "unavailable"},
        }
        if db["status"] != "ok":
            return JSONResponse(
                status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
                content={"status": "not_ready", **report},
            )
        return JSONResponse(status_code=status.HTTP_200_OK, content={"status": "ready", **report})


def create_app() -> FastAPI:
    expose_docs = not settings.is_production
    app = FastAPI(
        title="Course Index",
        description="Upload, index and search course files. Indexing is asynchronous; reads are cached.",
        version="1.0.0",
        docs_url="/api/docs" if expose_docs else None,
        redoc_url="/api/redoc" if expose_docs else None,
        openapi_url="/api/openapi.json" if expose_docs else None,
        lifespan=lifespan,
    )

    # last added runs first
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"] if settings.app_env == "development" else [],
        allow_credentials=True,
        allow_methods=["GET", "POST", "DELETE", "PATCH"],
        allow_headers=["Content-Type", "X-Request-ID", "X-User-ID", "X-User-Role", "X-Bypass-Cache"],
        expose_headers=["X-Request-ID", "X-Document-ID", "Location"],
    )
    app.add_middleware(GZipMiddleware, minimum_size=1024)

    @app.middleware("http")
    async def tag_and_log(request: Request, call_next):
        request_id = request.headers.get("X-Request-ID") or str(uuid.uuid4())
        request.state.request_id = request_id
        started = time.perf_counter()

        response = await call_next(request)

        response.headers["X-Request-ID"] = request_id
        logger.info(
            "HTTP | method=%s path=%s status=%d ms=%.1f user=%s",
            request.method, request.url.path, response.status_code,
            (time.perf_counter() - started) * 1000, request.headers.get("X-User-ID", "-"),
        )
        return response

    _register_error_handlers(app)

    for router in (files_router, search_router, subjects_router):
        app.include_router(router, prefix=API_PREFIX)

    _register_probes(app)
    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "courseindex.main:app",
        host="0.0.0.0",
        port=8000,
        reload=settings.app_env == "development",
        log_level="debug" if settings.debug else "info",
    )
