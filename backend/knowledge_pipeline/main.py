"""
FastAPI Application: Entry Point

Knowledge ingestion pipeline API.

The API only reads and updates document rows and publishes jobs; text
extraction, chunking and embedding happen in the Celery workers
(`celery -A knowledge_pipeline.workers.celery_app worker -Q documents.ingest`).

Routes
  /api/v1/documents/...   processing requests, status, fetch, delete, overview
  /api/v1/bots/...        bot-scoped search and bulk vector delete
  /api/v1/queue/status    queue health
  /health, /ready         probes

Every 4xx/5xx body is an ErrorResponse envelope carrying the request id.
"""

from __future__ import annotations

import asyncio
import logging
import time
import uuid
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.middleware.gzip import GZipMiddleware
from fastapi.responses import JSONResponse

from knowledge_pipeline.api.dependencies import DocumentServiceDep
from knowledge_pipeline.api.v1.bots import router as bots_router
from knowledge_pipeline.api.v1.documents import router as documents_router
from knowledge_pipeline.api.v1.queue import router as queue_router
from knowledge_pipeline.core.config import settings
from knowledge_pipeline.db.session import check_db_health
from knowledge_pipeline.schemas.documents import DocumentErrors, ErrorDetail, ErrorResponse

logger = logging.getLogger(__name__)

REQUEST_ID_HEADER = "X-Request-ID"
API_PREFIX = "/api/v1"

logging.basicConfig(
    level=logging.DEBUG if settings.debug else logging.INFO,
    format="%(asctime)s %(levelname)s %(name)s %(message)s",
)


@asynccontextmanager
async def lifespan(app: FastAPI):
    logger.info(
        "API starting | env=%s vector_store=%s queue_backend=%s bucket=%s",
        settings.app_env, settings.vector_store_backend, settings.queue_backend, settings.s3_bucket,
    )

    db = await check_db_health()
    if db["status"] != "ok":
        logger.critical("Database unreachable at startup | detail=%s", db.get("detail"))
        raise RuntimeError(f"DB unavailable: {db}")

    if settings.vector_store_backend.lower() == "pinecone":
        from knowledge_pipeline.vectorstore.pinecone_store import PineconeVectorStore
        await asyncio.get_running_loop().run_in_executor(None, PineconeVectorStore.ensure_index)

    yield

    logger.info("API shutting down")
    from knowledge_pipeline.db.session import engine
    await engine.dispose()


# ---------------------------------------------------------------------------
# Middleware
# ---------------------------------------------------------------------------

def _install_middleware(app: FastAPI) -> None:
    # Last added runs outermost
    app.add_middleware(GZipMiddleware, minimum_size=1024)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"] if settings.app_env == "development" else [],
        allow_credentials=True,
        allow_methods=["GET", "POST", "DELETE"],
        allow_headers=["Content-Type", REQUEST_ID_HEADER],
        expose_headers=[REQUEST_ID_HEADER],
    )

    @app.middleware("http")
    async def request_id_and_logging(request: Request, call_next):
        request_id = request.headers.get(REQUEST_ID_HEADER) or str(uuid.uuid4())
        request.state.request_id = request_id
        started = time.perf_counter()

        response = await call_next(request)

        response.headers[REQUEST_ID_HEADER] = request_id
        logger.info(
            "HTTP %s %s | status=%d elapsed_ms=%.1f request_id=%s",
            request.method, request.url.path, response.status_code,
            (time.perf_counter() - started) * 1000, request_id,
        )
        return response


def _request_id(request: Request) -> str:
    return getattr(request.state, "request_id", None) or request.headers.get(
        REQUEST_ID_HEADER, str(uuid.uuid4())
    )


# ---------------------------------------------------------------------------
# Error envelope
# ---------------------------------------------------------------------------

def _install_error_handlers(app: FastAPI) -> None:

    @app.exception_handler(RequestValidationError)
    async def validation_exception_handler(request: Request, exc: RequestValidationError):
        body = ErrorResponse(
            error_code="VALIDATION_ERROR",
            message="Request validation failed.",
            details=[
                ErrorDetail(
                    field=".".join(str(part) for part in err["loc"]),
                    message=err["msg"],
                    code="VALIDATION_ERROR",
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
    async def generic_exception_handler(request: Request, exc: Exception):
        """Unhandled errors: logged with the traceback, returned without it."""
        request_id = _request_id(request)
        logger.exception("Unhandled exception | path=%s request_id=%s", request.url.path, request_id)
        return JSONResponse(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            content=DocumentErrors.internal_error(request_id).model_dump(mode="json"),
            headers={REQUEST_ID_HEADER: request_id},
        )


# ---------------------------------------------------------------------------
# Probes
# ---------------------------------------------------------------------------

def _install_probes(app: FastAPI) -> None:

    @app.get("/health", tags=["Operations"], summary="Liveness probe")
    async def health() -> dict:
        """Process is up; nothing external is checked."""
        return {"status": "ok", "service": "knowledge-pipeline-api"}

    @app.get("/ready", tags=["Operations"], summary="Readiness probe")
    async def readiness(service: DocumentServiceDep) -> JSONResponse:
        """Ready when the database answers and the job store is reachable."""
        db = await check_db_health()
        queue = await service.queue_status()
        ready = db["status"] == "ok" and queue.redis == "connected"
        return JSONResponse(
            status_code=status.HTTP_200_OK if ready else status.HTTP_503_SERVICE_UNAVAILABLE,
            content={
                "status":   "ready" if ready else "not_ready",
                "database": db,
                "queue":    queue.redis,
            },
        )


def create_app() -> FastAPI:
    docs_enabled = not settings.is_production
    app = FastAPI(
        title="Knowledge Pipeline",
        description=(
            "Document ingestion and vector retrieval API. Documents are extracted, "
            "chunked and embedded by background workers and searched per bot."
        ),
        version="1.0.0",
        docs_url="/api/docs" if docs_enabled else None,
        redoc_url="/api/redoc" if docs_enabled else None,
        openapi_url="/api/openapi.json" if docs_enabled else None,
        lifespan=lifespan,
    )

    _install_middleware(app)
    _install_error_handlers(app)

    for router in (documents_router, bots_router, queue_router):
        app.include_router(router, prefix=API_PREFIX)

    _install_probes(app)
    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "knowledge_pipeline.main:app",
        host="0.0.0.0",
        port=8000,
        reload=settings.app_env == "development",
        log_level="debug" if settings.debug else "info",
    )
