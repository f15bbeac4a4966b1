"""
Document Processing API Router

  POST   /documents/{id}/process   queue processing (202); 409 while busy
  GET    /documents/{id}/status    status + job progress; repairs stale runs
  POST   /documents/{id}/fetch     extract a webpage / video source now
  DELETE /documents/{id}           vectors, chunk rows, then the document
  GET    /documents/overview       operator summary

Request lifecycle (process):
  ┌─────────────────────────────────────────────────────────┐
  │ 1. Load document (404 if missing)                        │
  │ 2. completed → 200, nothing queued (unless ?force=true)  │
  │ 3. processing < 10 min → 409 DOCUMENT_BUSY               │
  │ 4. processing ≥ 10 min → reset to pending (was_stale)    │
  │ 5. Celery job published → 202 with job id               │
  └─────────────────────────────────────────────────────────┘
"""

from __future__ import annotations

import logging
from uuid import UUID

from fastapi import APIRouter, HTTPException, Query, Response, status

from knowledge_pipeline.api.dependencies import DocumentServiceDep
from knowledge_pipeline.schemas.documents import (
    DeleteResponse,
    DocumentErrors,
    DocumentOverviewResponse,
    DocumentStatus,
    DocumentStatusResponse,
    ErrorResponse,
    ProcessRequestResponse,
)
from knowledge_pipeline.services.documents import (
    DocumentBusyError,
    DocumentNotFoundError,
    SourceNotFetchableError,
)
from knowledge_pipeline.services.lifecycle import InvalidTransitionError
from knowledge_pipeline.vectorstore.base import VectorStoreError
from knowledge_pipeline.workers.queue import JobQueueError

logger = logging.getLogger(__name__)

router = APIRouter(
    prefix="/documents",
    tags=["Document Processing"],
)


def _http_error(exc: Exception) -> HTTPException:
    """Map a domain exception to the structured error envelope."""
    if isinstance(exc, DocumentNotFoundError):
        return HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=DocumentErrors.not_found(exc.document_id).model_dump(),
        )
    if isinstance(exc, DocumentBusyError):
        return HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail=DocumentErrors.already_processing(exc.document_id, exc.minutes).model_dump(),
        )
    if isinstance(exc, InvalidTransitionError):
        return HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail=DocumentErrors.invalid_transition(exc.current.value, exc.target.value).model_dump(),
        )
    if isinstance(exc, SourceNotFetchableError):
        return HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=DocumentErrors.not_fetchable(exc.file_type).model_dump(),
        )
    if isinstance(exc, JobQueueError):
        return HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail=DocumentErrors.queue_error().model_dump(),
        )
    if isinstance(exc, VectorStoreError):
        return HTTPException(
            status_code=status.HTTP_502_BAD_GATEWAY,
            detail=DocumentErrors.vector_store_error(str(exc)).model_dump(),
        )
    raise exc


_DOMAIN_ERRORS = (
    DocumentNotFoundError,
    DocumentBusyError,
    InvalidTransitionError,
    SourceNotFetchableError,
    JobQueueError,
    VectorStoreError,
)


# ---------------------------------------------------------------------------
# GET /documents/overview
# ---------------------------------------------------------------------------

@router.get(
    "/overview",
    response_model=DocumentOverviewResponse,
    summary="Processing overview for operators",
)
async def get_overview(service: DocumentServiceDep) -> DocumentOverviewResponse:
    return await service.overview()


# ---------------------------------------------------------------------------
# POST /documents/{document_id}/process
# ---------------------------------------------------------------------------

@router.post(
    "/{document_id}/process",
    response_model=ProcessRequestResponse,
    status_code=status.HTTP_202_ACCEPTED,
    summary="Queue a document for processing",
    responses={
        200: {"model": ProcessRequestResponse, "description": "Already processed; nothing queued"},
        404: {"model": ErrorResponse},
        409: {"model": ErrorResponse},
        503: {"model": ErrorResponse},
    },
)
async def process_document(
    document_id: UUID,
    response:    Response,
    service:     DocumentServiceDep,
    force:       bool = Query(False, description="Reprocess a completed document"),
) -> ProcessRequestResponse:
    try:
        result = await service.request_processing(document_id, force=force)
    except _DOMAIN_ERRORS as exc:
        raise _http_error(exc) from exc

    if result.job_id is None and result.status is DocumentStatus.COMPLETED:
        response.status_code = status.HTTP_200_OK
    return result


# ---------------------------------------------------------------------------
# GET /documents/{document_id}/status
# ---------------------------------------------------------------------------

@router.get(
    "/{document_id}/status",
    response_model=DocumentStatusResponse,
    summary="Poll processing status",
    responses={404: {"model": ErrorResponse}},
)
async def get_document_status(document_id: UUID, service: DocumentServiceDep) -> DocumentStatusResponse:
    try:
        return await service.get_status(document_id)
    except _DOMAIN_ERRORS as exc:
        raise _http_error(exc) from exc


# ---------------------------------------------------------------------------
# POST /documents/{document_id}/fetch
# ---------------------------------------------------------------------------

@router.post(
    "/{document_id}/fetch",
    response_model=DocumentStatusResponse,
    summary="Extract a webpage or video source",
    responses={
        400: {"model": ErrorResponse},
        404: {"model": ErrorResponse},
        409: {"model": ErrorResponse},
    },
)
async def fetch_document_source(document_id: UUID, service: DocumentServiceDep) -> DocumentStatusResponse:
    """Extraction failures are reported in the returned status, not as HTTP errors."""
    try:
        return await service.fetch_source(document_id)
    except _DOMAIN_ERRORS as exc:
        raise _http_error(exc) from exc


# ---------------------------------------------------------------------------
# DELETE /documents/{document_id}
# ---------------------------------------------------------------------------

@router.delete(
    "/{document_id}",
    response_model=DeleteResponse,
    summary="Delete a document, its chunks and its vectors",
    responses={
        404: {"model": ErrorResponse},
        502: {"model": ErrorResponse},
    },
)
async def delete_document(document_id: UUID, service: DocumentServiceDep) -> DeleteResponse:
    try:
        return await service.delete_document(document_id)
    except _DOMAIN_ERRORS as exc:
        raise _http_error(exc) from exc
