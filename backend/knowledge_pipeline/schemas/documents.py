"""
Document Processing — Pydantic Request/Response Schemas

Covers:
  - The document status enum shared by worker, services and API
  - Processing request / status poll responses
  - Bot-scoped similarity search
  - Queue and operator overview payloads
  - Structured error bodies (400, 404, 409, 422, 500, 503)

Design decisions:
  - Identifiers are UUIDs; timestamps are timezone-aware UTC datetimes.
  - `status` is the document lifecycle state; job progress is reported
    separately because it lives in the queue, not the relational store.
"""

from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Any
from uuid import UUID

from pydantic import BaseModel, Field


# ---------------------------------------------------------------------------
# Lifecycle enums
# ---------------------------------------------------------------------------

class DocumentStatus(str, Enum):
    """
    Maps to knowledge.documents.status.
    Transitions: uploaded|fetched → processing → completed | error
                 error → pending → processing
    """
    UPLOADED   = "uploaded"     # source accepted, nothing processed yet
    FETCHED    = "fetched"      # webpage/video text extracted
    PENDING    = "pending"      # re-queued (retry or stale reset)
    PROCESSING = "processing"   # worker actively chunking + embedding
    COMPLETED  = "completed"    # vectors indexed
    ERROR      = "error"        # pipeline failure, see error_message


class SourceType(str, Enum):
    PDF     = "pdf"
    DOCX    = "docx"
    TXT     = "txt"
    WEBPAGE = "webpage"
    VIDEO   = "video"

    @property
    def is_remote(self) -> bool:
        """Sources fetched over the network rather than read from storage."""
        return self in (SourceType.WEBPAGE, SourceType.VIDEO)


class ChunkStatus(str, Enum):
    PENDING  = "pending"
    EMBEDDED = "embedded"
    ERROR    = "error"


# ---------------------------------------------------------------------------
# Processing request: POST /documents/{id}/process
# ---------------------------------------------------------------------------

class ProcessRequestResponse(BaseModel):
    """Returned when processing is requested for a document."""
    document_id: UUID
    status:      DocumentStatus
    job_id:      str | None = Field(None, description="Queue job handle; absent when nothing was enqueued")
    message:     str
    was_stale:   bool = Field(False, description="True if a stuck processing run was reset")


# ---------------------------------------------------------------------------
# Document status response: GET /documents/{id}/status
# ---------------------------------------------------------------------------

class DocumentStatusResponse(BaseModel):
    """Polled by clients to track async processing progress."""
    document_id:             UUID
    status:                  DocumentStatus
    progress:                int  = Field(0, ge=0, le=100, description="Job progress marker")
    chunk_count:             int  = 0
    retry_count:             int  = 0
    error_message:           str | None = None
    processing_started_at:   datetime | None = None
    processing_completed_at: datetime | None = None
    processing_metadata:     dict[str, Any] = Field(default_factory=dict)
    was_stale:               bool = False


class DeleteResponse(BaseModel):
    deleted:     bool = True
    document_id: UUID | None = None
    bot_id:      UUID | None = None


# ---------------------------------------------------------------------------
# Search: POST /bots/{bot_id}/search
# ---------------------------------------------------------------------------

class SearchRequest(BaseModel):
    query: str = Field(..., min_length=1, max_length=4000)
    top_k: int = Field(5, ge=1, le=100)


class SearchMatch(BaseModel):
    id:          str
    score:       float
    text:        str
    document_id: str | None = None
    file_name:   str | None = None


class SearchResponse(BaseModel):
    bot_id:   UUID
    matches:  list[SearchMatch] = Field(default_factory=list)
    degraded: bool = Field(False, description="True if the vector backend was unreachable")


# ---------------------------------------------------------------------------
# Operator payloads
# ---------------------------------------------------------------------------

class QueueMetrics(BaseModel):
    waiting:   int = 0
    active:    int = 0
    completed: int = 0
    failed:    int = 0


class QueueStatusResponse(BaseModel):
    service:   str = "document-processing"
    status:    str                    # healthy | degraded
    timestamp: datetime
    queue:     QueueMetrics
    redis:     str                    # connected | disconnected
    thresholds: dict[str, int] = Field(default_factory=dict)


class StuckDocument(BaseModel):
    document_id:           UUID
    file_name:             str
    processing_started_at: datetime | None
    minutes_stuck:         int


class DocumentOverviewResponse(BaseModel):
    timestamp:       datetime
    status_counts:   dict[str, int]
    stuck_documents: list[StuckDocument] = Field(default_factory=list)
    recent_errors:   list[dict[str, Any]] = Field(default_factory=list)
    queue:           QueueMetrics
    recommendations: list[str] = Field(default_factory=list)


# ---------------------------------------------------------------------------
# Structured error bodies
# ---------------------------------------------------------------------------

class ErrorDetail(BaseModel):
    """Single structured error — may appear in a list."""
    field:   str | None = Field(None, description="Request field that caused the error, if applicable")
    message: str
    code:    str         = Field(..., description="Machine-readable error code for client handling")


class ErrorResponse(BaseModel):
    """
    Uniform error envelope for all 4xx/5xx responses.
    Clients should check `error_code` for programmatic handling.
    """
    error_code: str               = Field(..., description="Stable machine-readable code")
    message:    str               = Field(..., description="Human-readable summary")
    details:    list[ErrorDetail] = Field(default_factory=list)
    request_id: str | None        = Field(None, description="Trace ID for log correlation")


# ---------------------------------------------------------------------------
# Pre-defined error factories (keeps route handlers thin)
# ---------------------------------------------------------------------------

class DocumentErrors:
    """Factories for every documented error case."""

    @staticmethod
    def not_found(document_id: UUID) -> ErrorResponse:
        return ErrorResponse(
            error_code="DOCUMENT_NOT_FOUND",
            message=f"Document {document_id} does not exist.",
        )

    @staticmethod
    def already_processing(document_id: UUID, minutes: int) -> ErrorResponse:
        return ErrorResponse(
            error_code="DOCUMENT_BUSY",
            message="Document is already being processed.",
            details=[
                ErrorDetail(
                    field=None,
                    message=(
                        f"Document {document_id} entered processing {minutes} minute(s) ago. "
                        "It will be reset automatically if it stays stuck."
                    ),
                    code="DOCUMENT_BUSY",
                )
            ],
        )

    @staticmethod
    def invalid_transition(current: str, target: str) -> ErrorResponse:
        return ErrorResponse(
            error_code="INVALID_STATE",
            message=f"Document cannot move from '{current}' to '{target}'.",
        )

    @staticmethod
    def not_fetchable(file_type: str) -> ErrorResponse:
        return ErrorResponse(
            error_code="SOURCE_NOT_FETCHABLE",
            message="Only webpage and video documents can be fetched.",
            details=[
                ErrorDetail(
                    field="file_type",
                    message=f"'{file_type}' documents are read from storage.",
                    code="SOURCE_NOT_FETCHABLE",
                )
            ],
        )

    @staticmethod
    def vector_store_error(detail: str | None = None) -> ErrorResponse:
        return ErrorResponse(
            error_code="VECTOR_STORE_ERROR",
            message="The vector index could not be updated. Please retry.",
            details=(
                [ErrorDetail(field=None, message=detail, code="VECTOR_STORE_ERROR")]
                if detail
                else []
            ),
        )

    @staticmethod
    def queue_error() -> ErrorResponse:
        return ErrorResponse(
            error_code="QUEUE_ERROR",
            message="Document could not be queued for processing.",
            details=[
                ErrorDetail(
                    field=None,
                    message="The queue backend may be temporarily unavailable. Please retry.",
                    code="QUEUE_ERROR",
                )
            ],
        )

    @staticmethod
    def internal_error(request_id: str | None = None) -> ErrorResponse:
        return ErrorResponse(
            error_code="INTERNAL_ERROR",
            message="An unexpected error occurred. Our team has been notified.",
            details=[],
            request_id=request_id,
        )
