"""
SQLAlchemy ORM Models — Documents & Chunks

Using SQLAlchemy 2.x mapped classes for full async support.

Ownership:
  Every Document belongs to exactly one bot (bot_id). Chunks carry the
  bot_id as well so they can be purged per bot without a join.

Schema: knowledge (set via __table_args__)
"""

from __future__ import annotations

import uuid
from datetime import datetime
from typing import Optional

from sqlalchemy import (
    BigInteger,
    CheckConstraint,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    Text,
    UniqueConstraint,
    func,
)
from sqlalchemy.dialects.postgresql import JSONB, UUID
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


# ---------------------------------------------------------------------------
# Declarative base: shared across all models
# ---------------------------------------------------------------------------

class Base(DeclarativeBase):
    pass


# ---------------------------------------------------------------------------
# Document model: knowledge.documents
# ---------------------------------------------------------------------------

class Document(Base):
    """
    Tracks a single knowledge source from acceptance → chunking → vector indexing.

    State machine (status column):
        uploaded   — source accepted, processing not yet requested
        fetched    — webpage/video text extracted, awaiting chunking
        pending    — (re)queued after an error or a stale processing run
        processing — worker actively chunking + embedding
        completed  — vectors indexed, available for retrieval
        error      — pipeline failure (see error_message)
    """

    __tablename__ = "documents"
    __table_args__ = (
        CheckConstraint(
            "status IN ('uploaded', 'fetched', 'pending', 'processing', 'completed', 'error')",
            name="documents_status_check",
        ),
        CheckConstraint(
            "file_type IN ('pdf', 'docx', 'txt', 'webpage', 'video')",
            name="documents_file_type_check",
        ),
        Index("idx_documents_bot_id", "bot_id"),
        Index("idx_documents_status", "status", "processing_started_at"),
        {"schema": "knowledge"},
    )

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        primary_key=True,
        default=uuid.uuid4,
        server_default=func.gen_random_uuid(),
    )
    bot_id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), nullable=False)
    user_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        UUID(as_uuid=True),
        nullable=True,
        comment="Requester who added the source",
    )

    # Source reference
    file_name: Mapped[str] = mapped_column(Text, nullable=False)
    file_path: Mapped[str] = mapped_column(
        Text,
        nullable=False,
        comment="S3 object key for uploads, absolute URL for webpage/video sources",
    )
    file_type: Mapped[str] = mapped_column(Text, nullable=False)
    file_size: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0, server_default="0")

    # Processing state machine
    status: Mapped[str] = mapped_column(
        Text,
        nullable=False,
        default="uploaded",
        server_default="uploaded",
    )
    error_message: Mapped[Optional[str]] = mapped_column(
        Text,
        nullable=True,
        comment="Populated only when status='error'",
    )
    retry_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0, server_default="0")
    chunk_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0, server_default="0")

    processing_started_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True), nullable=True,
    )
    processing_completed_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True), nullable=True,
    )
    processing_metadata: Mapped[dict] = mapped_column(
        JSONB,
        nullable=False,
        default=dict,
        server_default="{}",
        comment="Timing, chunk count, job id and worker identity of the last run",
    )

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        server_default=func.now(),
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        server_default=func.now(),
        onupdate=func.now(),
    )

    def __repr__(self) -> str:
        return (
            f"<Document id={self.id} bot={self.bot_id} "
            f"status={self.status} file={self.file_name!r}>"
        )


# ---------------------------------------------------------------------------
# Chunk model: knowledge.chunks
# ---------------------------------------------------------------------------

class Chunk(Base):
    """
    One text passage of a Document.
    The chunk id doubles as the vector id in the vector store.
    """

    __tablename__ = "chunks"
    __table_args__ = (
        CheckConstraint(
            "status IN ('pending', 'embedded', 'error')",
            name="chunks_status_check",
        ),
        UniqueConstraint("document_id", "chunk_index", name="uq_chunks_position"),
        Index("idx_chunks_document_id", "document_id"),
        Index("idx_chunks_bot_id",      "bot_id"),
        {"schema": "knowledge"},
    )

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        primary_key=True,
        default=uuid.uuid4,
    )
    document_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("knowledge.documents.id", ondelete="CASCADE"),
        nullable=False,
    )
    bot_id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), nullable=False)
    chunk_index: Mapped[int] = mapped_column(Integer, nullable=False)
    text: Mapped[str]        = mapped_column(Text, nullable=False)
    token_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0, server_default="0")
    status: Mapped[str] = mapped_column(
        Text,
        nullable=False,
        default="pending",
        server_default="pending",
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        server_default=func.now(),
    )
