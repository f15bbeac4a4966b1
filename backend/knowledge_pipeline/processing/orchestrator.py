"""
Document Processor — extract → chunk → embed → index

Called by DocumentWorker once the document is marked `processing`.
Sets the document's terminal status itself:

  completed   chunks stored (or nothing to store)
  error       extraction, embedding or indexing failed; the exception is
              re-raised so the worker and queue can apply the retry policy

Re-processing is idempotent per document: prior vectors (by document_id)
and prior chunk rows are removed before anything new is written, so a
document never carries two chunks at the same ordinal position.
"""

from __future__ import annotations

import logging
import time
import uuid
from dataclasses import dataclass
from typing import Callable

from knowledge_pipeline.db.repository import DocumentRepository
from knowledge_pipeline.models.documents import Chunk
from knowledge_pipeline.processing.chunking import TextChunker
from knowledge_pipeline.processing.embeddings import EmbeddingService
from knowledge_pipeline.processing.extractor import extract_file_text
from knowledge_pipeline.schemas.documents import ChunkStatus, DocumentStatus, SourceType
from knowledge_pipeline.scraping import ContentExtractor
from knowledge_pipeline.storage.s3 import S3StorageService, extracted_text_key
from knowledge_pipeline.vectorstore.base import VectorRecord, VectorStoreBase

logger = logging.getLogger(__name__)

NO_CONTENT_MESSAGE = "No content to process."


class ProcessingError(Exception):
    """A pipeline step failed; the document is already marked `error`."""


@dataclass
class DocumentRef:
    """The subset of a Document the processor needs."""
    id:         uuid.UUID
    bot_id:     uuid.UUID
    file_name:  str
    file_path:  str
    file_type:  str
    prefetched: bool = False   # remote text already stored by fetch_source

    @classmethod
    def from_row(cls, doc) -> "DocumentRef":
        return cls(
            id=doc.id,
            bot_id=doc.bot_id,
            file_name=doc.file_name,
            file_path=doc.file_path,
            file_type=doc.file_type,
            prefetched=doc.status == DocumentStatus.FETCHED.value,
        )


@dataclass
class ProcessOutcome:
    chunks_created: int
    chunks_failed:  int = 0
    message:        str | None = None


class DocumentProcessor:

    def __init__(
        self,
        repository:   DocumentRepository,
        vector_store: VectorStoreBase,
        storage:      S3StorageService | None = None,
        embeddings:   EmbeddingService | None = None,
        chunker:      TextChunker | None = None,
        extractor_factory: Callable[[], ContentExtractor] = ContentExtractor,
    ) -> None:
        self._repo = repository
        self._store = vector_store
        self._storage = storage or S3StorageService()
        self._embeddings = embeddings or EmbeddingService()
        self._chunker = chunker or TextChunker()
        self._extractor_factory = extractor_factory

    async def process(self, document: DocumentRef) -> ProcessOutcome:
        t0 = time.monotonic()
        doc_id = document.id
        logger.info(
            "Processing | doc=%s bot=%s type=%s", doc_id, document.bot_id, document.file_type,
        )

        # --- Phase 1: Text ----------------------------------------------
        text = await self._load_text(document)

        # --- Phase 2: Chunking ------------------------------------------
        chunks = self._chunker.split(text)
        logger.info("Chunked | doc=%s chunks=%d", doc_id, len(chunks))

        # --- Phase 3: Clear previous run --------------------------------
        # Vector delete failures propagate; stale vectors must not survive
        await self._store.delete_by_document(str(doc_id))
        await self._repo.delete_chunks(doc_id)

        if not chunks:
            await self._repo.set_status(doc_id, DocumentStatus.COMPLETED, chunk_count=0)
            logger.info("Nothing to index | doc=%s", doc_id)
            return ProcessOutcome(chunks_created=0, message=NO_CONTENT_MESSAGE)

        rows = [
            Chunk(
                id=uuid.uuid4(),
                document_id=doc_id,
                bot_id=document.bot_id,
                chunk_index=c.index,
                text=c.text,
                token_count=c.token_estimate,
                status=ChunkStatus.PENDING.value,
            )
            for c in chunks
        ]
        await self._repo.insert_chunks(rows)

        # --- Phase 4: Embedding -----------------------------------------
        try:
            vectors = await self._embeddings.embed_documents([c.text for c in chunks])
        except Exception as exc:
            await self._fail(doc_id, f"Embedding error: {exc}", [r.id for r in rows])
            raise ProcessingError(f"Embedding error: {exc}") from exc

        # --- Phase 5: Vector upsert -------------------------------------
        records = [
            VectorRecord.for_chunk(
                chunk_id=str(row.id),
                vector=vector,
                bot_id=str(document.bot_id),
                document_id=str(doc_id),
                text=row.text,
                file_name=document.file_name,
                file_type=document.file_type,
            )
            for row, vector in zip(rows, vectors)
        ]
        outcome = await self._store.upsert(records)

        by_id = {str(r.id): r.id for r in rows}
        await self._repo.set_chunk_status([by_id[i] for i in outcome.stored_ids], ChunkStatus.EMBEDDED)
        await self._repo.set_chunk_status([by_id[i] for i in outcome.failed_ids], ChunkStatus.ERROR)

        if outcome.stored_count == 0:
            message = f"Vector upsert failed for all {len(records)} chunks"
            await self._repo.set_status(doc_id, DocumentStatus.ERROR, error_message=message)
            raise ProcessingError(message)

        await self._repo.set_status(
            doc_id, DocumentStatus.COMPLETED, chunk_count=outcome.stored_count,
        )
        logger.info(
            "Processing complete | doc=%s chunks=%d failed=%d elapsed_ms=%.0f",
            doc_id, outcome.stored_count, len(outcome.failed_ids),
            (time.monotonic() - t0) * 1000,
        )
        return ProcessOutcome(
            chunks_created=outcome.stored_count,
            chunks_failed=len(outcome.failed_ids),
        )

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    async def _load_text(self, document: DocumentRef) -> str:
        source = SourceType(document.file_type)
        try:
            if source.is_remote and document.prefetched:
                raw = await self._storage.get_object(
                    extracted_text_key(str(document.bot_id), str(document.id))
                )
                return raw.decode("utf-8")

            if source.is_remote:
                async with self._extractor_factory() as extractor:
                    result = await extractor.extract(document.file_path, source.value)
                if result.error:
                    raise ProcessingError(result.error)
                return result.text

            data = await self._storage.get_object(document.file_path)
            return extract_file_text(data, document.file_type, document.file_name)

        except ProcessingError as exc:
            await self._fail(document.id, str(exc))
            raise
        except Exception as exc:
            message = f"Text extraction error: {exc}"
            await self._fail(document.id, message)
            raise ProcessingError(message) from exc

    async def _fail(
        self,
        document_id: uuid.UUID,
        message: str,
        chunk_ids: list[uuid.UUID] | None = None,
    ) -> None:
        logger.error("Processing failed | doc=%s error=%s", document_id, message)
        if chunk_ids:
            await self._repo.set_chunk_status(chunk_ids, ChunkStatus.ERROR)
        await self._repo.set_status(document_id, DocumentStatus.ERROR, error_message=message)
