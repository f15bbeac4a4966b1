"""
Document Processing Package
════════════════════════════

The per-document pipeline a worker invokes once it has claimed a job:

  Text (file bytes or remote source) → Chunking → Embedding → Vector Upsert

Modules
───────
  extractor.py     File text extraction (pypdf, python-docx, plain text)
  chunking.py      Fixed-window character chunker with overlap
  embeddings.py    Batch embeddings with retry
  orchestrator.py  DocumentProcessor tying the steps together
"""

from knowledge_pipeline.processing.chunking import TextChunk, TextChunker
from knowledge_pipeline.processing.embeddings import EmbeddingService
from knowledge_pipeline.processing.extractor import UnsupportedFileType, extract_file_text
from knowledge_pipeline.processing.orchestrator import (
    DocumentProcessor,
    DocumentRef,
    ProcessingError,
    ProcessOutcome,
)

__all__ = [
    "TextChunk",
    "TextChunker",
    "EmbeddingService",
    "UnsupportedFileType",
    "extract_file_text",
    "DocumentProcessor",
    "DocumentRef",
    "ProcessingError",
    "ProcessOutcome",
]
