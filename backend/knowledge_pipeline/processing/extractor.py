"""
File text extraction for uploaded documents.

  pdf   → pypdf, pages joined with blank lines
  docx  → python-docx, non-empty paragraphs
  txt   → UTF-8, latin-1 fallback

Parse errors propagate; the orchestrator records them on the document.
"""

from __future__ import annotations

import io
import logging

logger = logging.getLogger(__name__)


class UnsupportedFileType(ValueError):
    pass


def extract_file_text(data: bytes, file_type: str, file_name: str = "") -> str:
    """Extract plain text from PDF, DOCX or TXT bytes."""
    kind = (file_type or "").lower()
    if kind == "pdf" or file_name.lower().endswith(".pdf"):
        text = _extract_pdf(data)
    elif kind == "docx" or file_name.lower().endswith(".docx"):
        text = _extract_docx(data)
    elif kind in ("txt", "text", "md") or file_name.lower().endswith((".txt", ".md")):
        text = _decode_text(data)
    else:
        raise UnsupportedFileType(f"Unsupported file type '{file_type}' for {file_name or 'document'}")

    logger.info("Text extracted | type=%s bytes=%d chars=%d", kind, len(data), len(text))
    return text


def _decode_text(data: bytes) -> str:
    try:
        return data.decode("utf-8")
    except UnicodeDecodeError:
        return data.decode("latin-1", errors="replace")


def _extract_pdf(data: bytes) -> str:
    """Extract text from PDF bytes using pypdf."""
    from pypdf import PdfReader

    reader = PdfReader(io.BytesIO(data))
    pages = [page.extract_text() or "" for page in reader.pages]
    return "\n\n".join(p for p in pages if p.strip())


def _extract_docx(data: bytes) -> str:
    """Extract text from DOCX bytes using python-docx."""
    import docx

    doc = docx.Document(io.BytesIO(data))
    return "\n".join(para.text for para in doc.paragraphs if para.text.strip())
