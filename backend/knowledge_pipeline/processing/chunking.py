"""
Text chunking.

Character windows of `chunk_size` with `chunk_overlap` carried between
neighbours, split on the most natural boundary available
(paragraph → line → sentence → word).
"""

from __future__ import annotations

from dataclasses import dataclass

from langchain_text_splitters import RecursiveCharacterTextSplitter

from knowledge_pipeline.core.config import settings

# Rough GPT tokenizer ratio, used for the informational token_count column
CHARS_PER_TOKEN_EST = 4


@dataclass
class TextChunk:
    index:       int
    text:        str

    @property
    def token_estimate(self) -> int:
        return max(1, len(self.text) // CHARS_PER_TOKEN_EST)


class TextChunker:

    def __init__(self, chunk_size: int | None = None, chunk_overlap: int | None = None) -> None:
        self._splitter = RecursiveCharacterTextSplitter(
            chunk_size=chunk_size or settings.chunk_size,
            chunk_overlap=settings.chunk_overlap if chunk_overlap is None else chunk_overlap,
            separators=["\n\n", "\n", ". ", " ", ""],
        )

    def split(self, text: str) -> list[TextChunk]:
        if not text or not text.strip():
            return []
        pieces = [p for p in self._splitter.split_text(text) if p.strip()]
        return [TextChunk(index=i, text=p) for i, p in enumerate(pieces)]
