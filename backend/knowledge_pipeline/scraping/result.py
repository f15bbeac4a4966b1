"""Shared result type for every content extractor."""

from __future__ import annotations

from dataclasses import dataclass


@dataclass
class ExtractionResult:
    """
    Output of a web or video extraction.

    Extractors never raise: on failure `error` is populated and `text`
    is empty, so callers can record the failure on the document directly.
    """
    title:      str
    text:       str
    source_url: str
    excerpt:    str | None = None
    error:      str | None = None

    @property
    def ok(self) -> bool:
        return self.error is None and bool(self.text)

    @classmethod
    def failure(cls, url: str, error: str, title: str | None = None) -> "ExtractionResult":
        return cls(title=title or url, text="", source_url=url, error=error)
