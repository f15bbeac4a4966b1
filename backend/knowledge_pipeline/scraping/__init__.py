"""
Content Extraction Package
══════════════════════════

Turns a remote source (web page or video URL) into plain text plus metadata.

Modules
───────
  robots.py   robots.txt parsing and permission decisions
  web.py      page fetch + readable-content extraction
  video.py    video URL parsing + caption transcript formatting
  result.py   ExtractionResult shared by all extractors

Uploaded files never pass through here; their bytes go straight to
knowledge_pipeline.processing.extractor.
"""

from __future__ import annotations

import logging

import httpx

from knowledge_pipeline.core.config import settings
from knowledge_pipeline.scraping.result import ExtractionResult
from knowledge_pipeline.scraping.robots import PermissionChecker
from knowledge_pipeline.scraping.video import (
    TranscriptFetcher,
    VideoTranscriptExtractor,
    parse_video_url,
)
from knowledge_pipeline.scraping.web import WebPageExtractor

logger = logging.getLogger(__name__)


class ContentExtractor:
    """
    Dispatches a URL to the video or web extractor.

    Usage:
        async with ContentExtractor() as extractor:
            result = await extractor.extract("https://example.com/article")
            if result.error: ...
    """

    def __init__(
        self,
        client: httpx.AsyncClient | None = None,
        fetch_transcript: TranscriptFetcher | None = None,
    ) -> None:
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(timeout=settings.fetch_timeout_seconds)

        header = settings.crawler_header
        self._web = WebPageExtractor(
            client=self._client,
            permissions=PermissionChecker(self._client, settings.crawler_user_agent),
            user_agent=header,
            timeout=settings.fetch_timeout_seconds,
        )
        self._video = VideoTranscriptExtractor(
            client=self._client,
            user_agent=header,
            fetch_transcript=fetch_transcript,
            timeout=settings.fetch_timeout_seconds,
        )

    async def extract(self, url: str, source_type: str | None = None) -> ExtractionResult:
        """
        Extract text from a URL. Never raises.
        `source_type="video"` forces the transcript path; otherwise the URL
        shape decides.
        """
        ref = parse_video_url(url)
        if ref is not None:
            return await self._video.extract(url, ref)
        if source_type == "video":
            return ExtractionResult.failure(
                url,
                f"Unrecognised video URL {url}; no transcript could be requested.",
            )
        return await self._web.extract(url)

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    async def __aenter__(self) -> "ContentExtractor":
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.aclose()


__all__ = ["ContentExtractor", "ExtractionResult", "parse_video_url"]
