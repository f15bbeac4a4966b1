"""
Video transcript extraction.

  parse_video_url     platform + id from a YouTube / Vimeo URL
  format_transcript   timestamped plain text for the knowledge base
  VideoTranscriptExtractor
      fetch captions (youtube-transcript-api) → format → backfill title

A video without a caption track is an error, never an empty success.
"""

from __future__ import annotations

import asyncio
import html
import logging
import re
from dataclasses import dataclass
from typing import Protocol

import httpx
from youtube_transcript_api import YouTubeTranscriptApi

from knowledge_pipeline.scraping.result import ExtractionResult

logger = logging.getLogger(__name__)

_YOUTUBE_PATTERNS = (
    re.compile(r"youtube\.com/watch\?(?:[^#]*&)?v=([A-Za-z0-9_-]{11})"),
    re.compile(r"youtu\.be/([A-Za-z0-9_-]{11})"),
    re.compile(r"youtube(?:-nocookie)?\.com/embed/([A-Za-z0-9_-]{11})"),
    re.compile(r"youtube\.com/v/([A-Za-z0-9_-]{11})"),
    re.compile(r"youtube\.com/shorts/([A-Za-z0-9_-]{11})"),
)
_VIMEO_PATTERN = re.compile(r"vimeo\.com/(?:video/)?(\d+)")
_TITLE_RE = re.compile(r"<title>([^<]+)</title>", re.IGNORECASE)

PARAGRAPH_SECONDS = 30

_NO_CAPTIONS_HINT = (
    "Videos without captions or with disabled transcripts cannot be processed."
)


# ---------------------------------------------------------------------------
# URL parsing
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class VideoRef:
    platform: str      # "youtube" | "vimeo"
    video_id: str


def parse_video_url(url: str) -> VideoRef | None:
    for pattern in _YOUTUBE_PATTERNS:
        m = pattern.search(url)
        if m:
            return VideoRef("youtube", m.group(1))
    m = _VIMEO_PATTERN.search(url)
    if m:
        return VideoRef("vimeo", m.group(1))
    return None


# ---------------------------------------------------------------------------
# Transcript formatting
# ---------------------------------------------------------------------------

@dataclass
class TranscriptSegment:
    text:     str
    start:    float    # seconds
    duration: float    # seconds


def _timestamp(seconds: float) -> str:
    mins, secs = divmod(int(seconds), 60)
    return f"{mins}:{secs:02d}"


def transcript_duration(segments: list[TranscriptSegment]) -> float:
    if not segments:
        return 0.0
    last = segments[-1]
    return last.start + last.duration


def format_transcript(video_id: str, title: str, segments: list[TranscriptSegment]) -> str:
    """
    Header followed by paragraphs; a new paragraph (with an [m:ss] marker)
    starts whenever 30 s have passed since the previous marker.
    """
    duration = transcript_duration(segments)
    out = [
        f"# Video Transcript: {title}\n"
        f"Video ID: {video_id}\n"
        f"Duration: {int(duration // 60)} minutes {int(duration % 60)} seconds\n"
        "\n---\n\n"
    ]

    paragraph: list[str] = []
    marker = 0
    for seg in segments:
        if seg.start - marker >= PARAGRAPH_SECONDS:
            if paragraph:
                out.append(f"[{_timestamp(marker)}] {' '.join(paragraph)}\n\n")
                paragraph = []
            marker = int(seg.start // PARAGRAPH_SECONDS) * PARAGRAPH_SECONDS
        text = seg.text.strip()
        if text:
            paragraph.append(text)

    if paragraph:
        out.append(f"[{_timestamp(marker)}] {' '.join(paragraph)}\n")

    return "".join(out)


# ---------------------------------------------------------------------------
# Transcript source
# ---------------------------------------------------------------------------

class TranscriptFetcher(Protocol):
    async def __call__(self, video_id: str) -> list[TranscriptSegment]: ...


async def fetch_youtube_transcript(video_id: str) -> list[TranscriptSegment]:
    """Fetch the caption track via youtube-transcript-api (blocking → executor)."""
    def _fetch() -> list[dict]:
        return YouTubeTranscriptApi().fetch(video_id).to_raw_data()

    loop = asyncio.get_running_loop()
    raw = await loop.run_in_executor(None, _fetch)
    return [
        TranscriptSegment(
            text=html.unescape(item["text"]),
            start=float(item["start"]),
            duration=float(item.get("duration", 0.0)),
        )
        for item in raw
    ]


# ---------------------------------------------------------------------------
# Extractor
# ---------------------------------------------------------------------------

class VideoTranscriptExtractor:

    def __init__(
        self,
        client:     httpx.AsyncClient,
        user_agent: str,
        fetch_transcript: TranscriptFetcher | None = None,
        timeout:    float = 15.0,
    ) -> None:
        self._client = client
        self._user_agent = user_agent
        self._fetch_transcript = fetch_transcript or fetch_youtube_transcript
        self._timeout = timeout

    async def extract(self, url: str, ref: VideoRef) -> ExtractionResult:
        if ref.platform != "youtube":
            return ExtractionResult.failure(
                url,
                f"Transcript extraction is not supported for {ref.platform} videos. "
                f"{_NO_CAPTIONS_HINT}",
                title=f"{ref.platform.title()} Video (ID: {ref.video_id})",
            )

        logger.info("Extracting video transcript | video=%s", ref.video_id)
        try:
            segments = await self._fetch_transcript(ref.video_id)
            if not any(seg.text.strip() for seg in segments):
                raise LookupError("No transcript available for this video")
        except Exception as exc:
            logger.error("Transcript fetch failed | video=%s error=%s", ref.video_id, exc)
            return ExtractionResult.failure(
                url,
                f"YouTube transcript extraction failed: {exc}. {_NO_CAPTIONS_HINT}",
                title=f"YouTube Video (ID: {ref.video_id})",
            )

        title = await self._page_title(url) or f"YouTube Video {ref.video_id}"
        duration = transcript_duration(segments)
        text = format_transcript(ref.video_id, title, segments)

        logger.info(
            "Transcript extracted | video=%s segments=%d chars=%d",
            ref.video_id, len(segments), len(text),
        )
        return ExtractionResult(
            title=title,
            text=text,
            source_url=url,
            excerpt=(
                f"Video transcript with {len(segments)} segments, "
                f"duration: {int(duration // 60)} minutes"
            ),
        )

    async def _page_title(self, url: str) -> str | None:
        """Best effort: read <title> from the watch page."""
        try:
            resp = await asyncio.wait_for(
                self._client.get(url, headers={"User-Agent": self._user_agent}, follow_redirects=True),
                timeout=self._timeout,
            )
        except (httpx.HTTPError, asyncio.TimeoutError) as exc:
            logger.warning("Could not fetch video title | url=%s error=%s", url, exc)
            return None
        if resp.status_code != 200:
            return None
        m = _TITLE_RE.search(resp.text)
        if not m:
            return None
        title = html.unescape(m.group(1)).replace(" - YouTube", "").strip()
        return title or None
