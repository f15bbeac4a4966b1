"""
Web page extraction.

Flow:
  1. robots.txt permission check (PermissionChecker); a disallow stops
     here, before the page itself is requested
  2. GET the page under a hard 15 s deadline
  3. Main-content extraction with trafilatura
  4. Fallback: whole-body text via BeautifulSoup (scripts/styles removed)
  5. Nothing left → error result
"""

from __future__ import annotations

import asyncio
import logging
import re

import httpx
import trafilatura
from bs4 import BeautifulSoup

from knowledge_pipeline.scraping.result import ExtractionResult
from knowledge_pipeline.scraping.robots import PermissionChecker

logger = logging.getLogger(__name__)

_WS_RE = re.compile(r"\s\s+")

_ACCEPT = "text/html,application/xhtml+xml,application/xml;q=0.9,*/*;q=0.8"

_NOISE_TAGS = ["script", "style", "noscript", "template", "svg"]


def _collapse(text: str) -> str:
    return _WS_RE.sub(" ", text).strip()


def _title_from_soup(soup: BeautifulSoup) -> str:
    if soup.title and soup.title.string:
        return soup.title.string.strip()
    h1 = soup.find("h1")
    if h1:
        return h1.get_text(strip=True)
    return ""


def _description_from_soup(soup: BeautifulSoup) -> str | None:
    tag = soup.find("meta", attrs={"name": "description"}) or soup.find(
        "meta", attrs={"property": "og:description"}
    )
    if tag and tag.get("content"):
        return tag["content"].strip() or None
    return None


class WebPageExtractor:

    def __init__(
        self,
        client:      httpx.AsyncClient,
        permissions: PermissionChecker,
        user_agent:  str,
        timeout:     float = 15.0,
    ) -> None:
        self._client = client
        self._permissions = permissions
        self._user_agent = user_agent
        self._timeout = timeout

    async def fetch_html(self, url: str) -> httpx.Response:
        """GET a page; cancelled outright once the deadline passes."""
        return await asyncio.wait_for(
            self._client.get(
                url,
                headers={"User-Agent": self._user_agent, "Accept": _ACCEPT},
                follow_redirects=True,
            ),
            timeout=self._timeout,
        )

    async def extract(self, url: str) -> ExtractionResult:
        logger.info("Extracting webpage | url=%s", url)
        try:
            decision = await self._permissions.check(url)
            if not decision.allowed:
                return ExtractionResult.failure(url, f"Scraping disallowed by robots.txt for {url}")

            try:
                resp = await self.fetch_html(url)
            except asyncio.TimeoutError:
                return ExtractionResult.failure(
                    url, f"Timed out fetching {url} after {self._timeout:.0f}s",
                )

            if resp.status_code >= 400:
                message = (
                    f"Failed to fetch URL: {url}. Status: {resp.status_code} {resp.reason_phrase}"
                )
                logger.error(message)
                return ExtractionResult.failure(url, message)

            return self.parse_html(resp.text, url)

        except Exception as exc:
            logger.exception("Webpage extraction failed | url=%s", url)
            return ExtractionResult.failure(url, f"Error processing URL {url}: {exc}")

    def parse_html(self, html: str, url: str) -> ExtractionResult:
        """Extract readable text from raw HTML."""
        soup = BeautifulSoup(html, "html.parser")
        title = _title_from_soup(soup) or url
        excerpt = _description_from_soup(soup)

        main = trafilatura.extract(
            html,
            include_comments=False,
            include_tables=True,
            include_images=False,
        )
        if main and main.strip():
            text = _collapse(main)
            logger.info("Extracted main content | url=%s chars=%d", url, len(text))
            return ExtractionResult(title=title, text=text, source_url=url, excerpt=excerpt)

        logger.warning("Main-content extraction empty, using body text | url=%s", url)
        for tag in soup(_NOISE_TAGS):
            tag.decompose()
        body = soup.body or soup
        text = _collapse(body.get_text(separator=" "))
        if not text:
            message = f"Failed to extract any meaningful text content from {url}."
            logger.error(message)
            return ExtractionResult.failure(url, message, title=title)

        return ExtractionResult(title=title, text=text, source_url=url, excerpt=excerpt)
