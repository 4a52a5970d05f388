"""Content extraction: fetch a page and pull title, description and readable text."""

from __future__ import annotations

import logging
import math
import re
from abc import ABC, abstractmethod

import httpx
from bs4 import BeautifulSoup

from linkflow.jobs.models import ExtractedContent

logger = logging.getLogger(__name__)

MAX_TEXT_CHARS = 5000
WORDS_PER_MINUTE = 200
DEFAULT_USER_AGENT = "LinkflowBot/1.0 (link enrichment)"

_WS_RE = re.compile(r"\s+")


class ContentExtractor(ABC):
    @abstractmethod
    async def extract_content(self, url: str) -> ExtractedContent:
        """Return best-effort content. Network failures are reported in ``error``."""
        ...


def _meta(soup: BeautifulSoup, *names: str) -> str:
    for name in names:
        tag = soup.find("meta", attrs={"name": name}) or soup.find("meta", attrs={"property": name})
        if tag and tag.get("content"):
            return tag["content"].strip()
    return ""


def parse_html(html: str) -> ExtractedContent:
    soup = BeautifulSoup(html or "", "lxml")

    title = ""
    if soup.title and soup.title.string:
        title = soup.title.string.strip()
    if not title:
        title = _meta(soup, "og:title", "twitter:title")

    description = _meta(soup, "description", "og:description", "twitter:description")

    for tag in soup(["script", "style", "noscript", "template"]):
        tag.decompose()
    body = soup.body or soup
    text = _WS_RE.sub(" ", body.get_text(" ", strip=True)).strip()
    words = len(text.split()) if text else 0

    return ExtractedContent(
        title=title,
        description=description,
        text_content=text[:MAX_TEXT_CHARS],
        meta_description=description,
        author=_meta(soup, "author", "article:author"),
        publish_date=_meta(soup, "article:published_time", "date", "pubdate"),
        word_count=words,
        reading_time=math.ceil(words / WORDS_PER_MINUTE) if words else 0,
    )


class HttpContentExtractor(ContentExtractor):
    """Fetches pages with httpx and parses them with BeautifulSoup."""

    def __init__(self, timeout_s: float = 20.0, user_agent: str = DEFAULT_USER_AGENT):
        self._timeout_s = timeout_s
        self._headers = {"User-Agent": user_agent}

    async def extract_content(self, url: str) -> ExtractedContent:
        try:
            async with httpx.AsyncClient(
                timeout=self._timeout_s, follow_redirects=True, headers=self._headers
            ) as client:
                response = await client.get(url)
                response.raise_for_status()
                html = response.text or ""
        except httpx.HTTPStatusError as exc:
            logger.warning("Extraction got HTTP %s for %s", exc.response.status_code, url)
            return ExtractedContent(error=f"HTTP {exc.response.status_code}")
        except httpx.HTTPError as exc:
            logger.warning("Extraction failed for %s: %r", url, exc)
            return ExtractedContent(error=f"{type(exc).__name__}: {exc}")

        return parse_html(html)
