"""Duplicate detection against the caller's existing links."""

import asyncio
import json
import os
from abc import ABC, abstractmethod
from typing import Iterable, List, Optional
from urllib.parse import urlsplit

from pydantic import BaseModel, ValidationError

from linkflow.jobs.models import DuplicateCheck, DuplicateMatch, DuplicateStatus

DUPLICATE_THRESHOLD = 0.9
SIMILAR_THRESHOLD = 0.7
SAME_HOST_SCORE = 0.8
MAX_MATCHES = 10


class ExistingLink(BaseModel):
    id: str
    url: str
    title: Optional[str] = None


class DuplicateLookupError(Exception):
    pass


def normalize_url(url: str) -> str:
    parts = urlsplit(url.strip())
    host = (parts.hostname or "").lower()
    if host.startswith("www."):
        host = host[4:]
    path = parts.path.rstrip("/")
    query = f"?{parts.query}" if parts.query else ""
    return f"{host}{path}{query}"


def _hostname(url: str) -> str:
    host = (urlsplit(url.strip()).hostname or "").lower()
    return host[4:] if host.startswith("www.") else host


def levenshtein(a: str, b: str) -> int:
    if a == b:
        return 0
    if len(a) < len(b):
        a, b = b, a
    previous = list(range(len(b) + 1))
    for i, ca in enumerate(a, 1):
        current = [i]
        for j, cb in enumerate(b, 1):
            current.append(min(
                previous[j] + 1,
                current[j - 1] + 1,
                previous[j - 1] + (ca != cb),
            ))
        previous = current
    return previous[-1]


def title_similarity(a: Optional[str], b: Optional[str]) -> float:
    a = (a or "").strip().lower()
    b = (b or "").strip().lower()
    if not a or not b:
        return 0.0
    longest = max(len(a), len(b))
    return 1.0 - levenshtein(a, b) / longest


def score_link(url: str, title: Optional[str], link: ExistingLink) -> Optional[DuplicateMatch]:
    """Best similarity between a candidate and one existing link, or None if unrelated."""
    if normalize_url(url) == normalize_url(link.url):
        return DuplicateMatch(link_id=link.id, url=link.url, title=link.title, similarity_score=1.0, match_type="url")

    best: Optional[DuplicateMatch] = None
    if _hostname(url) and _hostname(url) == _hostname(link.url):
        best = DuplicateMatch(
            link_id=link.id, url=link.url, title=link.title, similarity_score=SAME_HOST_SCORE, match_type="url"
        )
    similarity = title_similarity(title, link.title)
    if similarity > (best.similarity_score if best else 0.0):
        best = DuplicateMatch(
            link_id=link.id, url=link.url, title=link.title, similarity_score=round(similarity, 4), match_type="title"
        )
    return best


def classify_matches(matches: Iterable[DuplicateMatch]) -> DuplicateCheck:
    kept = [m for m in matches if m.similarity_score > SIMILAR_THRESHOLD]
    kept.sort(key=lambda m: m.similarity_score, reverse=True)
    kept = kept[:MAX_MATCHES]
    if not kept:
        return DuplicateCheck(status=DuplicateStatus.UNIQUE)
    status = DuplicateStatus.DUPLICATE if kept[0].similarity_score > DUPLICATE_THRESHOLD else DuplicateStatus.SIMILAR
    return DuplicateCheck(status=status, matches=kept)


class LinkIndex(ABC):
    """Source of the links a new item is compared against."""

    @abstractmethod
    async def existing_links(self, user_id: str) -> List[ExistingLink]:
        ...

    async def find_similar(self, user_id: str, url: str, title: Optional[str]) -> DuplicateCheck:
        links = await self.existing_links(user_id)
        matches = [m for m in (score_link(url, title, link) for link in links) if m is not None]
        return classify_matches(matches)


class InMemoryLinkIndex(LinkIndex):
    def __init__(self, links: Optional[Iterable[ExistingLink]] = None):
        self._links: List[ExistingLink] = list(links or [])

    def add(self, link: ExistingLink) -> None:
        self._links.append(link)

    async def existing_links(self, user_id: str) -> List[ExistingLink]:
        return list(self._links)


class JsonFileLinkIndex(LinkIndex):
    """Reads a JSON array of ``{id, url, title}`` objects, re-read on every lookup."""

    def __init__(self, path: str):
        self.path = path

    def _load(self) -> List[ExistingLink]:
        if not os.path.exists(self.path):
            return []
        with open(self.path, "r", encoding="utf-8") as fh:
            rows = json.load(fh)
        return [ExistingLink.model_validate(row) for row in rows]

    async def existing_links(self, user_id: str) -> List[ExistingLink]:
        try:
            return await asyncio.to_thread(self._load)
        except (OSError, ValueError, ValidationError) as exc:
            raise DuplicateLookupError(f"Could not read links from {self.path}: {exc}") from exc
