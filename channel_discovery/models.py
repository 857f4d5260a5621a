"""Data models for the channel discovery service."""

from __future__ import annotations

import hashlib
import re
from dataclasses import dataclass, field, asdict
from datetime import datetime, timezone
from enum import Enum
from functools import cached_property
from typing import Optional
from urllib.parse import urlparse

from bs4 import BeautifulSoup

YOUTUBE_BASE_URL = "https://www.youtube.com"

_IDENTITY_PATTERNS = (
    re.compile(r"/channel/([^/?#]+)"),
    re.compile(r"/@([^/?#]+)"),
    re.compile(r"/user/([^/?#]+)"),
    re.compile(r"/c/([^/?#]+)"),
)


class JobState(str, Enum):
    PENDING = "pending"
    COLLECTING = "collecting"
    STREAMING = "streaming"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATES


TERMINAL_STATES = frozenset({JobState.COMPLETED, JobState.FAILED, JobState.CANCELLED})


class EnrichmentState(str, Enum):
    PENDING = "pending"
    ENRICHING = "enriching"
    ENRICHED = "enriched"
    FAILED = "failed"


def utc_now() -> str:
    return datetime.now(timezone.utc).isoformat()


def channel_identity(url: str) -> str:
    """Derive a stable identity from a channel URL.

    ``/channel/UC...`` keeps the id as-is (ids are case-sensitive);
    ``/@Handle`` becomes ``@handle``; legacy ``/user/`` and ``/c/`` paths
    keep their prefix so they can't collide with handles.

    Returns "" when the URL doesn't look like a channel URL.
    """
    path = urlparse(url.strip()).path if "://" in url else url.strip()
    for pattern in _IDENTITY_PATTERNS:
        match = pattern.search(path)
        if not match:
            continue
        value = match.group(1)
        if pattern is _IDENTITY_PATTERNS[0]:
            return value
        if pattern is _IDENTITY_PATTERNS[1]:
            return "@" + value.lower()
        prefix = "user" if pattern is _IDENTITY_PATTERNS[2] else "c"
        return f"{prefix}/{value.lower()}"
    return ""


def absolute_channel_url(href: str) -> str:
    if href.startswith("http://") or href.startswith("https://"):
        return href.split("?")[0].rstrip("/")
    if not href.startswith("/"):
        href = "/" + href
    return (YOUTUBE_BASE_URL + href).split("?")[0].rstrip("/")


@dataclass
class ChannelCandidate:
    """A channel as it appears in one page of the search listing."""

    identity: str
    name: str
    url: str
    thumbnail_url: str = ""
    description: str = ""

    @property
    def fingerprint(self) -> str:
        """Short stable hash of the identity, used in the discovery log."""
        return hashlib.sha256(self.identity.encode()).hexdigest()[:16]

    def to_dict(self) -> dict:
        d = asdict(self)
        d["fingerprint"] = self.fingerprint
        return d


@dataclass(frozen=True)
class EnrichedFields:
    """Everything the about-page visit adds to a channel.

    Written once, as a unit, by the enrichment pool. ``None`` means the
    value could not be recovered from the page, which is not the same as 0.
    """

    subscriber_count: Optional[int] = None
    video_count: Optional[int] = None
    view_count: Optional[int] = None
    joined_date: Optional[str] = None
    country: Optional[str] = None
    description: Optional[str] = None
    emails: tuple[str, ...] = ()
    email_sources: dict[str, str] = field(default_factory=dict)
    social_links: dict[str, str] = field(default_factory=dict)
    within_filters: bool = True
    rejection_reason: Optional[str] = None
    relevance_score: Optional[float] = None

    def to_dict(self) -> dict:
        d = asdict(self)
        d["emails"] = list(self.emails)
        return {k: v for k, v in d.items() if v is not None}


@dataclass
class Channel:
    """One discovered channel within a job.

    ``rank`` and the core fields are fixed at discovery time; only the
    job record may change the enrichment state or attach ``enriched``.
    """

    identity: str
    rank: int
    name: str
    url: str
    thumbnail_url: str = ""
    description: str = ""
    enrichment_state: EnrichmentState = EnrichmentState.PENDING
    enriched: Optional[EnrichedFields] = None
    enrichment_error: Optional[str] = None
    attempts: int = 0
    discovered_at: str = field(default_factory=utc_now)

    @classmethod
    def from_candidate(cls, candidate: ChannelCandidate, rank: int) -> "Channel":
        return cls(
            identity=candidate.identity,
            rank=rank,
            name=candidate.name,
            url=candidate.url,
            thumbnail_url=candidate.thumbnail_url,
            description=candidate.description,
        )

    @property
    def about_url(self) -> str:
        return self.url.rstrip("/") + "/about"

    def to_dict(self) -> dict:
        d = {
            "identity": self.identity,
            "rank": self.rank,
            "name": self.name,
            "url": self.url,
            "thumbnail_url": self.thumbnail_url,
            "description": self.description,
            "enrichment_state": self.enrichment_state.value,
            "attempts": self.attempts,
            "discovered_at": self.discovered_at,
        }
        if self.enriched is not None:
            d["enriched"] = self.enriched.to_dict()
        if self.enrichment_error:
            d["enrichment_error"] = self.enrichment_error
        return d

    def __repr__(self) -> str:
        return (
            f"Channel(rank={self.rank}, identity={self.identity!r}, "
            f"name={self.name!r}, state={self.enrichment_state.value})"
        )


@dataclass
class JobStats:
    discovered: int = 0
    enriched: int = 0
    passing_filter: int = 0
    failed: int = 0

    def to_dict(self) -> dict:
        return asdict(self)


@dataclass
class RenderedPage:
    """A fetched page: raw markup plus its visible text, one line per block."""

    url: str
    html: str
    text: str = ""

    @classmethod
    def from_html(cls, url: str, html: str) -> "RenderedPage":
        page = cls(url=url, html=html)
        page.text = visible_text(page.soup)
        return page

    @cached_property
    def soup(self) -> BeautifulSoup:
        return BeautifulSoup(self.html, "html.parser")

    @property
    def lines(self) -> list[str]:
        return [line.strip() for line in self.text.splitlines() if line.strip()]


def visible_text(soup: BeautifulSoup) -> str:
    """Newline-separated visible text, with scripts and styles removed."""
    clone = BeautifulSoup(str(soup), "html.parser")
    for tag in clone(["script", "style", "noscript", "template"]):
        tag.decompose()
    lines = (line.strip() for line in clone.get_text("\n").splitlines())
    return "\n".join(line for line in lines if line)

