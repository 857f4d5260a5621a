"""Channel filters and relevance scoring.

The filter bag a client sends with a search is opaque to the job
machinery; this module is the only place that interprets it. Checks run
in two stages:

1. Discovery-time: only name and description are known. Music and brand
   channels are dropped before they get a rank.
2. Enrichment-time: subscriber count is now known (maybe). Channels
   outside the requested range are flagged, not removed, because their
   rank has already been shown to the client.

Unknown subscriber counts always pass the range check.

No network calls here: pure Python, cheap enough to run on every
candidate of every listing page.
"""

from __future__ import annotations

import hashlib
import json
import logging
import math
from collections import Counter
from dataclasses import dataclass
from enum import Enum
from typing import Any, Iterable, NamedTuple, Optional

logger = logging.getLogger(__name__)


class RejectionReason(Enum):
    """Why a channel was rejected (or flagged) by the filters."""

    MUSIC = "REJECTED_MUSIC"
    BRAND = "REJECTED_BRAND"
    BELOW_MIN_SUBSCRIBERS = "REJECTED_BELOW_MIN_SUBSCRIBERS"
    ABOVE_MAX_SUBSCRIBERS = "REJECTED_ABOVE_MAX_SUBSCRIBERS"


class FilterResult(NamedTuple):
    """Result of filtering a single channel."""

    passed: bool
    reason: RejectionReason | None = None


MUSIC_KEYWORDS = [
    "music",
    "vevo",
    "records",
    "entertainment",
    "audio",
    "songs",
    "official music",
    "topic",
    "hits",
    "soundtrack",
    "official artist channel",
]

# A music word in the name is fine when the channel teaches about music
MUSIC_EXCEPTIONS = ["tutorial", "lesson", "education", "production", "theory"]

BRAND_INDICATORS = [
    "official",
    "verified",
    "corp",
    "inc.",
    "llc",
    "ltd",
    "company",
    "corporation",
    "enterprises",
    "global",
    "worldwide",
    "international",
]

CREATOR_MARKERS = ["creator", "youtuber", "content creator", "influencer"]

BRAND_SUBSCRIBER_THRESHOLD = 5_000_000


@dataclass
class FilterCriteria:
    min_subscribers: Optional[int] = None
    max_subscribers: Optional[int] = None
    exclude_music_channels: bool = False
    exclude_brands: bool = False

    @classmethod
    def from_dict(cls, raw: dict[str, Any] | None) -> "FilterCriteria":
        """Read the client's filter bag; accepts snake_case or camelCase keys."""
        raw = raw or {}

        def pick(snake: str, camel: str, default: Any = None) -> Any:
            value = raw.get(snake, raw.get(camel, default))
            return default if value is None else value

        return cls(
            min_subscribers=_subscriber_bound("minSubscribers", pick("min_subscribers", "minSubscribers")),
            max_subscribers=_subscriber_bound("maxSubscribers", pick("max_subscribers", "maxSubscribers")),
            exclude_music_channels=bool(pick("exclude_music_channels", "excludeMusicChannels", False)),
            exclude_brands=bool(pick("exclude_brands", "excludeBrands", False)),
        )


def _subscriber_bound(name: str, value: Any) -> Optional[int]:
    """Whole, non-negative subscriber count, or None. Raises ValueError otherwise."""
    if value is None:
        return None
    invalid = ValueError(f"{name} must be a non-negative integer, got {value!r}")
    if isinstance(value, bool) or (isinstance(value, float) and not value.is_integer()):
        raise invalid
    try:
        number = int(value)
    except (TypeError, ValueError):
        raise invalid from None
    if number < 0:
        raise invalid
    return number


def filters_fingerprint(filters: dict[str, Any] | None) -> str:
    """Stable short hash of a filter bag (key order and None values ignored)."""
    cleaned = {k: v for k, v in (filters or {}).items() if v is not None}
    canonical = json.dumps(cleaned, sort_keys=True, separators=(",", ":"), default=str)
    return hashlib.sha256(canonical.encode()).hexdigest()[:16]


# ── Classification ─────────────────────────────────────────────────────────


def is_music_channel(name: str, description: str = "") -> bool:
    """Check if a channel looks like a label / artist / music aggregator."""
    name_lower = name.lower()
    desc_lower = (description or "").lower()

    for kw in MUSIC_KEYWORDS:
        if kw in name_lower:
            if any(exc in name_lower for exc in MUSIC_EXCEPTIONS):
                continue
            return True

    return "official music video" in desc_lower or "vevo" in desc_lower


def is_brand_channel(
    name: str,
    description: str = "",
    subscriber_count: Optional[int] = None,
) -> bool:
    """Check if a channel looks corporate rather than an individual creator."""
    name_lower = name.lower()
    desc_lower = (description or "").lower()
    creator = any(marker in desc_lower for marker in CREATOR_MARKERS)

    for indicator in BRAND_INDICATORS:
        if indicator in name_lower or indicator in desc_lower:
            if creator:
                continue
            return True

    if subscriber_count and subscriber_count > BRAND_SUBSCRIBER_THRESHOLD:
        # Very large channels are usually brands, short names excepted
        if creator or "personal" in desc_lower or len(name.split()) <= 3:
            return False
        return True

    return False


# ── Checks ─────────────────────────────────────────────────────────────────


def check_discovery(name: str, description: str, criteria: FilterCriteria) -> FilterResult:
    """Filter a listing candidate before it is ranked."""
    if criteria.exclude_music_channels and is_music_channel(name, description):
        return FilterResult(False, RejectionReason.MUSIC)
    if criteria.exclude_brands and is_brand_channel(name, description):
        return FilterResult(False, RejectionReason.BRAND)
    return FilterResult(True)


def check_enriched(
    name: str,
    description: str,
    subscriber_count: Optional[int],
    criteria: FilterCriteria,
) -> FilterResult:
    """Re-check a channel once its about page has been read."""
    if subscriber_count is not None:
        if criteria.min_subscribers is not None and subscriber_count < criteria.min_subscribers:
            return FilterResult(False, RejectionReason.BELOW_MIN_SUBSCRIBERS)
        if criteria.max_subscribers is not None and subscriber_count > criteria.max_subscribers:
            return FilterResult(False, RejectionReason.ABOVE_MAX_SUBSCRIBERS)
    if criteria.exclude_brands and is_brand_channel(name, description, subscriber_count):
        return FilterResult(False, RejectionReason.BRAND)
    return FilterResult(True)


def relevance_score(
    keyword: str,
    name: str,
    description: str = "",
    subscriber_count: Optional[int] = None,
    video_count: Optional[int] = None,
) -> float:
    """Score 0-100: name match dominates, then description, then size."""
    score = 0.0
    kw = keyword.strip().lower()
    name_lower = name.strip().lower()

    if kw and kw in name_lower:
        score += 50
        if name_lower == kw:
            score += 30

    if kw and description and kw in description.lower():
        score += 20

    if subscriber_count and subscriber_count > 0:
        score += min(math.log10(subscriber_count) * 2, 20)
    if video_count and video_count > 0:
        score += min(math.log10(video_count) * 1.5, 10)

    return round(min(score, 100.0), 1)


def get_rejection_summary(reasons: Iterable[RejectionReason]) -> dict[str, int]:
    """Count rejections by reason, for logging."""
    return dict(Counter(r.value for r in reasons))
