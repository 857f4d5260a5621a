"""Field extractor for channel about pages.

YouTube's about page renders the same handful of facts (subscriber count,
video count, total views, join date, country, description) in several
different shapes depending on layout experiment, locale and whether the
data came embedded as JSON or was rendered into the DOM. Instead of one
brittle selector per field, each field has an ordered chain of small
strategies:

    strategy(page) -> value or None

The first strategy that returns a value wins. A field no strategy can
recover is left as None ("unknown"), never 0.

The channel's total view count needs special care. The page usually
reads "... 688 videos / 123,456,789 views ..." in its stats block, but
pinned or featured videos further down also carry "N views" labels.
The text strategy therefore only accepts a views line within
``max_anchor_distance`` lines after the video-count anchor; anything
further away is ignored and the stats-table lookup gets a turn instead.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, asdict
from datetime import datetime
from decimal import Decimal, InvalidOperation
from functools import cached_property, partial
from typing import Any, Callable, Optional

from channel_discovery.embedded import extract_json_after, find_key, runs_text
from channel_discovery.models import RenderedPage

logger = logging.getLogger(__name__)

_SUFFIXES = {"k": Decimal(1_000), "m": Decimal(1_000_000), "b": Decimal(1_000_000_000)}

# A number, optionally grouped with , . space NBSP or apostrophe, and an
# optional K/M/B suffix that isn't the start of a longer word.
_NUMBER = r"\d[\d.,'\u00a0\u202f ]*"
_COUNT_RE = re.compile(r"(%s)\s*([kmb])?(?![a-z])" % _NUMBER, re.IGNORECASE)


def _count_line(word: str) -> re.Pattern:
    return re.compile(
        r"(%s\s*[kmb]?)\s*%s\b" % (_NUMBER, word), re.IGNORECASE
    )


SUBSCRIBERS_RE = _count_line("subscribers?")
VIDEOS_RE = _count_line("videos?")
# A line that is nothing but a channel total, e.g. "123,456,789 views"
VIEWS_LINE_RE = re.compile(r"^(%s\s*[kmb]?)\s*views?$" % _NUMBER, re.IGNORECASE)
JOINED_RE = re.compile(r"^joined\s+(.+)$", re.IGNORECASE)
COUNTRY_RE = re.compile(r"^[A-Z][a-z]+(?:\s+[A-Z][a-z]+)*$")

_DATE_FORMATS = [
    "%b %d, %Y",
    "%B %d, %Y",
    "%d %b %Y",
    "%d %B %Y",
    "%Y-%m-%d",
    "%m/%d/%Y",
    "%b %Y",
]

_STATS_CONTAINERS = "table, .about-stats, #right-column"


# ── Numeric parsing ────────────────────────────────────────────────────────


def parse_count(text: str | None) -> Optional[int]:
    """Parse a human-written count into an exact integer.

    Handles thousands separators ("1,234", "1 234 567", "1.234.567"),
    K/M/B suffixes in either case and decimals before a suffix, keeping
    full precision: "1.25M" is 1250000, not a rounded 1.3M. Trailing words
    ("subscribers", "views") are ignored.

    Returns None when the text holds no number.
    """
    if not text:
        return None

    match = _COUNT_RE.search(text)
    if not match:
        return None

    digits = re.sub(r"[\s']", "", match.group(1))
    suffix = (match.group(2) or "").lower()

    last_sep = max(digits.rfind("."), digits.rfind(","))
    if last_sep == -1:
        number = digits
    else:
        head, tail = digits[:last_sep], digits[last_sep + 1:]
        head = head.replace(".", "").replace(",", "")
        if suffix or len(tail) != 3:
            # "1.25M", "1,5 M", "12.5": the last separator is the decimal point
            number = f"{head}.{tail}" if tail else head
        else:
            # "1,234", "1.234.567": every separator groups thousands
            number = head + tail

    try:
        value = Decimal(number)
    except InvalidOperation:
        logger.debug("Could not parse count from %r", text)
        return None

    if suffix:
        value *= _SUFFIXES[suffix]
    return int(value)


def parse_joined_date(text: str | None) -> Optional[str]:
    """Parse "Joined Mar 5, 2015" (or just the date part) to ISO YYYY-MM-DD."""
    if not text:
        return None

    text = text.strip()
    match = JOINED_RE.match(text)
    if match:
        text = match.group(1).strip()

    for fmt in _DATE_FORMATS:
        try:
            return datetime.strptime(text, fmt).date().isoformat()
        except ValueError:
            continue

    logger.debug("Could not parse joined date: %r", text)
    return None


# ── Page wrapper ───────────────────────────────────────────────────────────


class DetailPage:
    """An about page plus the views of it the strategies share."""

    def __init__(self, page: RenderedPage):
        self.page = page
        # Fields already extracted, in chain order
        self.resolved: dict[str, Any] = {}

    @property
    def soup(self):
        return self.page.soup

    @cached_property
    def lines(self) -> list[str]:
        return self.page.lines

    @cached_property
    def initial_data(self) -> Any:
        return (
            extract_json_after(self.page.html, "var ytInitialData = ")
            or extract_json_after(self.page.html, 'window["ytInitialData"] = ')
        )

    @cached_property
    def about_model(self) -> dict:
        """The ``aboutChannelViewModel`` blob, or {} when the page has none."""
        if not self.initial_data:
            return {}
        model = find_key(self.initial_data, "aboutChannelViewModel")
        return model if isinstance(model, dict) else {}

    @cached_property
    def stats_cells(self) -> list[str]:
        """Text cells of the stats table / right-hand stats column."""
        cells: list[str] = []
        for container in self.soup.select(_STATS_CONTAINERS):
            for line in container.get_text("\n").splitlines():
                if line.strip():
                    cells.append(line.strip())
        return cells

    def embedded_text(self, key: str) -> Optional[str]:
        value = self.about_model.get(key)
        text = runs_text(value) if value is not None else ""
        return text.strip() or None

    def embedded_links(self) -> list[str]:
        """Outbound links listed in the about model, as absolute URLs."""
        urls = []
        for link in self.about_model.get("links", []):
            view = link.get("channelExternalLinkViewModel", link)
            target = runs_text(view.get("link"))
            if not target:
                continue
            if not target.startswith(("http://", "https://")):
                target = "https://" + target
            urls.append(target)
        return urls


Strategy = Callable[[DetailPage], Any]


# ── Count strategies ───────────────────────────────────────────────────────


def _embedded_count(key: str, page: DetailPage) -> Optional[int]:
    return parse_count(page.embedded_text(key))


def _element_count(pattern: re.Pattern, selectors: str, page: DetailPage) -> Optional[int]:
    for el in page.soup.select(selectors):
        match = pattern.search(el.get_text(" ", strip=True))
        if match:
            return parse_count(match.group(1))
    return None


def _line_count(pattern: re.Pattern, page: DetailPage) -> Optional[int]:
    for line in page.lines:
        match = pattern.search(line)
        if match:
            return parse_count(match.group(1))
    return None


def _table_count(pattern: re.Pattern, page: DetailPage) -> Optional[int]:
    for cell in page.stats_cells:
        match = pattern.search(cell)
        if match:
            return parse_count(match.group(1))
    return None


def _views_near_anchor(max_distance: int, page: DetailPage) -> Optional[int]:
    """Total views: the first views line shortly after the video count.

    Only lines repeating the channel's own video count are anchors, so a
    playlist block ("24 videos" / "98,765 views") is never one. Returns
    None (not a far-away match) when no views line is close enough to an
    anchor, so a pinned video's view count is never taken for the
    channel total.
    """
    lines = page.lines
    expected = page.resolved.get("video_count")
    anchors = []
    for i, line in enumerate(lines):
        match = VIDEOS_RE.search(line)
        if not match:
            continue
        count = parse_count(match.group(1))
        if expected is None:
            expected = count
        if count == expected:
            anchors.append(i)
    if not anchors:
        return None

    # The header and the stats block can both show the video count
    for anchor in anchors:
        for line in lines[anchor + 1:anchor + 1 + max_distance]:
            match = VIEWS_LINE_RE.match(line)
            if match:
                return parse_count(match.group(1))

    logger.debug("No views line within %d lines of the video count", max_distance)
    return None


def _views_from_stats_table(page: DetailPage) -> Optional[int]:
    cells = page.stats_cells
    for i, cell in enumerate(cells[:-1]):
        if VIDEOS_RE.search(cell):
            match = VIEWS_LINE_RE.match(cells[i + 1])
            if match:
                return parse_count(match.group(1))
    for cell in cells:
        match = VIEWS_LINE_RE.match(cell)
        if match:
            return parse_count(match.group(1))
    return None


# ── Date / place / text strategies ─────────────────────────────────────────


def _joined_from_embedded(page: DetailPage) -> Optional[str]:
    return parse_joined_date(page.embedded_text("joinedDateText"))


def _joined_from_lines(page: DetailPage) -> Optional[str]:
    for line in page.lines:
        if JOINED_RE.match(line):
            return parse_joined_date(line)
    return None


def _country_from_embedded(page: DetailPage) -> Optional[str]:
    return page.embedded_text("country")


def _country_before_joined(page: DetailPage) -> Optional[str]:
    lines = page.lines
    for i in range(1, len(lines)):
        if not JOINED_RE.match(lines[i]):
            continue
        candidate = lines[i - 1]
        if COUNTRY_RE.match(candidate) and not re.search(
            r"subscriber|video|view|http", candidate, re.IGNORECASE
        ):
            return candidate
    return None


def _description_from_embedded(page: DetailPage) -> Optional[str]:
    return page.embedded_text("description")


def _description_from_selector(selector: str, min_length: int, page: DetailPage) -> Optional[str]:
    for el in page.soup.select(selector):
        text = el.get_text("\n", strip=True)
        if len(text) > min_length:
            return text
    return None


def _description_from_meta(page: DetailPage) -> Optional[str]:
    for attrs in ({"name": "description"}, {"property": "og:description"}):
        meta = page.soup.find("meta", attrs=attrs)
        if meta and meta.get("content", "").strip():
            return meta["content"].strip()
    return None


# ── Extractor ──────────────────────────────────────────────────────────────


@dataclass
class AboutFields:
    """Scalar fields recovered from an about page; None = unknown."""

    subscriber_count: Optional[int] = None
    video_count: Optional[int] = None
    view_count: Optional[int] = None
    joined_date: Optional[str] = None
    country: Optional[str] = None
    description: Optional[str] = None

    def to_dict(self) -> dict:
        return {k: v for k, v in asdict(self).items() if v is not None}


class FieldExtractor:
    """Runs the per-field strategy chains over an about page."""

    def __init__(self, max_anchor_distance: int = 3):
        self.max_anchor_distance = max_anchor_distance
        self.chains: dict[str, list[Strategy]] = {
            "subscriber_count": [
                partial(_embedded_count, "subscriberCountText"),
                partial(_element_count, SUBSCRIBERS_RE, "#subscriber-count, yt-formatted-string"),
                partial(_line_count, SUBSCRIBERS_RE),
                partial(_table_count, SUBSCRIBERS_RE),
            ],
            "video_count": [
                partial(_embedded_count, "videoCountText"),
                partial(_element_count, VIDEOS_RE, "#videos-count, yt-formatted-string"),
                partial(_line_count, VIDEOS_RE),
                partial(_table_count, VIDEOS_RE),
            ],
            "view_count": [
                partial(_embedded_count, "viewCountText"),
                partial(_views_near_anchor, max_anchor_distance),
                _views_from_stats_table,
            ],
            "joined_date": [
                _joined_from_embedded,
                _joined_from_lines,
            ],
            "country": [
                _country_from_embedded,
                _country_before_joined,
            ],
            "description": [
                _description_from_embedded,
                partial(_description_from_selector, "yt-attributed-string", 50),
                partial(_description_from_selector, "#description-container", 0),
                partial(_description_from_selector, "#description", 0),
                _description_from_meta,
            ],
        }

    def extract_field(self, name: str, page: DetailPage) -> Any:
        """Return the first value any strategy in ``name``'s chain yields."""
        for strategy in self.chains[name]:
            try:
                value = strategy(page)
            except (AttributeError, KeyError, TypeError, ValueError) as exc:
                logger.debug("Strategy %s for %s raised %s", _strategy_name(strategy), name, exc)
                continue
            if value is not None:
                logger.debug("%s = %r via %s", name, value, _strategy_name(strategy))
                return value
        return None

    def extract(self, page: RenderedPage | DetailPage) -> AboutFields:
        detail = page if isinstance(page, DetailPage) else DetailPage(page)
        for name in self.chains:
            detail.resolved[name] = self.extract_field(name, detail)
        return AboutFields(**detail.resolved)


def _strategy_name(strategy: Strategy) -> str:
    func = strategy.func if isinstance(strategy, partial) else strategy
    return getattr(func, "__name__", repr(func))
