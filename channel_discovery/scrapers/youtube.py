"""YouTube channel search listing.

The first page is the regular results page filtered to channels
(``sp=EgIQAg%3D%3D``). Its HTML carries everything needed to keep
paginating without a browser:

  - ``"INNERTUBE_API_KEY":"..."``: key for the internal API
  - ``"INNERTUBE_CONTEXT":{...}``: client context to echo back
  - ``var ytInitialData = {...};``: the rendered results as JSON

Every ``channelRenderer`` inside the results is one channel. The next
page comes from POSTing the ``continuationCommand.token`` to
``/youtubei/v1/search``; its response has the same shape, with a new
token until the listing runs out.

If the page arrives without ``ytInitialData`` (consent wall, layout
experiment) the rendered ``ytd-channel-renderer`` elements are parsed
instead. That path can't paginate, so the listing ends after it.
"""

from __future__ import annotations

import logging
from typing import Any, Optional
from urllib.parse import quote_plus

from bs4 import BeautifulSoup

from channel_discovery.config import PipelineConfig
from channel_discovery.embedded import (
    extract_json_after,
    extract_string_value,
    iter_key,
    runs_text,
)
from channel_discovery.fetch import FetchError, PageFetcher
from channel_discovery.models import (
    YOUTUBE_BASE_URL,
    ChannelCandidate,
    absolute_channel_url,
    channel_identity,
)
from channel_discovery.scrapers.base import BaseListingSource

logger = logging.getLogger(__name__)

SEARCH_URL = f"{YOUTUBE_BASE_URL}/results"
CHANNEL_FILTER = "EgIQAg%3D%3D"  # "Type: Channel"
CONTINUATION_URL = f"{YOUTUBE_BASE_URL}/youtubei/v1/search"

_LINK_SELECTORS = ['a[href*="/@"]', 'a[href*="/channel/"]', "a#main-link", "a[href]"]
_NAME_SELECTORS = ["#channel-title #text", "#text", "#channel-title"]
_DESCRIPTION_SELECTORS = ["#description-text", "#description"]


class YouTubeSearchSource(BaseListingSource):
    """Channel-type search results for one keyword, page by page."""

    name = "youtube"

    def __init__(self, keyword: str, fetcher: PageFetcher, config: PipelineConfig):
        super().__init__(keyword, fetcher, config)
        self.api_key: Optional[str] = None
        self.context: Optional[dict[str, Any]] = None
        self.continuation: Optional[str] = None

    @property
    def search_url(self) -> str:
        return f"{SEARCH_URL}?search_query={quote_plus(self.keyword)}&sp={CHANNEL_FILTER}"

    def fetch_page(self) -> list[ChannelCandidate]:
        if self.pages_fetched == 0:
            return self._fetch_first_page()
        return self._fetch_continuation()

    # ------------------------------------------------------------------
    # First page
    # ------------------------------------------------------------------

    def _fetch_first_page(self) -> list[ChannelCandidate]:
        logger.info("[%s] Searching channels for %r", self.name, self.keyword)
        html = self.fetcher.get_text(self.search_url)

        initial_data = extract_json_after(html, "var ytInitialData = ")
        if initial_data is None:
            initial_data = extract_json_after(html, 'window["ytInitialData"] = ')

        if initial_data is None:
            logger.warning("[%s] No ytInitialData on results page - parsing rendered DOM", self.name)
            self._mark_exhausted("rendered DOM fallback cannot paginate")
            return parse_rendered_results(html)

        self.api_key = extract_string_value(html, "INNERTUBE_API_KEY")
        context = extract_json_after(html, '"INNERTUBE_CONTEXT":')
        self.context = context if isinstance(context, dict) else None

        candidates = collect_channels(initial_data)
        self._advance(initial_data)
        if self.api_key is None or self.context is None:
            self._mark_exhausted("no innertube key/context on results page")
        return candidates

    # ------------------------------------------------------------------
    # Continuations
    # ------------------------------------------------------------------

    def _fetch_continuation(self) -> list[ChannelCandidate]:
        client = (self.context or {}).get("client", {})
        url = f"{CONTINUATION_URL}?key={self.api_key}"
        data = self.fetcher.post_json(
            url,
            {"context": self.context, "continuation": self.continuation},
            headers={
                "X-YouTube-Client-Name": "1",
                "X-YouTube-Client-Version": str(client.get("clientVersion", "")),
            },
        )
        if not isinstance(data, dict):
            raise FetchError(url, "unexpected continuation payload")

        candidates = collect_channels(data)
        self._advance(data)
        return candidates

    def _advance(self, data: Any) -> None:
        self.continuation = continuation_token(data)
        if not self.continuation:
            self._mark_exhausted("no continuation token")


# ── Parsing ────────────────────────────────────────────────────────────────


def continuation_token(data: Any) -> Optional[str]:
    """The first ``continuationCommand.token`` in a response, if any."""
    for command in iter_key(data, "continuationCommand"):
        if isinstance(command, dict) and command.get("token"):
            return command["token"]
    return None


def _as_dict(value: Any) -> dict[str, Any]:
    return value if isinstance(value, dict) else {}


def _as_str(value: Any) -> str:
    return value if isinstance(value, str) else ""


def _renderer_to_candidate(renderer: dict[str, Any]) -> Optional[ChannelCandidate]:
    nav = _as_dict(renderer.get("navigationEndpoint"))
    browse = _as_dict(nav.get("browseEndpoint"))
    web_metadata = _as_dict(_as_dict(nav.get("commandMetadata")).get("webCommandMetadata"))
    path = _as_str(web_metadata.get("url")) or _as_str(browse.get("canonicalBaseUrl"))
    channel_id = _as_str(renderer.get("channelId")) or _as_str(browse.get("browseId"))
    if not path and channel_id:
        path = f"/channel/{channel_id}"
    if not path:
        return None

    url = absolute_channel_url(path)
    identity = channel_id or channel_identity(url)
    name = runs_text(renderer.get("title")).strip()
    if not identity or not name:
        return None

    thumbnails = _as_dict(renderer.get("thumbnail")).get("thumbnails")
    first_thumbnail = thumbnails[0] if isinstance(thumbnails, list) and thumbnails else {}
    thumbnail_url = _as_str(_as_dict(first_thumbnail).get("url"))
    if thumbnail_url.startswith("//"):
        thumbnail_url = "https:" + thumbnail_url

    return ChannelCandidate(
        identity=identity,
        name=name,
        url=url,
        thumbnail_url=thumbnail_url,
        description=runs_text(renderer.get("descriptionSnippet")).strip(),
    )


def collect_channels(data: Any) -> list[ChannelCandidate]:
    """Every ``channelRenderer`` in a results payload, in page order."""
    candidates = []
    for renderer in iter_key(data, "channelRenderer"):
        if not isinstance(renderer, dict):
            continue
        candidate = _renderer_to_candidate(renderer)
        if candidate:
            candidates.append(candidate)
    return candidates


def parse_rendered_results(html: str) -> list[ChannelCandidate]:
    """Fallback: read ``ytd-channel-renderer`` elements from rendered markup."""
    soup = BeautifulSoup(html, "html.parser")
    candidates = []

    for el in soup.select("ytd-channel-renderer"):
        href = ""
        for selector in _LINK_SELECTORS:
            link = el.select_one(selector)
            if link and link.get("href"):
                href = link["href"]
                break

        identity = channel_identity(href) if href else ""
        if not identity:
            continue

        name = ""
        for selector in _NAME_SELECTORS:
            node = el.select_one(selector)
            if node and node.get_text(strip=True):
                name = node.get_text(strip=True)
                break

        thumbnail_url = ""
        for img in el.find_all("img"):
            src = img.get("src", "")
            if src.startswith("http"):
                thumbnail_url = src
                break

        description = ""
        for selector in _DESCRIPTION_SELECTORS:
            node = el.select_one(selector)
            if node and node.get_text(strip=True):
                description = node.get_text(" ", strip=True)
                break

        candidates.append(
            ChannelCandidate(
                identity=identity,
                name=name or identity,
                url=absolute_channel_url(href),
                thumbnail_url=thumbnail_url,
                description=description,
            )
        )

    return candidates
